"""Execution engine package.

Sequential workflow execution with:
- Runtime IF/SWITCH branch selection
- Durable execution and node records
- Live execution events and SSE subscription tokens
- Signature pause/resume

The orchestrator and validator are imported from their modules
(``.executor``, ``.validator``); they depend on the processors package,
which itself builds on the models exported here.
"""

from .models import (
    ExecutionStatus,
    NodeType,
    TriggerType,
    TimeBlockStatus,
    RecurrenceType,
    WorkflowNode,
    WorkflowEdge,
    WorkflowDefinition,
    WorkflowExecutionContext,
    NodeExecutionInput,
    NodeExecutionOutput,
    ValidationResult,
    TERMINAL_STATUSES,
)
from .errors import (
    FlowError,
    WorkflowNotFoundError,
    ProcessorNotFoundError,
    MaxStepsExceededError,
    NodeExecutionFailedError,
    ExecutionStateError,
    WorkflowValidationError,
)
from .conditions import (
    get_nested_value,
    evaluate_operator,
    parse_condition_string,
)
from .events import (
    ExecutionEvent,
    ExecutionEventType,
    ExecutionEventEmitter,
    Subscription,
)
from .subscriptions import (
    SubscriptionToken,
    SubscriptionTokenService,
    TokenVerification,
)

__all__ = [
    # Models
    "ExecutionStatus",
    "NodeType",
    "TriggerType",
    "TimeBlockStatus",
    "RecurrenceType",
    "WorkflowNode",
    "WorkflowEdge",
    "WorkflowDefinition",
    "WorkflowExecutionContext",
    "NodeExecutionInput",
    "NodeExecutionOutput",
    "ValidationResult",
    "TERMINAL_STATUSES",
    # Errors
    "FlowError",
    "WorkflowNotFoundError",
    "ProcessorNotFoundError",
    "MaxStepsExceededError",
    "NodeExecutionFailedError",
    "ExecutionStateError",
    "WorkflowValidationError",
    # Conditions
    "get_nested_value",
    "evaluate_operator",
    "parse_condition_string",
    # Events
    "ExecutionEvent",
    "ExecutionEventType",
    "ExecutionEventEmitter",
    "Subscription",
    # Subscription tokens
    "SubscriptionToken",
    "SubscriptionTokenService",
    "TokenVerification",
]
