"""Entry-point processors that forward their input with run metadata."""

from typing import Any, Dict

from flowrunner.core.logging import get_logger
from flowrunner.services.execution.models import (
    NodeExecutionInput,
    NodeExecutionOutput,
    NodeType,
    ValidationResult,
    WorkflowExecutionContext,
    utcnow,
)
from .base import NodeProcessor

logger = get_logger(__name__)


def with_run_metadata(data: Dict[str, Any], context: WorkflowExecutionContext) -> Dict[str, Any]:
    """Copy ``data`` and stamp it with trigger metadata."""
    return {
        **(data or {}),
        "triggeredAt": context.triggered_at.isoformat(),
        "triggeredBy": context.triggered_by,
        "workflowId": context.workflow_id,
        "executionId": context.execution_id,
    }


class StartNodeProcessor(NodeProcessor):
    def get_node_type(self) -> str:
        return NodeType.START.value

    async def execute(self, input: NodeExecutionInput) -> NodeExecutionOutput:
        started_at = utcnow()
        logger.info("Start node passthrough", node_id=input.node_id,
                    execution_id=input.execution_context.execution_id)
        return self.succeed(input, with_run_metadata(input.input_data, input.execution_context), started_at)

    async def validate(self, config: Dict[str, Any]) -> ValidationResult:
        return ValidationResult(valid=True)


class TimeBlockNodeProcessor(StartNodeProcessor):
    """Entry point of scheduled workflows. Scheduling itself happens outside the run."""

    def get_node_type(self) -> str:
        return NodeType.TIME_BLOCK.value
