"""Execution engine exceptions."""

from typing import Any, Dict, Optional


class FlowError(Exception):
    """Base class for execution engine errors.

    ``code`` is the machine-readable error code persisted on the execution
    row and carried in ``execution:failed`` events.
    """
    code = "WORKFLOW_EXECUTION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        data = {"message": self.message, "code": self.code}
        if self.details:
            data["details"] = self.details
        return data


class WorkflowNotFoundError(FlowError):
    code = "WORKFLOW_NOT_FOUND"

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow {workflow_id} not found", {"workflowId": workflow_id})


class ProcessorNotFoundError(FlowError):
    code = "PROCESSOR_NOT_FOUND"

    def __init__(self, node_type: str):
        super().__init__(f"No processor found for node type: {node_type}", {"nodeType": node_type})
        self.node_type = node_type


class MaxStepsExceededError(FlowError):
    code = "MAX_STEPS_EXCEEDED"

    def __init__(self, max_steps: int):
        super().__init__(f"Workflow exceeded maximum steps ({max_steps})", {"maxSteps": max_steps})


class NodeExecutionFailedError(FlowError):
    """A node failed and did not opt into ``continueOnError``."""
    code = "NODE_EXECUTION_FAILED"

    def __init__(self, node_id: str, error: Optional[Dict[str, Any]] = None):
        error = error or {}
        message = error.get("message", "Unknown error")
        super().__init__(f"Node {node_id} failed: {message}", {"nodeId": node_id, "nodeError": error})
        self.node_id = node_id
        self.error = error


class ExecutionStateError(FlowError):
    code = "INVALID_EXECUTION_STATE"


class WorkflowValidationError(FlowError):
    """Raised by the workflow validator. ``reason`` names the rule that failed."""
    code = "WORKFLOW_VALIDATION_ERROR"

    def __init__(self, reason: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason
        return data
