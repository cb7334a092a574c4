"""Node processor contract."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict

from flowrunner.core.logging import get_logger
from flowrunner.services.execution.models import (
    NodeExecutionInput,
    NodeExecutionOutput,
    ValidationResult,
    utcnow,
)

logger = get_logger(__name__)


class NodeProcessor(ABC):
    """One implementation per node type.

    ``execute`` never raises for business failures: it returns an output with
    ``success=False`` and an ``error`` dict carrying ``message`` and ``code``.
    """

    @abstractmethod
    def get_node_type(self) -> str:
        ...

    @abstractmethod
    async def execute(self, input: NodeExecutionInput) -> NodeExecutionOutput:
        ...

    @abstractmethod
    async def validate(self, config: Dict[str, Any]) -> ValidationResult:
        ...

    @property
    def error_code(self) -> str:
        return f"{self.get_node_type()}_NODE_EXECUTION_FAILED"

    def succeed(self, input: NodeExecutionInput, output: Dict[str, Any],
                started_at: datetime) -> NodeExecutionOutput:
        return NodeExecutionOutput(
            node_id=input.node_id,
            success=True,
            output=output,
            started_at=started_at,
            completed_at=utcnow(),
        )

    def fail(self, input: NodeExecutionInput, message: str, started_at: datetime,
             **extra: Any) -> NodeExecutionOutput:
        logger.error("Node execution failed", node_id=input.node_id,
                     node_type=self.get_node_type(), error=message)
        return NodeExecutionOutput(
            node_id=input.node_id,
            success=False,
            output={"error": message, **extra},
            error={"message": message, "code": self.error_code},
            started_at=started_at,
            completed_at=utcnow(),
        )
