"""Execution engine state models.

All models are JSON-serializable so they can be persisted on the execution
row (paused runs) and carried inside queue payloads.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Any, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


class ExecutionStatus(str, Enum):
    """Workflow and node execution states.

    State transitions:
        PENDING -> RUNNING -> SUCCESS
                           -> FAILED
                           -> WAITING_FOR_SIGNATURE -> RUNNING (resume)
    """
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RETRYING = "RETRYING"
    WAITING_FOR_SIGNATURE = "WAITING_FOR_SIGNATURE"
    WAITING_FOR_CLIENT_TX = "WAITING_FOR_CLIENT_TX"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.SUCCESS,
    ExecutionStatus.FAILED,
    ExecutionStatus.CANCELLED,
})


class NodeType(str, Enum):
    TRIGGER = "TRIGGER"
    START = "START"
    IF = "IF"
    SWITCH = "SWITCH"
    SWAP = "SWAP"
    LENDING = "LENDING"
    PERPS = "PERPS"
    ORACLE = "ORACLE"
    PYTH_ORACLE = "PYTH_ORACLE"
    CHAINLINK_PRICE_ORACLE = "CHAINLINK_PRICE_ORACLE"
    API = "API"
    LLM_TRANSFORM = "LLM_TRANSFORM"
    EMAIL = "EMAIL"
    SLACK = "SLACK"
    TELEGRAM = "TELEGRAM"
    WALLET = "WALLET"
    TIME_BLOCK = "TIME_BLOCK"
    WEBHOOK = "WEBHOOK"
    DELAY = "DELAY"
    CONDITION = "CONDITION"


class TriggerType(str, Enum):
    CRON = "CRON"
    WEBHOOK = "WEBHOOK"
    MANUAL = "MANUAL"
    EVENT = "EVENT"
    TIME_BLOCK = "TIME_BLOCK"


class TimeBlockStatus(str, Enum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class RecurrenceType(str, Enum):
    NONE = "NONE"
    INTERVAL = "INTERVAL"
    CRON = "CRON"


# =============================================================================
# WORKFLOW GRAPH
# =============================================================================

@dataclass
class WorkflowNode:
    id: str
    type: str
    config: Dict[str, Any] = field(default_factory=dict)
    position: Dict[str, Any] = field(default_factory=dict)
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "config": self.config,
            "position": self.position,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowNode":
        return cls(
            id=data["id"],
            type=data["type"],
            config=data.get("config") or {},
            position=data.get("position") or {},
            name=data.get("name"),
        )


@dataclass
class WorkflowEdge:
    id: str
    source_node_id: str
    target_node_id: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    condition: Optional[Dict[str, Any]] = None
    data_mapping: Optional[Dict[str, str]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_node_id": self.source_node_id,
            "target_node_id": self.target_node_id,
            "source_handle": self.source_handle,
            "target_handle": self.target_handle,
            "condition": self.condition,
            "data_mapping": self.data_mapping,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowEdge":
        return cls(
            id=data["id"],
            source_node_id=data["source_node_id"],
            target_node_id=data["target_node_id"],
            source_handle=data.get("source_handle"),
            target_handle=data.get("target_handle"),
            condition=data.get("condition"),
            data_mapping=data.get("data_mapping"),
        )


@dataclass
class WorkflowDefinition:
    """Immutable snapshot of a workflow graph for a single run."""
    id: str
    user_id: str
    nodes: List[WorkflowNode]
    edges: List[WorkflowEdge]
    trigger_node_id: Optional[str] = None
    name: str = ""
    version: int = 1
    is_active: bool = True

    def __post_init__(self):
        self._nodes_by_id = {node.id: node for node in self.nodes}

    def get_node(self, node_id: str) -> Optional[WorkflowNode]:
        return self._nodes_by_id.get(node_id)

    def outgoing_edges(self, node_id: str) -> List[WorkflowEdge]:
        return [e for e in self.edges if e.source_node_id == node_id]

    def incoming_edges(self, node_id: str) -> List[WorkflowEdge]:
        return [e for e in self.edges if e.target_node_id == node_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "name": self.name,
            "version": self.version,
            "is_active": self.is_active,
            "trigger_node_id": self.trigger_node_id,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowDefinition":
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            name=data.get("name", ""),
            version=data.get("version", 1),
            is_active=data.get("is_active", True),
            trigger_node_id=data.get("trigger_node_id"),
            nodes=[WorkflowNode.from_dict(n) for n in data.get("nodes", [])],
            edges=[WorkflowEdge.from_dict(e) for e in data.get("edges", [])],
        )


# =============================================================================
# RUNTIME CONTEXT
# =============================================================================

@dataclass
class WorkflowExecutionContext:
    """Per-run state. ``node_outputs`` only grows during a run."""
    execution_id: str
    workflow_id: str
    user_id: str
    triggered_by: str
    initial_input: Dict[str, Any] = field(default_factory=dict)
    node_outputs: Dict[str, Any] = field(default_factory=dict)
    status: ExecutionStatus = ExecutionStatus.PENDING
    triggered_at: datetime = field(default_factory=utcnow)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None
    current_node_id: Optional[str] = None
    retry_count: int = 0
    unmatched_branch: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "user_id": self.user_id,
            "triggered_by": self.triggered_by,
            "initial_input": self.initial_input,
            "node_outputs": self.node_outputs,
            "status": self.status.value,
            "triggered_at": _iso(self.triggered_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
            "current_node_id": self.current_node_id,
            "retry_count": self.retry_count,
            "unmatched_branch": self.unmatched_branch,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowExecutionContext":
        return cls(
            execution_id=data["execution_id"],
            workflow_id=data["workflow_id"],
            user_id=data["user_id"],
            triggered_by=data.get("triggered_by", TriggerType.MANUAL.value),
            initial_input=data.get("initial_input") or {},
            node_outputs=data.get("node_outputs") or {},
            status=ExecutionStatus(data.get("status", ExecutionStatus.PENDING.value)),
            triggered_at=_parse_dt(data.get("triggered_at")) or utcnow(),
            started_at=_parse_dt(data.get("started_at")) or utcnow(),
            completed_at=_parse_dt(data.get("completed_at")),
            error=data.get("error"),
            current_node_id=data.get("current_node_id"),
            retry_count=data.get("retry_count", 0),
            unmatched_branch=data.get("unmatched_branch"),
        )


# =============================================================================
# PROCESSOR CONTRACT
# =============================================================================

@dataclass
class NodeExecutionInput:
    node_id: str
    node_type: str
    node_config: Dict[str, Any]
    input_data: Dict[str, Any]
    execution_context: WorkflowExecutionContext
    secrets: Dict[str, Any] = field(default_factory=dict)


@dataclass
class NodeExecutionOutput:
    node_id: str
    success: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime = field(default_factory=utcnow)

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    @property
    def metadata(self) -> Dict[str, Any]:
        return {
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration": self.duration_ms,
        }

    @property
    def error_message(self) -> str:
        if not self.error:
            return "Unknown error"
        return str(self.error.get("message", "Unknown error"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "metadata": self.metadata,
        }


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
