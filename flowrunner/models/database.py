"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import CheckConstraint, func


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Workflow(SQLModel, table=True):
    """Workflow definitions."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    user_id: str = Field(index=True, max_length=255)
    name: str = Field(default="", max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    is_active: bool = Field(default=True)
    trigger_node_id: Optional[str] = Field(default=None, max_length=255)
    version_number: int = Field(default=1)
    last_executed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class WorkflowNodeRecord(SQLModel, table=True):
    """Nodes of a workflow graph."""

    __tablename__ = "workflow_nodes"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(foreign_key="workflows.id", primary_key=True, max_length=255)
    type: str = Field(max_length=50)
    name: Optional[str] = Field(default=None, max_length=255)
    config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    position: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    sort_order: int = Field(default=0)


class WorkflowEdgeRecord(SQLModel, table=True):
    """Directed edges between workflow nodes."""

    __tablename__ = "workflow_edges"
    __table_args__ = (
        CheckConstraint("source_node_id != target_node_id", name="ck_workflow_edges_no_self_loop"),
    )

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(foreign_key="workflows.id", primary_key=True, max_length=255)
    source_node_id: str = Field(max_length=255)
    target_node_id: str = Field(max_length=255)
    source_handle: Optional[str] = Field(default=None, max_length=255)
    target_handle: Optional[str] = Field(default=None, max_length=255)
    condition: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    data_mapping: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    sort_order: int = Field(default=0)


class WorkflowExecution(SQLModel, table=True):
    """One run of a workflow."""

    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(foreign_key="workflows.id", index=True, max_length=255)
    user_id: str = Field(index=True, max_length=255)
    triggered_by: str = Field(max_length=50)
    status: str = Field(default="PENDING", max_length=50)
    initial_input: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    error: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    version_number: int = Field(default=1)
    retry_count: int = Field(default=0)
    paused_at_node_id: Optional[str] = Field(default=None, max_length=255)
    paused_context: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    triggered_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True))
    )
    started_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True))
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )


class NodeExecutionRecord(SQLModel, table=True):
    """Per-node record inside a workflow run."""

    __tablename__ = "node_executions"

    id: str = Field(primary_key=True, max_length=255)
    execution_id: str = Field(foreign_key="workflow_executions.id", index=True, max_length=255)
    node_id: str = Field(max_length=255)
    node_type: str = Field(max_length=50)
    status: str = Field(default="PENDING", max_length=50)
    input_data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    output_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    duration_ms: Optional[int] = Field(default=None)
    started_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True))
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )


class TimeBlock(SQLModel, table=True):
    """Scheduled trigger for a workflow (one-shot, interval or cron)."""

    __tablename__ = "time_blocks"

    id: str = Field(primary_key=True, max_length=255)
    user_id: str = Field(index=True, max_length=255)
    workflow_id: str = Field(foreign_key="workflows.id", index=True, max_length=255)
    recurrence_type: str = Field(default="NONE", max_length=20)
    interval_seconds: Optional[int] = Field(default=None)
    cron_expression: Optional[str] = Field(default=None, max_length=255)
    timezone: Optional[str] = Field(default=None, max_length=64)
    max_runs: Optional[int] = Field(default=None)
    run_count: int = Field(default=0)
    status: str = Field(default="ACTIVE", max_length=20)
    run_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    until_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    completed_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True))
    )
    created_at: datetime = Field(
        default_factory=_now,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
