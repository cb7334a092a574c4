"""Async Graph Store with SQLModel and SQLAlchemy 2.0.

Every write runs in its own short transaction; there is no transaction
spanning a whole workflow run.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import SQLModel, select, delete
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.exc import IntegrityError

from flowrunner.constants import TRIGGER_NODE_TYPES
from flowrunner.core.config import Settings
from flowrunner.core.logging import get_logger
from flowrunner.models.database import (
    Workflow,
    WorkflowNodeRecord,
    WorkflowEdgeRecord,
    WorkflowExecution,
    NodeExecutionRecord,
    TimeBlock,
)
from flowrunner.services.execution.models import (
    ExecutionStatus,
    TimeBlockStatus,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowNode,
    TERMINAL_STATUSES,
    utcnow,
)
from flowrunner.services.execution.validator import WorkflowValidator

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings, validator: Optional[WorkflowValidator] = None):
        self.settings = settings
        self.validator = validator or WorkflowValidator()
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo, "future": True}
            if not self.settings.is_sqlite:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully")

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Workflows
    # ============================================================================

    async def save_workflow(self, definition: WorkflowDefinition,
                            description: Optional[str] = None, validate: bool = True) -> None:
        """Create or replace a workflow together with its nodes and edges.

        The graph is validated first; a rejected graph raises
        ``WorkflowValidationError`` and nothing is written.
        """
        if validate:
            self.validator.validate(definition)
        async with self.get_session() as session:
            existing = await session.get(Workflow, definition.id)
            if existing:
                existing.user_id = definition.user_id
                existing.name = definition.name
                existing.is_active = definition.is_active
                existing.trigger_node_id = definition.trigger_node_id
                existing.version_number = definition.version
                existing.updated_at = utcnow()
                if description is not None:
                    existing.description = description
            else:
                session.add(Workflow(
                    id=definition.id,
                    user_id=definition.user_id,
                    name=definition.name,
                    description=description,
                    is_active=definition.is_active,
                    trigger_node_id=definition.trigger_node_id,
                    version_number=definition.version,
                ))

            await session.execute(delete(WorkflowEdgeRecord).where(WorkflowEdgeRecord.workflow_id == definition.id))
            await session.execute(delete(WorkflowNodeRecord).where(WorkflowNodeRecord.workflow_id == definition.id))

            for index, node in enumerate(definition.nodes):
                session.add(WorkflowNodeRecord(
                    id=node.id,
                    workflow_id=definition.id,
                    type=node.type,
                    name=node.name,
                    config=node.config,
                    position=node.position,
                    sort_order=index,
                ))
            for index, edge in enumerate(definition.edges):
                session.add(WorkflowEdgeRecord(
                    id=edge.id,
                    workflow_id=definition.id,
                    source_node_id=edge.source_node_id,
                    target_node_id=edge.target_node_id,
                    source_handle=edge.source_handle,
                    target_handle=edge.target_handle,
                    condition=edge.condition,
                    data_mapping=edge.data_mapping,
                    sort_order=index,
                ))

            await session.commit()
            logger.debug("Workflow saved", workflow_id=definition.id,
                         nodes=len(definition.nodes), edges=len(definition.edges))

    async def load_workflow(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        """Load a fresh snapshot of a workflow graph."""
        async with self.get_session() as session:
            workflow = await session.get(Workflow, workflow_id)
            if not workflow:
                return None

            node_rows = (await session.execute(
                select(WorkflowNodeRecord).where(WorkflowNodeRecord.workflow_id == workflow_id)
                .order_by(WorkflowNodeRecord.sort_order)
            )).scalars().all()
            edge_rows = (await session.execute(
                select(WorkflowEdgeRecord).where(WorkflowEdgeRecord.workflow_id == workflow_id)
                .order_by(WorkflowEdgeRecord.sort_order)
            )).scalars().all()

        nodes = [
            WorkflowNode(id=n.id, type=n.type, config=n.config or {},
                         position=n.position or {}, name=n.name)
            for n in node_rows
        ]
        edges = [
            WorkflowEdge(id=e.id, source_node_id=e.source_node_id, target_node_id=e.target_node_id,
                         source_handle=e.source_handle, target_handle=e.target_handle,
                         condition=e.condition, data_mapping=e.data_mapping)
            for e in edge_rows
        ]

        trigger_node_id = workflow.trigger_node_id
        if not trigger_node_id:
            trigger = next((n for n in nodes if n.type in TRIGGER_NODE_TYPES), None)
            trigger_node_id = trigger.id if trigger else None

        return WorkflowDefinition(
            id=workflow.id,
            user_id=workflow.user_id,
            name=workflow.name,
            version=workflow.version_number,
            is_active=workflow.is_active,
            trigger_node_id=trigger_node_id,
            nodes=nodes,
            edges=edges,
        )

    async def touch_workflow(self, workflow_id: str) -> None:
        """Bump ``last_executed_at``."""
        async with self.get_session() as session:
            workflow = await session.get(Workflow, workflow_id)
            if workflow:
                workflow.last_executed_at = utcnow()
                await session.commit()

    # ============================================================================
    # Workflow Executions
    # ============================================================================

    async def create_execution(self, execution_id: str, workflow_id: str, user_id: str,
                               triggered_by: str, initial_input: Dict[str, Any],
                               version_number: int = 1) -> Tuple[WorkflowExecution, bool]:
        """Insert an execution row, or return the existing row for ``execution_id``.

        Returns:
            ``(row, created)``. ``created`` is False when the id already existed,
            including when a concurrent insert won the race.
        """
        existing = await self.get_execution(execution_id)
        if existing:
            return existing, False

        row = WorkflowExecution(
            id=execution_id,
            workflow_id=workflow_id,
            user_id=user_id,
            triggered_by=triggered_by,
            initial_input=initial_input,
            status=ExecutionStatus.PENDING.value,
            version_number=version_number,
        )
        try:
            async with self.get_session() as session:
                session.add(row)
                await session.commit()
        except IntegrityError:
            existing = await self.get_execution(execution_id)
            if existing is None:
                raise
            logger.info("Execution already created concurrently", execution_id=execution_id)
            return existing, False

        return row, True

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self.get_session() as session:
            return await session.get(WorkflowExecution, execution_id)

    async def update_execution_status(self, execution_id: str, status: ExecutionStatus,
                                      error: Optional[Dict[str, Any]] = None) -> None:
        """Persist a status change; terminal statuses stamp ``completed_at``."""
        async with self.get_session() as session:
            row = await session.get(WorkflowExecution, execution_id)
            if not row:
                raise LookupError(f"Execution {execution_id} not found")
            row.status = status.value
            if error is not None:
                row.error = error
            if status in TERMINAL_STATUSES:
                row.completed_at = utcnow()
            if status == ExecutionStatus.RUNNING:
                row.paused_at_node_id = None
                row.paused_context = None
            await session.commit()

    async def pause_execution(self, execution_id: str, node_id: str,
                              context: Dict[str, Any], status: ExecutionStatus) -> None:
        """Park a run at ``node_id`` with its serialized context."""
        async with self.get_session() as session:
            row = await session.get(WorkflowExecution, execution_id)
            if not row:
                raise LookupError(f"Execution {execution_id} not found")
            row.status = status.value
            row.paused_at_node_id = node_id
            row.paused_context = context
            await session.commit()

    async def claim_paused_execution(self, execution_id: str) -> bool:
        """Flip a run from WAITING_FOR_SIGNATURE to RUNNING in one conditional update.

        Only one caller can see the paused status, so of two concurrent
        resumes exactly one gets True.
        """
        async with self.get_session() as session:
            result = await session.execute(
                update(WorkflowExecution)
                .where(WorkflowExecution.id == execution_id)
                .where(WorkflowExecution.status == ExecutionStatus.WAITING_FOR_SIGNATURE.value)
                .values(
                    status=ExecutionStatus.RUNNING.value,
                    paused_at_node_id=None,
                    paused_context=None,
                )
            )
            await session.commit()
            return result.rowcount == 1

    async def check_execution_ownership(self, execution_id: str, user_id: str) -> bool:
        row = await self.get_execution(execution_id)
        return bool(row and row.user_id == user_id)

    # ============================================================================
    # Node Executions
    # ============================================================================

    async def create_node_execution(self, execution_id: str, node_id: str, node_type: str,
                                    input_data: Dict[str, Any]) -> str:
        record_id = str(uuid.uuid4())
        async with self.get_session() as session:
            session.add(NodeExecutionRecord(
                id=record_id,
                execution_id=execution_id,
                node_id=node_id,
                node_type=node_type,
                input_data=input_data,
                status=ExecutionStatus.PENDING.value,
            ))
            await session.commit()
        return record_id

    async def update_node_execution(self, record_id: str, status: ExecutionStatus,
                                    output_data: Optional[Dict[str, Any]] = None,
                                    error: Optional[Dict[str, Any]] = None,
                                    completed_at: Optional[datetime] = None,
                                    duration_ms: Optional[int] = None) -> None:
        async with self.get_session() as session:
            row = await session.get(NodeExecutionRecord, record_id)
            if not row:
                raise LookupError(f"Node execution {record_id} not found")
            row.status = status.value
            row.output_data = output_data
            row.error = error
            row.completed_at = completed_at or utcnow()
            row.duration_ms = duration_ms
            await session.commit()

    async def list_node_executions(self, execution_id: str) -> List[NodeExecutionRecord]:
        async with self.get_session() as session:
            result = await session.execute(
                select(NodeExecutionRecord)
                .where(NodeExecutionRecord.execution_id == execution_id)
                .order_by(NodeExecutionRecord.started_at)
            )
            return list(result.scalars().all())

    # ============================================================================
    # Time Blocks
    # ============================================================================

    async def save_time_block(self, time_block: TimeBlock) -> TimeBlock:
        async with self.get_session() as session:
            merged = await session.merge(time_block)
            await session.commit()
            return merged

    async def get_time_block(self, time_block_id: str) -> Optional[TimeBlock]:
        async with self.get_session() as session:
            return await session.get(TimeBlock, time_block_id)

    async def increment_time_block_runs(self, time_block_id: str) -> int:
        """Increment ``run_count`` and return the new value."""
        async with self.get_session() as session:
            row = await session.get(TimeBlock, time_block_id)
            if not row:
                raise LookupError(f"Time block {time_block_id} not found")
            row.run_count += 1
            await session.commit()
            return row.run_count

    async def complete_time_block(self, time_block_id: str) -> None:
        async with self.get_session() as session:
            row = await session.get(TimeBlock, time_block_id)
            if row:
                row.status = TimeBlockStatus.COMPLETED.value
                row.completed_at = utcnow()
                await session.commit()

    async def list_active_time_blocks(self) -> List[TimeBlock]:
        async with self.get_session() as session:
            result = await session.execute(
                select(TimeBlock).where(TimeBlock.status == TimeBlockStatus.ACTIVE.value)
            )
            return list(result.scalars().all())

    async def health_check(self) -> bool:
        try:
            async with self.get_session() as session:
                await session.execute(select(Workflow.id).limit(1))
            return True
        except Exception as e:
            logger.warning("Database health check failed", error=str(e))
            return False
