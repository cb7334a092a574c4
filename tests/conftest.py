"""
Shared pytest fixtures for all tests.

Redis is faked with fakeredis (Lua scripts run through lupa); the Graph
Store is a SQLite file per test.
"""

import uuid
from typing import Any, Dict, List, Optional

import pytest
from fakeredis import aioredis as fake_aioredis

from flowrunner.core.cache import CacheService
from flowrunner.core.config import Settings
from flowrunner.core.database import Database
from flowrunner.services.execution.events import ExecutionEventEmitter
from flowrunner.services.execution.executor import WorkflowExecutor
from flowrunner.services.execution.models import (
    NodeExecutionInput,
    NodeExecutionOutput,
    ValidationResult,
    WorkflowDefinition,
    WorkflowEdge,
    WorkflowExecutionContext,
    WorkflowNode,
    utcnow,
)
from flowrunner.services.execution.subscriptions import SubscriptionTokenService
from flowrunner.services.locking import DistributedLock
from flowrunner.services.processors import build_registry
from flowrunner.services.processors.base import NodeProcessor
from flowrunner.services.queue.broker import JobQueue
from flowrunner.services.queue.jobs import build_queue_configs
from flowrunner.services.rate_limiter import RateLimiter


# =============================================================================
# STORES
# =============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'flowrunner.db'}",
        redis_url="redis://localhost:6379/15",
        workers_enabled=False,
        retry_backoff_delay_ms=10,
        queue_poll_interval=0.01,
        llm_job_timeout_seconds=2.0,
        log_format="console",
    )


@pytest.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def cache(settings, redis_client) -> CacheService:
    service = CacheService(settings, client=redis_client)
    await service.startup()
    return service


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


# =============================================================================
# SERVICES
# =============================================================================

@pytest.fixture
def events() -> ExecutionEventEmitter:
    return ExecutionEventEmitter()


@pytest.fixture
def tokens(cache, database) -> SubscriptionTokenService:
    return SubscriptionTokenService(cache, database, ttl_ms=60_000)


@pytest.fixture
def lock(cache) -> DistributedLock:
    return DistributedLock(cache)


@pytest.fixture
def rate_limiter(cache) -> RateLimiter:
    return RateLimiter(cache)


@pytest.fixture
def job_queue(cache, settings) -> JobQueue:
    return JobQueue(cache, build_queue_configs(settings), poll_interval=settings.queue_poll_interval)


@pytest.fixture
def registry(job_queue, settings):
    return build_registry(job_queue, settings)


@pytest.fixture
def executor(database, registry, events, tokens, settings) -> WorkflowExecutor:
    return WorkflowExecutor(database, registry, events, tokens,
                            max_steps=settings.max_steps_per_execution)


# =============================================================================
# WORKFLOW BUILDERS
# =============================================================================

def node(node_id: str, node_type: str, **config: Any) -> WorkflowNode:
    return WorkflowNode(id=node_id, type=node_type, config=config)


def edge(source: str, target: str, handle: Optional[str] = None,
         data_mapping: Optional[Dict[str, str]] = None) -> WorkflowEdge:
    return WorkflowEdge(
        id=f"{source}->{target}:{handle or ''}",
        source_node_id=source,
        target_node_id=target,
        source_handle=handle,
        data_mapping=data_mapping,
    )


@pytest.fixture
def save_workflow(database):
    """Persist a workflow built from nodes and edges; returns its id."""

    async def _save(nodes: List[WorkflowNode], edges: List[WorkflowEdge],
                    user_id: str = "user-1", trigger_node_id: Optional[str] = None,
                    validate: bool = True) -> str:
        workflow_id = f"wf-{uuid.uuid4().hex[:8]}"
        await database.save_workflow(WorkflowDefinition(
            id=workflow_id,
            user_id=user_id,
            nodes=nodes,
            edges=edges,
            trigger_node_id=trigger_node_id,
            name="test workflow",
        ), validate=validate)
        return workflow_id

    return _save


def make_context(**overrides: Any) -> WorkflowExecutionContext:
    values = {
        "execution_id": "exec-1",
        "workflow_id": "wf-1",
        "user_id": "user-1",
        "triggered_by": "MANUAL",
    }
    values.update(overrides)
    return WorkflowExecutionContext(**values)


def make_input(node_id: str, node_type: str, config: Dict[str, Any],
               input_data: Optional[Dict[str, Any]] = None) -> NodeExecutionInput:
    return NodeExecutionInput(
        node_id=node_id,
        node_type=node_type,
        node_config=config,
        input_data=input_data or {},
        execution_context=make_context(),
    )


# =============================================================================
# SCRIPTED PROCESSORS
# =============================================================================

class ScriptedProcessor(NodeProcessor):
    """Processor for an arbitrary node type returning canned results.

    ``outputs`` is consumed one entry per call; the last entry repeats.
    An entry is ``(success, output)``; the input of every call is recorded.
    """

    def __init__(self, node_type: str, outputs: List[tuple]):
        self.node_type = node_type
        self.outputs = list(outputs)
        self.calls: List[Dict[str, Any]] = []

    def get_node_type(self) -> str:
        return self.node_type

    async def execute(self, input: NodeExecutionInput) -> NodeExecutionOutput:
        started_at = utcnow()
        self.calls.append(input.input_data)
        success, output = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if success:
            return self.succeed(input, output, started_at)
        return NodeExecutionOutput(
            node_id=input.node_id,
            success=False,
            output=output,
            error={"message": output.get("error", "scripted failure"), "code": self.error_code},
            started_at=started_at,
            completed_at=utcnow(),
        )

    async def validate(self, config: Dict[str, Any]) -> ValidationResult:
        return ValidationResult(valid=True)
