"""Job handlers, one per queue.

Each handler is an async callable taking a ``Job`` and returning a JSON-able
result. Raising fails the attempt; the worker retries it with backoff.
"""

from typing import Any, Dict, Optional, TYPE_CHECKING

from flowrunner.core.logging import get_logger
from flowrunner.services.execution.models import (
    ExecutionStatus,
    NodeExecutionInput,
    TimeBlockStatus,
    WorkflowExecutionContext,
    as_utc,
    utcnow,
)
from flowrunner.services.locking import DistributedLock
from flowrunner.services.processors.registry import NodeProcessorRegistry
from .broker import JobQueue
from .jobs import (
    Job,
    LLMExecutionJob,
    NodeExecutionJob,
    QueueName,
    TriggerJob,
    WorkflowExecutionJob,
    execution_id_for_trigger,
)

if TYPE_CHECKING:
    from flowrunner.core.database import Database
    from flowrunner.services.execution.executor import WorkflowExecutor
    from flowrunner.services.llm_client import LLMServiceClient
    from flowrunner.services.scheduler import TimeBlockScheduler

logger = get_logger(__name__)

TIME_BLOCK_LOCK_TTL_SECONDS = 30


class WorkflowJobHandler:
    """Runs a workflow execution job through the orchestrator.

    The execution id is the payload's ``execution_id`` or the job id, so a
    redelivered job returns the stored run instead of running it twice.
    """

    def __init__(self, executor: "WorkflowExecutor"):
        self.executor = executor

    async def __call__(self, job: Job) -> Dict[str, Any]:
        data = WorkflowExecutionJob(**job.payload)
        logger.info("Processing workflow execution job", job_id=job.id,
                    workflow_id=data.workflow_id, user_id=data.user_id)

        context = await self.executor.execute_workflow(
            data.workflow_id,
            data.user_id,
            data.triggered_by,
            data.initial_input,
            data.execution_id or job.id,
        )
        if context.status == ExecutionStatus.FAILED:
            logger.warning("Workflow run finished as failed", job_id=job.id,
                           execution_id=context.execution_id, error=context.error)

        return {
            "executionId": context.execution_id,
            "status": context.status.value,
            "nodeOutputs": context.node_outputs,
        }


class NodeJobHandler:
    """Executes a single node outside of a workflow run."""

    def __init__(self, registry: NodeProcessorRegistry):
        self.registry = registry

    async def __call__(self, job: Job) -> Dict[str, Any]:
        data = NodeExecutionJob(**job.payload)
        logger.debug("Processing node execution job", job_id=job.id,
                     node_id=data.node_id, node_type=data.node_type)

        processor = self.registry.get_processor(data.node_type)
        context = WorkflowExecutionContext(
            execution_id=data.execution_id,
            workflow_id=data.workflow_id,
            user_id=data.user_id,
            triggered_by="NODE_JOB",
        )
        result = await processor.execute(NodeExecutionInput(
            node_id=data.node_id,
            node_type=data.node_type,
            node_config=data.node_config,
            input_data=data.input_data,
            execution_context=context,
        ))
        return result.to_dict()


class LLMJobHandler:
    """Forwards an LLM job to the LLM service."""

    def __init__(self, client: "LLMServiceClient"):
        self.client = client

    async def __call__(self, job: Job) -> Dict[str, Any]:
        data = LLMExecutionJob(**job.payload)
        logger.info("Processing LLM job", job_id=job.id, request_id=data.request_id,
                    provider=data.provider, model=data.model)
        return await self.client.chat(data)


class TriggerJobHandler:
    """Turns a trigger firing into a workflow execution job.

    Time-block firings are checked under a lock on the time block: a block
    that is inactive, expired or out of runs is skipped (and completed and
    unscheduled where it is finished). Otherwise ``run_count`` is bumped and
    a workflow job is enqueued under an execution id derived from the
    trigger job id.
    """

    def __init__(self, database: "Database", queue: JobQueue, lock: DistributedLock,
                 scheduler: Optional["TimeBlockScheduler"] = None):
        self.database = database
        self.queue = queue
        self.lock = lock
        self.scheduler = scheduler

    async def __call__(self, job: Job) -> Dict[str, Any]:
        data = TriggerJob(**job.payload)

        if data.time_block_id:
            async with self.lock.hold(f"timeblock:{data.time_block_id}",
                                      ttl_seconds=TIME_BLOCK_LOCK_TTL_SECONDS,
                                      retry_attempts=5, retry_delay_ms=200):
                skipped = await self._check_time_block(data.time_block_id, job)
                if skipped:
                    return {"skipped": True, "reason": skipped}
                await self.database.increment_time_block_runs(data.time_block_id)

        execution_id = execution_id_for_trigger(job.id)
        await self.queue.enqueue(
            QueueName.WORKFLOW_EXECUTION,
            WorkflowExecutionJob(
                workflow_id=data.workflow_id,
                user_id=data.user_id,
                triggered_by=data.triggered_by or "CRON",
                execution_id=execution_id,
                initial_input=data.initial_input,
            ).model_dump(),
            job_id=execution_id,
        )
        logger.info("Trigger enqueued workflow execution", job_id=job.id,
                    workflow_id=data.workflow_id, execution_id=execution_id)
        return {"enqueued": True, "executionId": execution_id}

    async def _check_time_block(self, time_block_id: str, job: Job) -> Optional[str]:
        """Return a skip reason, or None when the firing may proceed."""
        block = await self.database.get_time_block(time_block_id)
        if block is None:
            logger.warning("Time block missing, skipping trigger",
                           time_block_id=time_block_id, job_id=job.id)
            return "TIME_BLOCK_NOT_FOUND"

        if block.status != TimeBlockStatus.ACTIVE.value:
            logger.info("Time block not active, skipping trigger",
                        time_block_id=time_block_id, status=block.status)
            return "TIME_BLOCK_NOT_ACTIVE"

        until_at = as_utc(block.until_at)
        if until_at is not None and utcnow() > until_at:
            await self._complete(time_block_id)
            return "TIME_BLOCK_EXPIRED"

        if block.max_runs is not None and block.run_count >= block.max_runs:
            await self._complete(time_block_id)
            return "TIME_BLOCK_MAX_RUNS_REACHED"

        return None

    async def _complete(self, time_block_id: str) -> None:
        await self.database.complete_time_block(time_block_id)
        if self.scheduler is not None:
            self.scheduler.cancel(time_block_id)
        logger.info("Time block completed", time_block_id=time_block_id)
