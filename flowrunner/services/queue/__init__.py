"""Redis-backed job queues.

- jobs.py: queue names, configs, retry policy and job payloads
- broker.py: JobQueue (enqueue, claim, complete, fail, wait)
- worker.py: Worker consuming one queue

Handlers live in ``handlers.py`` and are wired by the container.
"""

from .jobs import (
    Job,
    JobState,
    QueueConfig,
    QueueName,
    RetryPolicy,
    WorkflowExecutionJob,
    NodeExecutionJob,
    LLMExecutionJob,
    LLMMessage,
    TriggerJob,
    build_queue_configs,
    execution_id_for_trigger,
)
from .broker import JobQueue, JobFailedError, JobTimeoutError
from .worker import Worker, WorkerPool, JobHandler

__all__ = [
    "Job",
    "JobState",
    "QueueConfig",
    "QueueName",
    "RetryPolicy",
    "WorkflowExecutionJob",
    "NodeExecutionJob",
    "LLMExecutionJob",
    "LLMMessage",
    "TriggerJob",
    "build_queue_configs",
    "execution_id_for_trigger",
    "JobQueue",
    "JobFailedError",
    "JobTimeoutError",
    "Worker",
    "WorkerPool",
    "JobHandler",
]
