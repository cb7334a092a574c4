"""Queue names, per-queue configuration, retry policy and job payloads."""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from flowrunner import constants
from flowrunner.core.config import Settings


class QueueName(str, Enum):
    WORKFLOW_EXECUTION = constants.WORKFLOW_EXECUTION_QUEUE
    NODE_EXECUTION = constants.NODE_EXECUTION_QUEUE
    SWAP_EXECUTION = constants.SWAP_EXECUTION_QUEUE
    LENDING_EXECUTION = constants.LENDING_EXECUTION_QUEUE
    PERPS_EXECUTION = constants.PERPS_EXECUTION_QUEUE
    LLM = constants.LLM_QUEUE
    WORKFLOW_TRIGGER = constants.WORKFLOW_TRIGGER_QUEUE


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RetryPolicy:
    """Exponential backoff between job attempts.

    Delay formula: min(initial_delay_ms * (backoff_multiplier ^ (attempt - 1)), max_delay_ms)
    """
    max_attempts: int = 3
    initial_delay_ms: int = 2000
    max_delay_ms: int = 10 * 60 * 1000
    backoff_multiplier: float = 2.0

    def calculate_delay(self, attempt: int) -> int:
        """Delay before the next try after ``attempt`` failed attempts (1-indexed)."""
        delay = self.initial_delay_ms * (self.backoff_multiplier ** max(0, attempt - 1))
        return int(min(delay, self.max_delay_ms))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts


@dataclass
class QueueConfig:
    name: QueueName
    concurrency: int = 10
    max_jobs_per_second: int = 200
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeout_seconds: float = 600.0
    completed_retained: int = 1000
    failed_retained: int = 5000


def build_queue_configs(settings: Settings) -> Dict[QueueName, QueueConfig]:
    """Per-queue concurrency and retry budgets."""

    def config(name: QueueName, concurrency: int, attempts: int) -> QueueConfig:
        return QueueConfig(
            name=name,
            concurrency=concurrency,
            max_jobs_per_second=settings.max_jobs_per_second,
            retry=RetryPolicy(max_attempts=attempts, initial_delay_ms=settings.retry_backoff_delay_ms),
            timeout_seconds=settings.job_timeout_seconds,
            completed_retained=settings.completed_jobs_retained,
            failed_retained=settings.failed_jobs_retained,
        )

    attempts = settings.default_job_attempts
    return {
        QueueName.WORKFLOW_EXECUTION: config(QueueName.WORKFLOW_EXECUTION, settings.workflow_worker_concurrency, 2),
        QueueName.NODE_EXECUTION: config(QueueName.NODE_EXECUTION, settings.node_worker_concurrency, attempts),
        QueueName.SWAP_EXECUTION: config(QueueName.SWAP_EXECUTION, 5, attempts),
        QueueName.LENDING_EXECUTION: config(QueueName.LENDING_EXECUTION, 5, attempts),
        QueueName.PERPS_EXECUTION: config(QueueName.PERPS_EXECUTION, 5, attempts),
        QueueName.LLM: config(QueueName.LLM, settings.llm_worker_concurrency, 2),
        QueueName.WORKFLOW_TRIGGER: config(QueueName.WORKFLOW_TRIGGER, settings.trigger_worker_concurrency, attempts),
    }


@dataclass
class Job:
    """A job as stored in Redis."""
    id: str
    queue: str
    payload: Dict[str, Any]
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    result: Any = None
    error: Optional[str] = None
    created_at: int = 0
    finished_at: Optional[int] = None


# =============================================================================
# PAYLOADS
# =============================================================================

class WorkflowExecutionJob(BaseModel):
    workflow_id: str
    user_id: str
    triggered_by: str = "MANUAL"
    execution_id: Optional[str] = None
    initial_input: Dict[str, Any] = Field(default_factory=dict)


class NodeExecutionJob(BaseModel):
    execution_id: str
    node_id: str
    node_type: str
    node_config: Dict[str, Any] = Field(default_factory=dict)
    input_data: Dict[str, Any] = Field(default_factory=dict)
    user_id: str
    workflow_id: str


class LLMMessage(BaseModel):
    role: str
    content: str


class LLMExecutionJob(BaseModel):
    user_id: str
    provider: str
    model: str
    messages: List[LLMMessage]
    temperature: Optional[float] = None
    max_output_tokens: Optional[int] = None
    response_schema: Optional[Dict[str, Any]] = None
    request_id: str


class TriggerJob(BaseModel):
    workflow_id: str
    user_id: str
    triggered_by: str = "CRON"
    time_block_id: Optional[str] = None
    initial_input: Dict[str, Any] = Field(default_factory=dict)


def execution_id_for_trigger(trigger_job_id: str) -> str:
    """Deterministic execution id for a trigger firing.

    Two deliveries of the same trigger job map to the same execution.
    """
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"flowrunner:trigger:{trigger_job_id}"))
