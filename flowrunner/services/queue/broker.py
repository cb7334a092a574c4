"""Redis-backed durable job queue.

Key schema (per queue):
    queue:{name}:job:{id}   -> HASH {id, payload, state, attempts_made, ...}
    queue:{name}:wait       -> LIST of ready job ids (FIFO)
    queue:{name}:delayed    -> ZSET job id -> ready-at epoch ms
    queue:{name}:active     -> ZSET job id -> claimed-at epoch ms
    queue:{name}:completed  -> ZSET job id -> finished-at (retention window)
    queue:{name}:failed     -> ZSET job id -> finished-at (retention window)

Job ids are idempotency keys: enqueueing an id that already exists returns the
existing job untouched.
"""

import asyncio
import json
import time
import uuid
from typing import Any, Dict, List, Optional, Union

from flowrunner.constants import QUEUE_KEY_PREFIX
from flowrunner.core.cache import CacheService
from flowrunner.core.logging import get_logger
from .jobs import Job, JobState, QueueConfig, QueueName

logger = get_logger(__name__)

# KEYS: job hash, wait list, delayed zset
# ARGV: job id, payload, max attempts, created at, ready at (0 = now)
ENQUEUE_SCRIPT = """
if redis.call("exists", KEYS[1]) == 1 then
    return 0
end
local state = "waiting"
if tonumber(ARGV[5]) > 0 then
    state = "delayed"
end
redis.call("hset", KEYS[1],
    "id", ARGV[1], "payload", ARGV[2], "state", state,
    "attempts_made", 0, "max_attempts", ARGV[3], "created_at", ARGV[4])
if state == "delayed" then
    redis.call("zadd", KEYS[3], ARGV[5], ARGV[1])
else
    redis.call("rpush", KEYS[2], ARGV[1])
end
return 1
"""

# KEYS: wait list, delayed zset, active set
# ARGV: now ms, job key prefix
CLAIM_SCRIPT = """
local due = redis.call("zrangebyscore", KEYS[2], "-inf", ARGV[1])
for _, id in ipairs(due) do
    redis.call("zrem", KEYS[2], id)
    redis.call("rpush", KEYS[1], id)
    redis.call("hset", ARGV[2] .. id, "state", "waiting")
end
local id = redis.call("lpop", KEYS[1])
if not id then
    return false
end
redis.call("zadd", KEYS[3], ARGV[1], id)
redis.call("hset", ARGV[2] .. id, "state", "active")
return id
"""

# KEYS: active zset, wait list
# ARGV: job id, job key prefix
REQUEUE_SCRIPT = """
if redis.call("zrem", KEYS[1], ARGV[1]) == 0 then
    return 0
end
redis.call("lpush", KEYS[2], ARGV[1])
redis.call("hset", ARGV[2] .. ARGV[1], "state", "waiting")
return 1
"""

# KEYS: active zset, wait list
# ARGV: claimed-before epoch ms, job key prefix
STALLED_SCRIPT = """
local stalled = redis.call("zrangebyscore", KEYS[1], "-inf", ARGV[1])
for _, id in ipairs(stalled) do
    redis.call("zrem", KEYS[1], id)
    redis.call("rpush", KEYS[2], id)
    redis.call("hset", ARGV[2] .. id, "state", "waiting")
end
return stalled
"""


class JobFailedError(Exception):
    def __init__(self, job_id: str, error: Optional[str]):
        super().__init__(f"Job {job_id} failed: {error}")
        self.job_id = job_id
        self.error = error


class JobTimeoutError(Exception):
    def __init__(self, job_id: str, timeout: float):
        super().__init__(f"Job {job_id} did not finish within {timeout}s")
        self.job_id = job_id
        self.timeout = timeout


def _now_ms() -> int:
    return int(time.time() * 1000)


def _queue_name(queue: Union[QueueName, str]) -> str:
    return queue.value if isinstance(queue, QueueName) else queue


class JobQueue:
    """Producer and state API shared by every named queue."""

    def __init__(self, cache: CacheService, configs: Dict[QueueName, QueueConfig],
                 poll_interval: float = 0.5):
        self.cache = cache
        self.configs = configs
        self.poll_interval = poll_interval

    # =========================================================================
    # KEYS
    # =========================================================================

    @staticmethod
    def _prefix(queue: str) -> str:
        return f"{QUEUE_KEY_PREFIX}{queue}"

    def _job_key(self, queue: str, job_id: str) -> str:
        return f"{self._prefix(queue)}:job:{job_id}"

    def config_for(self, queue: Union[QueueName, str]) -> QueueConfig:
        return self.configs[QueueName(_queue_name(queue))]

    # =========================================================================
    # PRODUCER
    # =========================================================================

    async def enqueue(self, queue: Union[QueueName, str], payload: Dict[str, Any],
                      job_id: Optional[str] = None, delay_ms: int = 0,
                      attempts: Optional[int] = None) -> Job:
        """Add a job; an existing ``job_id`` returns the stored job instead."""
        name = _queue_name(queue)
        job_id = job_id or str(uuid.uuid4())
        max_attempts = attempts or self.config_for(name).retry.max_attempts
        now = _now_ms()
        ready_at = now + delay_ms if delay_ms > 0 else 0
        prefix = self._prefix(name)

        created = await self.cache.client.eval(
            ENQUEUE_SCRIPT, 3,
            self._job_key(name, job_id), f"{prefix}:wait", f"{prefix}:delayed",
            job_id, json.dumps(payload, default=str), max_attempts, now, ready_at,
        )

        if not created:
            logger.info("Job already enqueued", queue=name, job_id=job_id)
            existing = await self.get_job(name, job_id)
            if existing is not None:
                return existing

        logger.debug("Job enqueued", queue=name, job_id=job_id, delay_ms=delay_ms)
        return Job(
            id=job_id,
            queue=name,
            payload=payload,
            state=JobState.DELAYED if ready_at else JobState.WAITING,
            max_attempts=max_attempts,
            created_at=now,
        )

    # =========================================================================
    # CONSUMER
    # =========================================================================

    async def claim(self, queue: Union[QueueName, str]) -> Optional[Job]:
        """Move due delayed jobs to the wait list and claim the oldest ready job."""
        name = _queue_name(queue)
        prefix = self._prefix(name)
        job_id = await self.cache.client.eval(
            CLAIM_SCRIPT, 3,
            f"{prefix}:wait", f"{prefix}:delayed", f"{prefix}:active",
            _now_ms(), f"{prefix}:job:",
        )
        if not job_id:
            return None
        return await self.get_job(name, job_id)

    async def requeue(self, job: Job) -> bool:
        """Put a claimed job back at the head of the wait list without spending an attempt."""
        prefix = self._prefix(job.queue)
        returned = await self.cache.client.eval(
            REQUEUE_SCRIPT, 2,
            f"{prefix}:active", f"{prefix}:wait",
            job.id, f"{prefix}:job:",
        )
        if returned:
            logger.info("Job returned to queue", queue=job.queue, job_id=job.id)
        return bool(returned)

    async def recover_stalled(self, queue: Union[QueueName, str], stalled_after_ms: int) -> List[str]:
        """Move jobs claimed more than ``stalled_after_ms`` ago back to the wait list.

        A job stays active only while a worker runs it, and every run is bound
        by the queue timeout, so an older claim belongs to a worker that died.
        """
        name = _queue_name(queue)
        prefix = self._prefix(name)
        stalled = await self.cache.client.eval(
            STALLED_SCRIPT, 2,
            f"{prefix}:active", f"{prefix}:wait",
            _now_ms() - stalled_after_ms, f"{prefix}:job:",
        )
        if stalled:
            logger.warning("Stalled jobs returned to queue", queue=name, job_ids=list(stalled))
        return list(stalled or [])

    async def complete(self, job: Job, result: Any) -> None:
        prefix = self._prefix(job.queue)
        now = _now_ms()
        async with self.cache.client.pipeline(transaction=True) as pipe:
            pipe.hset(self._job_key(job.queue, job.id), mapping={
                "state": JobState.COMPLETED.value,
                "result": json.dumps(result, default=str),
                "finished_at": now,
            })
            pipe.zrem(f"{prefix}:active", job.id)
            pipe.zadd(f"{prefix}:completed", {job.id: now})
            await pipe.execute()
        await self._trim(job.queue, "completed", self.config_for(job.queue).completed_retained)

    async def fail(self, job: Job, error: str) -> bool:
        """Record a failed attempt.

        Returns:
            True if the job was scheduled for another attempt
        """
        prefix = self._prefix(job.queue)
        policy = self.config_for(job.queue).retry
        attempts_made = job.attempts_made + 1
        now = _now_ms()
        job_key = self._job_key(job.queue, job.id)

        if attempts_made < job.max_attempts:
            delay = policy.calculate_delay(attempts_made)
            async with self.cache.client.pipeline(transaction=True) as pipe:
                pipe.hset(job_key, mapping={
                    "state": JobState.DELAYED.value,
                    "attempts_made": attempts_made,
                    "error": error,
                })
                pipe.zrem(f"{prefix}:active", job.id)
                pipe.zadd(f"{prefix}:delayed", {job.id: now + delay})
                await pipe.execute()
            logger.warning("Job attempt failed, retrying", queue=job.queue, job_id=job.id,
                           attempt=attempts_made, max_attempts=job.max_attempts,
                           retry_in_ms=delay, error=error)
            return True

        async with self.cache.client.pipeline(transaction=True) as pipe:
            pipe.hset(job_key, mapping={
                "state": JobState.FAILED.value,
                "attempts_made": attempts_made,
                "error": error,
                "finished_at": now,
            })
            pipe.zrem(f"{prefix}:active", job.id)
            pipe.zadd(f"{prefix}:failed", {job.id: now})
            await pipe.execute()
        logger.error("Job failed permanently", queue=job.queue, job_id=job.id,
                     attempts=attempts_made, error=error)
        await self._trim(job.queue, "failed", self.config_for(job.queue).failed_retained)
        return False

    async def _trim(self, queue: str, state: str, keep: int) -> None:
        """Drop the oldest finished jobs beyond the retention window."""
        key = f"{self._prefix(queue)}:{state}"
        overflow = await self.cache.client.zcard(key) - keep
        if overflow <= 0:
            return
        stale = await self.cache.client.zrange(key, 0, overflow - 1)
        if stale:
            await self.cache.client.zrem(key, *stale)
            await self.cache.delete(*[self._job_key(queue, job_id) for job_id in stale])

    # =========================================================================
    # STATE
    # =========================================================================

    async def get_job(self, queue: Union[QueueName, str], job_id: str) -> Optional[Job]:
        name = _queue_name(queue)
        data = await self.cache.client.hgetall(self._job_key(name, job_id))
        if not data:
            return None
        return Job(
            id=data["id"],
            queue=name,
            payload=json.loads(data.get("payload") or "{}"),
            state=JobState(data.get("state", JobState.WAITING.value)),
            attempts_made=int(data.get("attempts_made", 0)),
            max_attempts=int(data.get("max_attempts", 1)),
            result=json.loads(data["result"]) if data.get("result") else None,
            error=data.get("error"),
            created_at=int(data.get("created_at", 0)),
            finished_at=int(data["finished_at"]) if data.get("finished_at") else None,
        )

    async def wait_until_finished(self, queue: Union[QueueName, str], job_id: str,
                                  timeout: float) -> Any:
        """Block until the job completes and return its result.

        Raises:
            JobFailedError: If the job exhausted its attempts
            JobTimeoutError: If ``timeout`` seconds pass first
        """
        deadline = time.monotonic() + timeout
        while True:
            job = await self.get_job(queue, job_id)
            if job is not None:
                if job.state == JobState.COMPLETED:
                    return job.result
                if job.state == JobState.FAILED:
                    raise JobFailedError(job_id, job.error)
            if time.monotonic() >= deadline:
                raise JobTimeoutError(job_id, timeout)
            await asyncio.sleep(self.poll_interval)

    async def metrics(self, queue: Union[QueueName, str]) -> Dict[str, int]:
        prefix = self._prefix(_queue_name(queue))
        async with self.cache.client.pipeline(transaction=False) as pipe:
            pipe.llen(f"{prefix}:wait")
            pipe.zcard(f"{prefix}:delayed")
            pipe.zcard(f"{prefix}:active")
            pipe.zcard(f"{prefix}:completed")
            pipe.zcard(f"{prefix}:failed")
            waiting, delayed, active, completed, failed = await pipe.execute()
        return {
            "waiting": waiting,
            "delayed": delayed,
            "active": active,
            "completed": completed,
            "failed": failed,
        }
