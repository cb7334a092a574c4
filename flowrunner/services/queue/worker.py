"""Queue consumer with bounded concurrency, throttling and retries."""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from flowrunner.core.logging import bind_job_context, get_logger, log_execution_time
from flowrunner.services.rate_limiter import RateLimiter
from .broker import JobQueue
from .jobs import Job, QueueConfig, QueueName

logger = get_logger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]

THROTTLE_WINDOW_MS = 1000

# Active jobs older than the queue timeout plus this grace are presumed orphaned
STALLED_GRACE_MS = 30_000
STALLED_SWEEP_INTERVAL = 30.0


class Worker:
    """Consumes one named queue.

    At most ``config.concurrency`` jobs run at once. Claimed jobs are counted
    against a ``max_jobs_per_second`` budget shared by every worker of the
    queue. A failing job is retried with exponential backoff until its
    attempts are exhausted.
    """

    def __init__(self, queue: JobQueue, config: QueueConfig, handler: JobHandler,
                 rate_limiter: Optional[RateLimiter] = None):
        self.queue = queue
        self.config = config
        self.handler = handler
        self.rate_limiter = rate_limiter
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(config.concurrency)

    @property
    def name(self) -> str:
        return self.config.name.value

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("Worker already running", queue=self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Worker started", queue=self.name, concurrency=self.config.concurrency,
                    max_jobs_per_second=self.config.max_jobs_per_second)

    async def stop(self) -> None:
        """Stop claiming jobs and wait for in-flight jobs to finish."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)
        logger.info("Worker stopped", queue=self.name)

    async def _poll_loop(self) -> None:
        next_sweep = 0.0
        while self._running:
            if time.monotonic() >= next_sweep:
                await self._recover_stalled()
                next_sweep = time.monotonic() + STALLED_SWEEP_INTERVAL

            await self._slots.acquire()
            try:
                job = await self.queue.claim(self.name)
            except Exception as e:
                self._slots.release()
                logger.error("Job claim failed", queue=self.name, error=str(e))
                await asyncio.sleep(self.queue.poll_interval)
                continue

            if job is None:
                self._slots.release()
                await asyncio.sleep(self.queue.poll_interval)
                continue

            try:
                await self._throttle()
            except asyncio.CancelledError:
                # Stopped before dispatch: the job was never run
                self._slots.release()
                await asyncio.shield(self.queue.requeue(job))
                raise
            task = asyncio.create_task(self._process(job))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _recover_stalled(self) -> None:
        stalled_after_ms = int(self.config.timeout_seconds * 1000) + STALLED_GRACE_MS
        try:
            await self.queue.recover_stalled(self.name, stalled_after_ms)
        except Exception as e:
            logger.error("Stalled job sweep failed", queue=self.name, error=str(e))

    async def _throttle(self) -> None:
        """Wait until the queue's per-second budget admits one more job."""
        if not self.rate_limiter:
            return
        while True:
            result = await self.rate_limiter.check_rate_limit(
                f"queue:{self.name}", self.config.max_jobs_per_second, THROTTLE_WINDOW_MS,
            )
            if result.allowed:
                return
            await asyncio.sleep((result.retry_after_ms or THROTTLE_WINDOW_MS) / 1000)

    async def _process(self, job: Job) -> None:
        start = time.time()
        with bind_job_context(self.name, job.id):
            try:
                try:
                    result = await asyncio.wait_for(self.handler(job), timeout=self.config.timeout_seconds)
                except Exception as e:
                    error = str(e) or type(e).__name__
                    if isinstance(e, asyncio.TimeoutError):
                        error = f"Job timed out after {self.config.timeout_seconds}s"
                    logger.error("Job handler failed", attempt=job.attempts_made + 1, error=error)
                    await self._record(self.queue.fail(job, error), "fail")
                else:
                    if await self._record(self.queue.complete(job, result), "complete"):
                        log_execution_time(logger, "job", start, time.time())
            finally:
                self._slots.release()

    async def _record(self, outcome: Awaitable[None], operation: str) -> bool:
        """Store a job outcome. A job left active by a failed write is picked up by the stalled sweep."""
        try:
            await outcome
        except Exception:
            logger.error("Job outcome not recorded", operation=operation, exc_info=True)
            return False
        return True

    async def run_once(self) -> bool:
        """Claim and process a single job inline. Returns False when the queue is empty."""
        await self._slots.acquire()
        job = await self.queue.claim(self.name)
        if job is None:
            self._slots.release()
            return False
        await self._process(job)
        return True


class WorkerPool:
    """One ``Worker`` per queue that has a handler."""

    def __init__(self, queue: JobQueue, handlers: Dict[QueueName, JobHandler],
                 rate_limiter: Optional[RateLimiter] = None):
        self.workers: List[Worker] = [
            Worker(queue, queue.config_for(name), handler, rate_limiter)
            for name, handler in handlers.items()
        ]

    async def start(self) -> None:
        for worker in self.workers:
            await worker.start()
        logger.info("Worker pool started", queues=[w.name for w in self.workers])

    async def stop(self) -> None:
        await asyncio.gather(*(worker.stop() for worker in self.workers))
        logger.info("Worker pool stopped")
