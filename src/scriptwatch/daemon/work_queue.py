"""Job pipeline for per-package change processing."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from scriptwatch.models.schemas import Job

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Lifecycle state of a submitted job."""

    WAITING = "waiting"  # Queued, not yet picked up
    ACTIVE = "active"  # A worker is running it
    DELAYED = "delayed"  # Failed, waiting for its retry backoff
    COMPLETED = "completed"
    FAILED = "failed"  # Attempts exhausted or not retryable


PENDING_STATUSES = {JobStatus.WAITING, JobStatus.ACTIVE, JobStatus.DELAYED}


@dataclass
class JobRecord:
    """Bookkeeping for one job key."""

    job_id: str
    job: Job
    status: JobStatus = JobStatus.WAITING
    attempts: int = 0
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    last_error: str | None = None
    result: Any = None
    rerun: bool = False

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES


@dataclass
class RateLimit:
    """At most `max_jobs` job starts per `period` seconds, across all workers."""

    max_jobs: int
    period: float = 1.0


@dataclass
class WorkQueueStats:
    """Statistics about the work queue."""

    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
    submitted: int = 0
    duplicates: int = 0
    retried: int = 0
    retained: int = 0


JobHandler = Callable[[Job], Awaitable[Any]]
JobListener = Callable[[JobRecord], None]


class QueueClosedError(Exception):
    """Raised when submitting to a queue that no longer admits jobs."""


class RateLimiter:
    """Sliding-window rate limiter shared by every worker of a queue.

    Waiters are served in arrival order; the lock is held while sleeping so
    a burst of workers cannot overrun the window.
    """

    def __init__(self, max_calls: int, period: float = 1.0) -> None:
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if period <= 0:
            raise ValueError("period must be positive")
        self.max_calls = max_calls
        self.period = period
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait until a call is allowed, then record it."""
        async with self._lock:
            while True:
                now = time.monotonic()
                while self._calls and self._calls[0] <= now - self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    return
                await asyncio.sleep(self._calls[0] + self.period - now)


class QueueBackend(ABC):
    """Interface between the change poller (producer) and workers."""

    @abstractmethod
    async def submit(self, job: Job) -> bool:
        """Enqueue a job.

        Returns:
            False if a job with the same key is already known (no-op). A
            name-only job submitted while its key is running is accepted
            and runs again once the current run finishes.

        Raises:
            QueueClosedError: If the queue has been closed.
        """
        ...

    @abstractmethod
    async def consume(
        self,
        handler: JobHandler,
        concurrency: int = 10,
        rate_limit: RateLimit | None = None,
    ) -> None:
        """Run workers that call `handler` for each job until closed."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Stop admitting jobs; in-flight jobs are allowed to finish."""
        ...

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...


class InMemoryJobQueue(QueueBackend):
    """In-process job queue with a bounded worker pool.

    Features:
    - Idempotent submission keyed by `package` or `package@version`
    - Global rate limit shared by all workers
    - Exponential retry backoff up to a fixed number of attempts
    - Completed/failed records retained for a bounded window

    Jobs are not persisted: anything waiting when the process exits is lost.

    Usage:
        queue = InMemoryJobQueue(attempts=5, backoff_base=5.0)
        consumer = asyncio.create_task(
            queue.consume(handle_job, concurrency=10, rate_limit=RateLimit(20))
        )
        await queue.submit(Job(package_name="left-pad"))
        ...
        await queue.close()
        await consumer
    """

    def __init__(
        self,
        attempts: int = 5,
        backoff_base: float = 5.0,
        backoff_max: float = 300.0,
        retain_seconds: float = 86400.0,
        max_retained: int | None = None,
    ) -> None:
        """Initialize the queue.

        Args:
            attempts: Maximum executions per job, including the first.
            backoff_base: Delay before the first retry, in seconds.
            backoff_max: Upper bound for retry delays.
            retain_seconds: How long finished records are kept.
            max_retained: Optional cap on the number of finished records.
        """
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.attempts = attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.retain = timedelta(seconds=retain_seconds)
        self.max_retained = max_retained

        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._records: dict[str, JobRecord] = {}
        self._finished: deque[JobRecord] = deque()
        self._delayed: set[asyncio.Task] = set()
        self._listeners: dict[str, list[JobListener]] = {"completed": [], "failed": []}

        self._handler: JobHandler | None = None
        self._limiter: RateLimiter | None = None
        self._concurrency = 0
        self._closed = False

        self._pending = 0
        self._idle = asyncio.Event()
        self._idle.set()

        self._stats = WorkQueueStats()

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event: str, listener: JobListener) -> None:
        """Register a listener for "completed" or "failed" jobs."""
        if event not in self._listeners:
            raise ValueError(f"Unknown queue event: {event}")
        self._listeners[event].append(listener)

    def retry_delay(self, attempts_made: int) -> float:
        """Backoff before the next attempt after `attempts_made` executions."""
        return min(self.backoff_base * (2 ** (attempts_made - 1)), self.backoff_max)

    async def submit(self, job: Job) -> bool:
        if self._closed:
            raise QueueClosedError("queue is closed")

        self._prune()

        job_id = job.key
        existing = self._records.get(job_id)
        # A name-only job resubmitted while one is running may describe a newer
        # publish than the document that run fetched, so it runs once more.
        if existing is not None and existing.status == JobStatus.ACTIVE and not job.version:
            if not existing.rerun:
                existing.rerun = True
                self._stats.submitted += 1
                logger.debug(f"Job {job_id} changed while running; queued a rerun")
            else:
                self._stats.duplicates += 1
            return True

        # Versioned keys stay deduplicated for the whole retention window;
        # name-only keys only while a job for the name is outstanding.
        if existing is not None and (existing.is_pending or job.version):
            self._stats.duplicates += 1
            logger.debug(f"Skipping duplicate job {job_id} ({existing.status.value})")
            return False

        self._records[job_id] = JobRecord(job_id=job_id, job=job)
        self._stats.submitted += 1
        self._pending += 1
        self._idle.clear()
        self._queue.put_nowait(job_id)
        return True

    async def consume(
        self,
        handler: JobHandler,
        concurrency: int = 10,
        rate_limit: RateLimit | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self._closed:
            return

        self._handler = handler
        self._limiter = (
            RateLimiter(rate_limit.max_jobs, rate_limit.period) if rate_limit else None
        )
        self._concurrency = concurrency

        logger.info(
            f"Starting {concurrency} workers"
            + (
                f" (rate limit {rate_limit.max_jobs}/{rate_limit.period:g}s)"
                if rate_limit
                else ""
            )
        )

        workers = [asyncio.create_task(self._worker(i)) for i in range(concurrency)]
        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        for task in list(self._delayed):
            task.cancel()

        dropped = 0
        for record in self._records.values():
            if record.status in (JobStatus.WAITING, JobStatus.DELAYED):
                dropped += 1
            elif record.status == JobStatus.ACTIVE:
                record.rerun = False
        if dropped:
            logger.warning(f"Queue closed with {dropped} unstarted jobs dropped")
            self._release(dropped)

        # Wake every idle worker so it can exit
        for _ in range(self._concurrency):
            self._queue.put_nowait(None)

    async def wait_idle(self) -> None:
        """Wait until no job is waiting, running, or delayed."""
        await self._idle.wait()

    def get(self, job_id: str) -> JobRecord | None:
        """Return the record for a job key, if still retained."""
        return self._records.get(job_id)

    def stats(self) -> WorkQueueStats:
        """Return counts by status plus cumulative counters."""
        stats = WorkQueueStats(
            submitted=self._stats.submitted,
            duplicates=self._stats.duplicates,
            retried=self._stats.retried,
            completed=self._stats.completed,
            failed=self._stats.failed,
        )
        for record in self._records.values():
            if record.status == JobStatus.WAITING:
                stats.waiting += 1
            elif record.status == JobStatus.ACTIVE:
                stats.active += 1
            elif record.status == JobStatus.DELAYED:
                stats.delayed += 1
            else:
                stats.retained += 1
        return stats

    def peek_queue_state(self) -> dict:
        """Return current queue state for monitoring."""
        stats = self.stats()
        return {
            "waiting": stats.waiting,
            "active": stats.active,
            "delayed": stats.delayed,
            "retained": stats.retained,
            "closed": self._closed,
        }

    async def _worker(self, index: int) -> None:
        """Take job keys off the queue until a shutdown sentinel arrives."""
        while True:
            job_id = await self._queue.get()
            try:
                if job_id is None:
                    logger.debug(f"Worker {index} exiting")
                    return
                if self._closed:
                    continue
                record = self._records.get(job_id)
                if record is None or record.status != JobStatus.WAITING:
                    continue
                await self._run(record)
            finally:
                self._queue.task_done()

    async def _run(self, record: JobRecord) -> None:
        """Execute one attempt of a job."""
        if self._limiter is not None:
            await self._limiter.acquire()
        # Dropped by close() while waiting for the limiter
        if self._closed:
            return

        record.status = JobStatus.ACTIVE
        record.attempts += 1

        try:
            record.result = await self._handler(record.job)
        except Exception as e:
            record.last_error = f"{type(e).__name__}: {e}"
            retryable = getattr(e, "retryable", True)

            if retryable and record.attempts < self.attempts and not self._closed:
                delay = self.retry_delay(record.attempts)
                record.status = JobStatus.DELAYED
                # The retry fetches fresh data anyway
                record.rerun = False
                self._stats.retried += 1
                logger.warning(
                    f"Job {record.job_id} failed (attempt {record.attempts}/"
                    f"{self.attempts}): {e}. Retrying in {delay:.1f}s"
                )
                self._schedule_retry(record, delay)
            else:
                logger.error(
                    f"Job {record.job_id} failed after {record.attempts} "
                    f"attempt(s): {record.last_error}"
                )
                self._finish(record, JobStatus.FAILED)
        else:
            self._finish(record, JobStatus.COMPLETED)

    def _schedule_retry(self, record: JobRecord, delay: float) -> None:
        task = asyncio.create_task(self._requeue_after(record, delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _requeue_after(self, record: JobRecord, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closed or self._records.get(record.job_id) is not record:
            return
        record.status = JobStatus.WAITING
        self._queue.put_nowait(record.job_id)

    def _finish(self, record: JobRecord, status: JobStatus) -> None:
        record.status = status
        record.finished_at = datetime.now(timezone.utc)
        self._finished.append(record)

        if status == JobStatus.COMPLETED:
            self._stats.completed += 1
        else:
            self._stats.failed += 1

        if record.rerun and not self._closed:
            # Count the rerun before releasing this one so wait_idle() holds
            rerun = JobRecord(job_id=record.job_id, job=record.job)
            self._records[record.job_id] = rerun
            self._pending += 1
            self._queue.put_nowait(record.job_id)
        record.rerun = False
        self._release(1)

        for listener in self._listeners[status.value]:
            try:
                listener(record)
            except Exception:
                logger.exception(f"Queue listener failed for job {record.job_id}")

        self._prune()

    def _release(self, count: int) -> None:
        """Mark `count` pending jobs as settled and wake idle waiters."""
        self._pending -= count
        if self._pending <= 0:
            self._pending = 0
            self._idle.set()

    def _prune(self) -> None:
        """Discard finished records older than the retention window."""
        cutoff = datetime.now(timezone.utc) - self.retain
        while self._finished and (
            self._finished[0].finished_at <= cutoff
            or (self.max_retained is not None and len(self._finished) > self.max_retained)
        ):
            record = self._finished.popleft()
            # A name-only key may have been resubmitted under a new record
            if self._records.get(record.job_id) is record:
                del self._records[record.job_id]
