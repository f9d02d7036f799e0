"""Change feed poller: the producer side of the pipeline."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

from scriptwatch.adapters.base import BaseRegistryClient
from scriptwatch.daemon.work_queue import QueueBackend, QueueClosedError
from scriptwatch.models.schemas import ChangeBatch, Cursor, Job
from scriptwatch.monitoring import MetricsCollector

logger = logging.getLogger(__name__)


class PollerState(str, Enum):
    """Poller lifecycle."""

    INITIALIZING = "initializing"
    POLLING = "polling"
    STOPPED = "stopped"


class PollerStartupError(Exception):
    """Raised when no starting cursor can be obtained."""


class ChangePoller:
    """Follows the registry change feed and submits one job per changed package.

    The cursor only moves forward: after each consumed batch it is set to the
    feed's `last_seq`, even when the batch was empty. A failed fetch keeps the
    cursor and retries with exponential backoff; the loop itself never gives
    up and runs until `stop()` is called.

    Usage:
        poller = ChangePoller(client, queue)
        await poller.initialize()
        await poller.run()  # Runs until stop()
    """

    # Seconds to wait after a failed feed fetch
    BACKOFF_INITIAL = 1.0
    BACKOFF_MAX = 30.0

    def __init__(
        self,
        client: BaseRegistryClient,
        queue: QueueBackend,
        batch_limit: int = 200,
        poll_interval: float = 1.5,
        backoff_initial: float | None = None,
        backoff_max: float | None = None,
        metrics: MetricsCollector | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        """Initialize the poller.

        Args:
            client: Registry client for feed reads.
            queue: Job pipeline that receives one job per changed package.
            batch_limit: Maximum rows per feed request.
            poll_interval: Seconds to sleep after an empty batch.
            backoff_initial: First wait after a feed error.
            backoff_max: Cap for the doubling backoff.
            metrics: Optional metrics collector.
            sleep: Replacement for the interruptible sleep (used in tests).
        """
        self.client = client
        self.queue = queue
        self.batch_limit = batch_limit
        self.poll_interval = poll_interval
        self.backoff_initial = backoff_initial or self.BACKOFF_INITIAL
        self.backoff_max = backoff_max or self.BACKOFF_MAX
        self.metrics = metrics

        self._sleep = sleep or self._interruptible_sleep
        self._stop_event = asyncio.Event()

        self.state = PollerState.INITIALIZING
        self._cursor: Cursor | None = None
        self._consecutive_errors = 0

    @property
    def cursor(self) -> Cursor | None:
        """The position the next batch will be read from."""
        return self._cursor

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def backoff_delay(self, failures: int) -> float:
        """Wait after a feed error preceded by `failures` consecutive errors."""
        return min(self.backoff_initial * (2 ** failures), self.backoff_max)

    async def initialize(self, since: Cursor | None = None) -> Cursor:
        """Fetch the feed head as the starting cursor.

        Args:
            since: Start from this cursor instead of the current head.

        Raises:
            PollerStartupError: If the head cursor cannot be fetched.
        """
        self.state = PollerState.INITIALIZING

        if since is not None:
            self._cursor = since
        else:
            try:
                self._cursor = await self.client.get_current_cursor()
            except Exception as e:
                self.state = PollerState.STOPPED
                if self.metrics:
                    self.metrics.set_state(self.state.value)
                raise PollerStartupError(f"could not fetch initial cursor: {e}") from e

        self.state = PollerState.POLLING
        if self.metrics:
            self.metrics.start(self._cursor)

        logger.info(f"Poller starting at cursor {self._cursor} (limit {self.batch_limit})")
        return self._cursor

    async def poll_once(self) -> ChangeBatch:
        """Fetch one batch, submit its jobs, and advance the cursor.

        Raises:
            RegistryError: If the feed fetch fails; the cursor is unchanged.
            QueueClosedError: If the pipeline stopped admitting jobs.
        """
        if self._cursor is None:
            raise RuntimeError("poller is not initialized")

        batch = await self.client.get_change_batch(self._cursor, self.batch_limit)

        submitted = 0
        for row in batch.rows:
            if row.is_design_document:
                continue
            if await self.queue.submit(Job(package_name=row.package_name)):
                submitted += 1

        self._cursor = batch.next_cursor

        if self.metrics:
            self.metrics.record_batch(len(batch.rows), submitted, self._cursor)
        if batch.rows:
            logger.debug(
                f"Consumed {len(batch.rows)} changes ({submitted} queued), "
                f"cursor now {self._cursor}"
            )

        return batch

    async def run(self) -> None:
        """Poll until stopped. Feed errors back off; they never end the loop."""
        if self._cursor is None:
            await self.initialize()

        while not self.stopping:
            try:
                batch = await self.poll_once()
            except QueueClosedError:
                logger.info("Job queue closed; poller exiting")
                break
            except Exception as e:
                await self._handle_error(e)
                continue

            self._consecutive_errors = 0

            if not batch.rows:
                await self._sleep(self.poll_interval)

        self.state = PollerState.STOPPED
        logger.info(f"Poller stopped at cursor {self._cursor}")

    def stop(self) -> None:
        """Request the loop to exit at its next suspension point."""
        self._stop_event.set()

    async def _handle_error(self, error: Exception) -> None:
        """Handle a failed feed fetch with exponential backoff."""
        backoff = self.backoff_delay(self._consecutive_errors)
        self._consecutive_errors += 1

        logger.error(
            f"Poll error at cursor {self._cursor}: {error}. "
            f"Retrying in {backoff:.1f}s (attempt {self._consecutive_errors})"
        )
        if self.metrics:
            self.metrics.record_poll_error(
                type(error).__name__, str(error), self._consecutive_errors
            )

        await self._sleep(backoff)

    async def _interruptible_sleep(self, seconds: float) -> None:
        """Sleep that can be interrupted by a stop request."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
