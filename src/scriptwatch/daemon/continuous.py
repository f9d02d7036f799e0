"""Continuous watcher daemon: change feed in, script detections out."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime, timezone

import httpx

from scriptwatch.adapters.base import BaseRegistryClient, NotFoundError
from scriptwatch.adapters.npm import NpmRegistryClient
from scriptwatch.analyzers.lifecycle import LifecycleDetector
from scriptwatch.config import WatchSettings
from scriptwatch.daemon.dedup import DedupCache
from scriptwatch.daemon.poller import ChangePoller
from scriptwatch.daemon.work_queue import InMemoryJobQueue, JobRecord, QueueBackend, RateLimit
from scriptwatch.models.schemas import Cursor, DetectionEvent, Job, VersionPair
from scriptwatch.monitoring import MetricsCollector
from scriptwatch.notify import BaseNotifier, LogNotifier

logger = logging.getLogger(__name__)


class ContinuousWatcher:
    """Daemon that watches npm for newly introduced install scripts.

    Runs a change poller (producer) and a pool of workers (consumers) over a
    shared job queue. Each worker fetches the changed package's packument,
    compares the latest version's preinstall/postinstall scripts with the
    previous version's, and reports new ones to the notifier.

    Features:
    - Bounded worker pool with a global rate limit
    - Per-job retries with exponential backoff
    - At-most-once reporting per package@version while cached
    - Graceful shutdown on SIGINT/SIGTERM or after `max_runtime`
    - Integration with MetricsCollector for monitoring

    Usage:
        watcher = ContinuousWatcher(WatchSettings.from_env())
        await watcher.run()  # Runs until SIGINT/SIGTERM
    """

    def __init__(
        self,
        settings: WatchSettings | None = None,
        client: BaseRegistryClient | None = None,
        notifier: BaseNotifier | None = None,
        queue: QueueBackend | None = None,
        metrics: MetricsCollector | None = None,
        cache: DedupCache | None = None,
        detector: LifecycleDetector | None = None,
    ) -> None:
        """Initialize the watcher.

        Args:
            settings: Watcher configuration (defaults when None).
            client: Registry client. If not provided, an npm client sharing
                one HTTP connection pool is created by `run()`.
            notifier: Detection sink (logs detections when None).
            queue: Job pipeline (an in-process queue when None).
            metrics: Metrics collector (in-memory when None).
            cache: Deduplication cache.
            detector: Lifecycle script detector.
        """
        self.settings = settings or WatchSettings()
        self.client = client
        self.notifier = notifier or LogNotifier()
        self.queue = queue or InMemoryJobQueue(
            attempts=self.settings.job_attempts,
            backoff_base=self.settings.job_backoff,
            backoff_max=self.settings.job_backoff_max,
            retain_seconds=self.settings.job_retain_seconds,
        )
        self.metrics = metrics or MetricsCollector()
        self.cache = cache or DedupCache(capacity=self.settings.cache_capacity)
        self.detector = detector or LifecycleDetector(
            flag_first_publish=self.settings.flag_first_publish
        )

        self.poller: ChangePoller | None = None

        self._shutdown = asyncio.Event()
        self._started_at: datetime | None = None
        self._jobs_processed = 0
        self._detections = 0

    def _build_client(self, http: httpx.AsyncClient | None) -> NpmRegistryClient:
        return NpmRegistryClient(
            client=http,
            replicate_db_url=self.settings.replicate_db_url,
            changes_url=self.settings.changes_url,
            registry_url=self.settings.registry_url,
            timeout=self.settings.request_timeout,
            full_metadata=self.settings.full_metadata,
        )

    async def process_job(self, job: Job) -> DetectionEvent | None:
        """Evaluate one changed package.

        Args:
            job: The package to evaluate. When `job.version` is set it is
                treated as the latest version to check.

        Returns:
            The reported detection, or None if nothing new was introduced
            or the latest version was already processed.

        Raises:
            NotFoundError: If the package no longer exists (not retried).
            RegistryError: On transport or decoding failures (retried).
            Exception: Whatever the notifier raises; the detection is then
                released so the retry can report it.
        """
        if self.client is None:
            self.client = self._build_client(None)

        try:
            packument = await self.client.get_packument(job.package_name)
        except NotFoundError:
            logger.warning(f"Package {job.package_name} not found; skipping")
            raise

        pair = (
            VersionPair(latest=job.version, previous=job.previous_version)
            if job.version
            else None
        )
        result = self.detector.detect(packument, pair)
        self._jobs_processed += 1

        if result.latest is None:
            logger.debug(f"{job.package_name}: no versions to compare")
            return None

        if not self.cache.check_and_mark(job.package_name, result.latest):
            logger.debug(f"{job.package_name}@{result.latest} already processed")
            return None

        if not result.introduced:
            return None

        event = DetectionEvent(
            package_name=job.package_name,
            version=result.latest,
            previous_version=result.previous,
            script_kind=result.script_kind,
            script_command=result.script_value,
        )

        if not self.cache.claim_detection(event.key):
            logger.debug(f"{event.key} already reported")
            return None

        try:
            await self.notifier.notify(event)
        except Exception:
            self.cache.release(job.package_name, result.latest, event.key)
            raise

        self._detections += 1
        self.metrics.record_detection(event)
        return event

    def request_shutdown(self) -> None:
        """Ask the daemon to stop; safe to call more than once."""
        if not self._shutdown.is_set():
            logger.info("Shutdown requested")
        self._shutdown.set()
        if self.poller is not None:
            self.poller.stop()

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_shutdown(signum: signal.Signals) -> None:
            logger.info(f"Received {signum.name}, initiating graceful shutdown...")
            self.request_shutdown()

        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, handle_shutdown, signum)
            except (NotImplementedError, RuntimeError):
                # Not available on this platform or outside the main thread
                logger.debug(f"Cannot install handler for {signum.name}")

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(signum)
            except (NotImplementedError, RuntimeError):
                pass

    def _on_job_completed(self, record: JobRecord) -> None:
        self.metrics.record_job(record.job.package_name, "completed")

    def _on_job_failed(self, record: JobRecord) -> None:
        self.metrics.record_job(record.job.package_name, "failed", record.last_error)

    async def run(self, since: Cursor | None = None, install_signal_handlers: bool = True) -> None:
        """Run the watcher until shutdown is requested.

        Args:
            since: Start from this feed cursor instead of the current head.
            install_signal_handlers: Stop on SIGINT/SIGTERM.

        Raises:
            PollerStartupError: If the starting cursor cannot be fetched.
        """
        settings = self.settings
        self._started_at = datetime.now(timezone.utc)

        if install_signal_handlers:
            self._setup_signal_handlers()

        http: httpx.AsyncClient | None = None
        if self.client is None:
            http = httpx.AsyncClient(timeout=settings.request_timeout)
            self.client = self._build_client(http)

        if isinstance(self.queue, InMemoryJobQueue):
            self.queue.on("completed", self._on_job_completed)
            self.queue.on("failed", self._on_job_failed)

        self.poller = ChangePoller(
            self.client,
            self.queue,
            batch_limit=settings.batch_limit,
            poll_interval=settings.poll_interval,
            backoff_initial=settings.backoff_initial,
            backoff_max=settings.backoff_max,
            metrics=self.metrics,
        )

        logger.info("Starting script watcher...")
        logger.info(f"Registry: {settings.registry_url}")
        logger.info(
            f"Workers: {settings.concurrency}, rate limit: "
            + (
                f"{settings.rate_limit}/{settings.rate_limit_period:g}s"
                if settings.rate_limit
                else "none"
            )
        )
        if settings.max_runtime:
            logger.info(f"Max runtime: {settings.max_runtime:g}s")

        try:
            await self.poller.initialize(since)

            rate_limit = (
                RateLimit(settings.rate_limit, settings.rate_limit_period)
                if settings.rate_limit
                else None
            )
            poller_task = asyncio.create_task(self.poller.run())
            consumer_task = asyncio.create_task(
                self.queue.consume(
                    self.process_job,
                    concurrency=settings.concurrency,
                    rate_limit=rate_limit,
                )
            )
            shutdown_task = asyncio.create_task(self._shutdown.wait())

            done, _ = await asyncio.wait(
                {poller_task, consumer_task, shutdown_task},
                timeout=settings.max_runtime,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if not done:
                logger.info(f"Max runtime of {settings.max_runtime:g}s reached")
            shutdown_task.cancel()

            await self._shutdown_tasks(poller_task, consumer_task)
        finally:
            if install_signal_handlers:
                self._remove_signal_handlers()
            if http is not None:
                await http.aclose()
            await self.notifier.aclose()
            self.metrics.finish()
            logger.info(
                f"Watcher shutdown complete. Jobs processed: {self._jobs_processed}, "
                f"detections: {self._detections}"
            )

    async def _shutdown_tasks(
        self, poller_task: asyncio.Task, consumer_task: asyncio.Task
    ) -> None:
        """Stop the producer, then drain the workers within the shutdown timeout."""
        self.request_shutdown()

        timeout = self.settings.shutdown_timeout
        try:
            await asyncio.wait_for(poller_task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Poller did not stop in time; cancelled")

        await self.queue.close()

        try:
            await asyncio.wait_for(consumer_task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Workers still busy after {timeout:g}s; cancelled")

    def get_status(self) -> dict:
        """Get current daemon status for monitoring.

        Returns:
            Dictionary with daemon status information
        """
        queue_state = (
            self.queue.peek_queue_state()
            if isinstance(self.queue, InMemoryJobQueue)
            else {"closed": self.queue.closed}
        )
        return {
            "running": not self._shutdown.is_set(),
            "started_at": self._started_at.isoformat() if self._started_at else None,
            "poller_state": self.poller.state.value if self.poller else None,
            "cursor": self.poller.cursor if self.poller else None,
            "consecutive_poll_errors": (
                self.poller.consecutive_errors if self.poller else 0
            ),
            "queue_state": queue_state,
            "cached_packages": self.cache.size(),
            "cache_generation": self.cache.generation,
            "jobs_processed": self._jobs_processed,
            "detections": self._detections,
        }
