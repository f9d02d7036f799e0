"""Watcher daemon: change poller, job queue, and workers."""

from .continuous import ContinuousWatcher
from .dedup import DedupCache
from .poller import ChangePoller, PollerStartupError, PollerState
from .work_queue import (
    InMemoryJobQueue,
    JobRecord,
    JobStatus,
    QueueBackend,
    QueueClosedError,
    RateLimit,
    WorkQueueStats,
)

__all__ = [
    "ChangePoller",
    "ContinuousWatcher",
    "DedupCache",
    "InMemoryJobQueue",
    "JobRecord",
    "JobStatus",
    "PollerStartupError",
    "PollerState",
    "QueueBackend",
    "QueueClosedError",
    "RateLimit",
    "WorkQueueStats",
]
