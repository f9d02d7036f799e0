"""Thread-safe metrics collector for watcher monitoring."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from scriptwatch.models.schemas import DetectionEvent

logger = logging.getLogger(__name__)

MAX_RECENT_ERRORS = 10
MAX_RECENT_DETECTIONS = 50


@dataclass
class ErrorEntry:
    """A recorded error from the poller or a worker."""

    timestamp: datetime
    package: str
    error_type: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "package": self.package,
            "error_type": self.error_type,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorEntry:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            package=data["package"],
            error_type=data["error_type"],
            message=data["message"],
        )


@dataclass
class DetectionEntry:
    """A log entry for a reported script introduction."""

    timestamp: datetime
    package: str
    version: str
    previous_version: str | None
    script_kind: str
    command: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "package": self.package,
            "version": self.version,
            "previous_version": self.previous_version,
            "script_kind": self.script_kind,
            "command": self.command,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetectionEntry:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            package=data["package"],
            version=data["version"],
            previous_version=data.get("previous_version"),
            script_kind=data["script_kind"],
            command=data["command"],
        )


@dataclass
class WatchMetrics:
    """Current state of the watcher."""

    # Feed
    state: str = ""
    cursor: str = ""
    start_time: datetime | None = None
    last_poll_at: datetime | None = None
    batches_polled: int = 0
    rows_seen: int = 0
    poll_errors: int = 0
    consecutive_poll_errors: int = 0

    # Jobs
    jobs_submitted: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    detections: int = 0

    # Ring buffers
    recent_errors: deque[ErrorEntry] = field(
        default_factory=lambda: deque(maxlen=MAX_RECENT_ERRORS)
    )
    recent_detections: deque[DetectionEntry] = field(
        default_factory=lambda: deque(maxlen=MAX_RECENT_DETECTIONS)
    )

    is_running: bool = False
    last_updated: datetime | None = None

    @property
    def elapsed_seconds(self) -> float:
        """Calculate elapsed time in seconds."""
        if self.start_time is None:
            return 0.0
        return (datetime.now() - self.start_time).total_seconds()

    @property
    def jobs_per_minute(self) -> float:
        """Average finished jobs per minute since start."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return (self.jobs_completed + self.jobs_failed) / elapsed * 60

    def to_dict(self) -> dict[str, Any]:
        """Serialize metrics to a dictionary for JSON storage."""
        return {
            "state": self.state,
            "cursor": self.cursor,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "batches_polled": self.batches_polled,
            "rows_seen": self.rows_seen,
            "poll_errors": self.poll_errors,
            "consecutive_poll_errors": self.consecutive_poll_errors,
            "jobs_submitted": self.jobs_submitted,
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "detections": self.detections,
            "recent_errors": [e.to_dict() for e in self.recent_errors],
            "recent_detections": [d.to_dict() for d in self.recent_detections],
            "is_running": self.is_running,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WatchMetrics:
        """Deserialize metrics from a dictionary."""
        metrics = cls(
            state=data.get("state", ""),
            cursor=data.get("cursor", ""),
            start_time=(
                datetime.fromisoformat(data["start_time"])
                if data.get("start_time")
                else None
            ),
            last_poll_at=(
                datetime.fromisoformat(data["last_poll_at"])
                if data.get("last_poll_at")
                else None
            ),
            batches_polled=data.get("batches_polled", 0),
            rows_seen=data.get("rows_seen", 0),
            poll_errors=data.get("poll_errors", 0),
            consecutive_poll_errors=data.get("consecutive_poll_errors", 0),
            jobs_submitted=data.get("jobs_submitted", 0),
            jobs_completed=data.get("jobs_completed", 0),
            jobs_failed=data.get("jobs_failed", 0),
            detections=data.get("detections", 0),
            is_running=data.get("is_running", False),
            last_updated=(
                datetime.fromisoformat(data["last_updated"])
                if data.get("last_updated")
                else None
            ),
        )

        # Restore deques
        metrics.recent_errors = deque(
            [ErrorEntry.from_dict(e) for e in data.get("recent_errors", [])],
            maxlen=MAX_RECENT_ERRORS,
        )
        metrics.recent_detections = deque(
            [DetectionEntry.from_dict(d) for d in data.get("recent_detections", [])],
            maxlen=MAX_RECENT_DETECTIONS,
        )

        return metrics


class MetricsCollector:
    """Thread-safe metrics collector for the watcher.

    Collects counters while the daemon runs and persists them to a JSON file
    so the TUI dashboard can follow along from another process. Pass
    `metrics_file=None` to keep metrics in memory only.
    """

    def __init__(self, metrics_file: Path | None = None, save_interval: int = 25):
        self._lock = threading.Lock()
        self._metrics_file = metrics_file
        self._save_counter = 0
        self._save_interval = save_interval  # Save after every N batches, jobs or detections
        self._metrics = WatchMetrics()

    def start(self, cursor: object) -> None:
        """Mark the watcher as running from `cursor`."""
        with self._lock:
            self._metrics = WatchMetrics(
                state="polling",
                cursor=str(cursor),
                start_time=datetime.now(),
                is_running=True,
                last_updated=datetime.now(),
            )
            self._save()

    def set_state(self, state: str) -> None:
        """Record the poller state."""
        with self._lock:
            self._metrics.state = state
            self._metrics.last_updated = datetime.now()
            self._save()

    def record_batch(self, rows: int, submitted: int, cursor: object) -> None:
        """Record a consumed change batch and the cursor after it."""
        with self._lock:
            self._metrics.batches_polled += 1
            self._metrics.rows_seen += rows
            self._metrics.jobs_submitted += submitted
            self._metrics.cursor = str(cursor)
            self._metrics.consecutive_poll_errors = 0
            self._metrics.last_poll_at = datetime.now()
            self._metrics.last_updated = datetime.now()
            if rows:
                self._maybe_save()

    def record_poll_error(self, error_type: str, message: str, consecutive: int) -> None:
        """Record a failed feed fetch."""
        with self._lock:
            self._metrics.poll_errors += 1
            self._metrics.consecutive_poll_errors = consecutive
            self._append_error("<feed>", error_type, message)
            self._save()

    def record_job(self, package: str, status: str, error: str | None = None) -> None:
        """Record a finished job ("completed" or "failed")."""
        with self._lock:
            if status == "completed":
                self._metrics.jobs_completed += 1
            else:
                self._metrics.jobs_failed += 1
                error_type, _, message = (error or "Error: unknown").partition(": ")
                self._append_error(package, error_type, message)
            self._metrics.last_updated = datetime.now()
            self._maybe_save()

    def record_detection(self, event: DetectionEvent) -> None:
        """Record a detection that was reported."""
        with self._lock:
            self._metrics.detections += 1
            self._metrics.recent_detections.append(
                DetectionEntry(
                    timestamp=datetime.now(),
                    package=event.package_name,
                    version=event.version,
                    previous_version=event.previous_version,
                    script_kind=event.script_kind.value,
                    command=event.script_command,
                )
            )
            self._metrics.last_updated = datetime.now()
            self._maybe_save()

    def finish(self) -> None:
        """Mark the watcher as stopped."""
        with self._lock:
            self._metrics.is_running = False
            self._metrics.state = "stopped"
            self._metrics.last_updated = datetime.now()
            self._save()

    def get_metrics(self) -> WatchMetrics:
        """Get a copy of current metrics."""
        with self._lock:
            return WatchMetrics.from_dict(self._metrics.to_dict())

    def _append_error(self, package: str, error_type: str, message: str) -> None:
        """Append to the error ring buffer (must be called with lock held)."""
        self._metrics.recent_errors.append(
            ErrorEntry(
                timestamp=datetime.now(),
                package=package,
                error_type=error_type,
                message=message,
            )
        )
        self._metrics.last_updated = datetime.now()

    def _maybe_save(self) -> None:
        """Save on every Nth update (must be called with lock held)."""
        self._save_counter += 1
        if self._save_counter >= self._save_interval:
            self._save()

    def _save(self) -> None:
        """Save metrics to file (must be called with lock held)."""
        self._save_counter = 0
        if self._metrics_file is None:
            return
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._metrics_file, "w") as f:
                json.dump(self._metrics.to_dict(), f, indent=2)
        except OSError as e:
            # A full disk must not stop the watcher
            logger.warning(f"Could not save metrics to {self._metrics_file}: {e}")

    def load(self) -> WatchMetrics:
        """Load metrics from file (for dashboard use)."""
        if self._metrics_file is None:
            return self.get_metrics()
        try:
            if self._metrics_file.exists():
                with open(self._metrics_file) as f:
                    data = json.load(f)
                return WatchMetrics.from_dict(data)
        except (OSError, json.JSONDecodeError, KeyError, ValueError) as e:
            logger.debug(f"Could not read metrics from {self._metrics_file}: {e}")
        return WatchMetrics()
