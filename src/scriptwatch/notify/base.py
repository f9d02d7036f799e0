"""Notifier interface and the built-in detection sinks."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path

from scriptwatch.models.schemas import DetectionEvent

logger = logging.getLogger(__name__)


class BaseNotifier(ABC):
    """Receives confirmed script introductions.

    Implementations may raise to signal a failed delivery; the job is then
    retried and the detection is not marked as reported.
    """

    @abstractmethod
    async def notify(self, event: DetectionEvent) -> None:
        """Deliver one detection event."""
        ...

    async def aclose(self) -> None:
        """Release any resources held by the notifier."""


class LogNotifier(BaseNotifier):
    """Writes each detection to the log at WARNING level."""

    async def notify(self, event: DetectionEvent) -> None:
        previous = (
            f"prev: {event.previous_version}"
            if event.previous_version
            else "first publish / unknown prev"
        )
        logger.warning(
            f"FLAG {event.script_kind.value} added: "
            f"{event.package_name}@{event.version} ({previous})\n"
            f"  {event.script_kind.value}: {event.script_command!r}"
        )


class JsonLinesNotifier(BaseNotifier):
    """Appends detections to a JSON Lines file, one event per line."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = asyncio.Lock()

    async def notify(self, event: DetectionEvent) -> None:
        line = event.model_dump_json() + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append, line)

    def _append(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)


class CompositeNotifier(BaseNotifier):
    """Fans a detection out to several notifiers in order.

    A failure in any of them propagates, so the job is retried; sinks that
    already succeeded will see the event again on the retry.
    """

    def __init__(self, notifiers: list[BaseNotifier]) -> None:
        self.notifiers = notifiers

    async def notify(self, event: DetectionEvent) -> None:
        for notifier in self.notifiers:
            await notifier.notify(event)

    async def aclose(self) -> None:
        for notifier in self.notifiers:
            await notifier.aclose()
