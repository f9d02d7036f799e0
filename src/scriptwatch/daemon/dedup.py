"""Bounded deduplication cache for latest-version pointers and detections."""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class DedupCache:
    """Tracks the last `latest` version processed per package.

    Two things are remembered:
    - package name -> last seen latest version, so an unchanged latest
      pointer is not re-evaluated
    - `package@version` keys already reported, so a detection reaches the
      notifier at most once per cache generation

    When the pointer map grows past `capacity` the whole cache is cleared
    and a new generation starts. Every operation holds one lock, so the
    check-and-update methods are the serialization point for workers racing
    on the same package.

    Usage:
        cache = DedupCache(capacity=200_000)
        if cache.check_and_mark("left-pad", "1.3.0"):
            ...  # first time this latest pointer is seen
    """

    def __init__(self, capacity: int = 200_000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.generation = 0
        self._lock = threading.Lock()
        self._latest: dict[str, str] = {}
        self._flagged: set[str] = set()

    def seen(self, name: str) -> str | None:
        """Return the last latest version recorded for a package."""
        with self._lock:
            return self._latest.get(name)

    def mark_seen(self, name: str, version: str) -> None:
        """Record `version` as the latest processed for `name`."""
        with self._lock:
            self._latest[name] = version
            self._reset_if_overflow(self.capacity)

    def size(self) -> int:
        """Return the number of tracked packages."""
        with self._lock:
            return len(self._latest)

    def __len__(self) -> int:
        return self.size()

    def reset_if_overflow(self, capacity: int | None = None) -> bool:
        """Clear the cache if it holds more than `capacity` packages.

        Returns:
            True if the cache was reset.
        """
        with self._lock:
            return self._reset_if_overflow(capacity or self.capacity)

    def _reset_if_overflow(self, capacity: int) -> bool:
        """Reset implementation (must be called with lock held)."""
        if len(self._latest) <= capacity and len(self._flagged) <= capacity:
            return False
        self._latest.clear()
        self._flagged.clear()
        self.generation += 1
        logger.warning(
            f"Package cache exceeded {capacity}; cleared cache "
            f"(generation {self.generation})"
        )
        return True

    def check_and_mark(self, name: str, version: str) -> bool:
        """Atomically record a new latest pointer.

        Returns:
            True if `version` differs from the recorded one and is now
            recorded; False if it was already the latest seen.
        """
        with self._lock:
            if self._latest.get(name) == version:
                return False
            self._latest[name] = version
            self._reset_if_overflow(self.capacity)
            return True

    def claim_detection(self, key: str) -> bool:
        """Atomically reserve a `package@version` detection for reporting.

        Returns:
            True if the key had not been claimed in this generation.
        """
        with self._lock:
            if key in self._flagged:
                return False
            self._flagged.add(key)
            self._reset_if_overflow(self.capacity)
            return True

    def is_flagged(self, key: str) -> bool:
        """Return True if a detection key was already reported."""
        with self._lock:
            return key in self._flagged

    def release(self, name: str, version: str, key: str | None = None) -> None:
        """Undo a pointer update and detection claim after a failed report.

        Only removes the pointer if it still equals `version`, so a newer
        latest recorded meanwhile is kept.
        """
        with self._lock:
            if self._latest.get(name) == version:
                del self._latest[name]
            if key is not None:
                self._flagged.discard(key)

    def clear(self) -> None:
        """Drop everything and start a new generation."""
        with self._lock:
            self._latest.clear()
            self._flagged.clear()
            self.generation += 1
