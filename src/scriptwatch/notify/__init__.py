"""Detection sinks."""

from scriptwatch.notify.base import (
    BaseNotifier,
    CompositeNotifier,
    JsonLinesNotifier,
    LogNotifier,
)

__all__ = ["BaseNotifier", "CompositeNotifier", "JsonLinesNotifier", "LogNotifier"]
