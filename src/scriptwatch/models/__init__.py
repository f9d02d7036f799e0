"""Data models and schemas."""

from scriptwatch.models.schemas import (
    ChangeBatch,
    ChangeEvent,
    Cursor,
    Detection,
    DetectionEvent,
    Job,
    Packument,
    ScriptKind,
    VersionManifest,
    VersionPair,
)

__all__ = [
    "ChangeBatch",
    "ChangeEvent",
    "Cursor",
    "Detection",
    "DetectionEvent",
    "Job",
    "Packument",
    "ScriptKind",
    "VersionManifest",
    "VersionPair",
]
