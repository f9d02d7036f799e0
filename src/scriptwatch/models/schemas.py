"""Pydantic models for feed, packument and detection data."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Feed positions are strings on the replicate endpoint and integers on
# plain CouchDB deployments.
Cursor = Union[str, int]

DESIGN_DOC_PREFIX = "_design/"


class ScriptKind(str, Enum):
    """Install-time lifecycle scripts that are watched."""

    PREINSTALL = "preinstall"
    POSTINSTALL = "postinstall"


class ChangeEvent(BaseModel):
    """A single row of the registry change feed."""

    package_name: str

    @property
    def is_design_document(self) -> bool:
        """Design documents are database internals, not packages."""
        return self.package_name.startswith(DESIGN_DOC_PREFIX)


class ChangeBatch(BaseModel):
    """One page of the change feed and the position after it."""

    rows: list[ChangeEvent] = Field(default_factory=list)
    next_cursor: Cursor


class VersionManifest(BaseModel):
    """The manifest of a single published version."""

    model_config = ConfigDict(extra="allow")

    version: str | None = None
    scripts: dict[str, Any] = Field(default_factory=dict)

    @field_validator("scripts", mode="before")
    @classmethod
    def _coerce_scripts(cls, value: Any) -> dict[str, Any]:
        # Some old manifests carry a list or a string here
        if not isinstance(value, dict):
            return {}
        return value

    def script(self, kind: ScriptKind) -> str | None:
        """Return the command for a lifecycle script if it is non-blank."""
        value = self.scripts.get(kind.value)
        if isinstance(value, str) and value.strip():
            return value
        return None


class Packument(BaseModel):
    """A package's version history document."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = ""
    versions: dict[str, VersionManifest] = Field(default_factory=dict)
    time: dict[str, Any] = Field(default_factory=dict)
    dist_tags: dict[str, Any] = Field(default_factory=dict, alias="dist-tags")

    @field_validator("versions", mode="before")
    @classmethod
    def _drop_malformed_versions(cls, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict):
            return {}
        return {k: v for k, v in value.items() if isinstance(v, dict)}

    @field_validator("time", "dist_tags", mode="before")
    @classmethod
    def _coerce_mapping(cls, value: Any) -> dict[str, Any]:
        if not isinstance(value, dict):
            return {}
        return value

    @property
    def latest_tag(self) -> str | None:
        """Return the `latest` dist-tag if it is a string."""
        tag = self.dist_tags.get("latest")
        return tag if isinstance(tag, str) else None


class VersionPair(BaseModel):
    """The current version and the one published immediately before it."""

    latest: str
    previous: str | None = None


class Detection(BaseModel):
    """Result of comparing the latest version's scripts with the previous one."""

    latest: str | None = None
    previous: str | None = None
    introduced: bool = False
    script_kind: ScriptKind | None = None
    script_value: str | None = None


class Job(BaseModel):
    """A unit of work for the pipeline: evaluate one changed package."""

    package_name: str
    version: str | None = None
    previous_version: str | None = None

    @property
    def key(self) -> str:
        """Queue-level idempotency key."""
        if self.version:
            return f"{self.package_name}@{self.version}"
        return self.package_name


class DetectionEvent(BaseModel):
    """A confirmed introduction of an install-time script, sent to notifiers."""

    package_name: str
    version: str
    previous_version: str | None = None
    script_kind: ScriptKind
    script_command: str
    detected_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        """Deduplication key for this detection."""
        return detection_key(self.package_name, self.version)


def detection_key(package_name: str, version: str) -> str:
    """Build the `package@version` deduplication key."""
    return f"{package_name}@{version}"
