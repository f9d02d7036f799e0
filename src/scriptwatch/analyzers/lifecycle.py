"""Detection of newly introduced install-time lifecycle scripts.

A publish is flagged when its manifest runs a `preinstall` or `postinstall`
script that the version published immediately before it did not have.
Those scripts execute automatically on `npm install`, which makes a freshly
added one the classic signature of a hijacked package.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone

from scriptwatch.models.schemas import (
    Detection,
    Packument,
    ScriptKind,
    VersionManifest,
    VersionPair,
)

logger = logging.getLogger(__name__)


# Checked in this order; preinstall runs first and is reported first
WATCHED_SCRIPTS = (ScriptKind.PREINSTALL, ScriptKind.POSTINSTALL)

SEMVER_PATTERN = re.compile(
    r"^v?(\d+)\.(\d+)\.(\d+)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)


def parse_semver(version: str) -> tuple | None:
    """Return a sort key for a semantic version, or None if it isn't one.

    Release versions sort after their prereleases; numeric prerelease
    identifiers sort before alphanumeric ones and compare numerically.
    """
    match = SEMVER_PATTERN.match(version.strip())
    if not match:
        return None

    major, minor, patch = (int(match.group(i)) for i in range(1, 4))
    prerelease = match.group(4)
    if prerelease is None:
        return (major, minor, patch, 1, ())

    identifiers = tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in prerelease.split(".")
    )
    return (major, minor, patch, 0, identifiers)


def _parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO publish timestamp from the packument `time` map."""
    if not isinstance(value, str):
        return None
    # Handle both 'Z' suffix and explicit timezone
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def publish_times(packument: Packument) -> dict[str, datetime]:
    """Map each published version present in `versions` to its publish time.

    `created`, `modified` and unpublished entries are ignored.
    """
    times = {}
    for version, value in packument.time.items():
        if version not in packument.versions:
            continue
        parsed = _parse_timestamp(value)
        if parsed is not None:
            times[version] = parsed
    return times


def pick_version_pair(packument: Packument) -> VersionPair | None:
    """Determine the current version and the one published before it.

    `latest` comes from the `latest` dist-tag when it names a known version,
    then from the newest publish timestamp, then from semver ordering.

    Returns:
        VersionPair, or None if the packument has no versions.
    """
    versions = packument.versions
    if not versions:
        return None

    times = publish_times(packument)

    latest = packument.latest_tag
    if latest not in versions:
        latest = None
    if latest is None and times:
        latest = max(times, key=lambda v: times[v])
    if latest is None:
        ranked = sorted(
            (v for v in versions if parse_semver(v) is not None),
            key=parse_semver,
            reverse=True,
        )
        # Registry documents list versions in publish order
        latest = ranked[0] if ranked else list(versions)[-1]

    return VersionPair(latest=latest, previous=_previous_version(latest, versions, times))


def _previous_version(
    latest: str,
    versions: dict[str, VersionManifest],
    times: dict[str, datetime],
) -> str | None:
    others = [v for v in versions if v != latest]
    if not others:
        return None

    timed = [v for v in others if v in times]
    latest_time = times.get(latest)
    if latest_time is not None:
        earlier = [v for v in timed if times[v] < latest_time]
        if earlier:
            return max(earlier, key=lambda v: times[v])
    elif timed:
        return max(timed, key=lambda v: times[v])

    latest_key = parse_semver(latest)
    if latest_key is None:
        return None
    below = [
        v for v in others
        if (key := parse_semver(v)) is not None and key < latest_key
    ]
    if not below:
        return None
    return max(below, key=parse_semver)


class LifecycleDetector:
    """Decides whether the latest publish introduces an install-time script.

    Usage:
        detector = LifecycleDetector()
        result = detector.detect(packument)
        if result.introduced:
            ...
    """

    def __init__(self, flag_first_publish: bool = True) -> None:
        """Initialize the detector.

        Args:
            flag_first_publish: Flag a script on a version with no
                predecessor. There is no safe baseline to compare against,
                so this defaults to True.
        """
        self.flag_first_publish = flag_first_publish

    def detect(self, packument: Packument, pair: VersionPair | None = None) -> Detection:
        """Compare the scripts of the latest version against its predecessor.

        Args:
            packument: Package version history.
            pair: Versions already chosen by the producer. Ignored when its
                `latest` is not in the packument.

        Returns:
            Detection with the first introduced script kind and its command.
        """
        versions = packument.versions
        if not versions:
            return Detection()

        if pair is None or pair.latest not in versions:
            pair = pick_version_pair(packument)
            if pair is None:
                return Detection()

        latest_manifest = versions[pair.latest]
        previous_manifest = versions.get(pair.previous) if pair.previous else None

        result = Detection(latest=pair.latest, previous=pair.previous)

        for kind in WATCHED_SCRIPTS:
            command = latest_manifest.script(kind)
            if command is None:
                continue

            if previous_manifest is None:
                if pair.previous is not None:
                    # Named predecessor without a manifest (unpublished)
                    logger.debug(
                        f"{packument.name}: previous version {pair.previous} "
                        "has no manifest; treating as first publish"
                    )
                introduced = self.flag_first_publish
            else:
                introduced = previous_manifest.script(kind) is None

            if introduced:
                result.introduced = True
                result.script_kind = kind
                result.script_value = command
                break

        return result


def detect(packument: Packument, flag_first_publish: bool = True) -> Detection:
    """Run the detector with default settings."""
    return LifecycleDetector(flag_first_publish=flag_first_publish).detect(packument)
