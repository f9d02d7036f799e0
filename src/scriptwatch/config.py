"""Watcher settings loaded from the environment."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel, Field, field_validator

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


class WatchSettings(BaseModel):
    """Configuration for the watcher daemon.

    Durations are seconds; the environment uses milliseconds for the
    variables inherited from the Node deployment (`POLL_MS` and friends).
    """

    replicate_db_url: str = "https://replicate.npmjs.com/"
    changes_url: str = "https://replicate.npmjs.com/_changes"
    registry_url: str = "https://registry.npmjs.org/"

    batch_limit: int = Field(200, ge=1, le=5000)
    poll_interval: float = Field(1.5, ge=0.25)
    backoff_initial: float = Field(1.0, gt=0)
    backoff_max: float = Field(30.0, gt=0)

    concurrency: int = Field(10, ge=1)
    rate_limit: int | None = Field(20, ge=1)
    rate_limit_period: float = Field(1.0, gt=0)

    cache_capacity: int = Field(200_000, ge=1)

    job_attempts: int = Field(5, ge=1)
    job_backoff: float = Field(5.0, ge=0)
    job_backoff_max: float = Field(300.0, gt=0)
    job_retain_seconds: float = Field(86400.0, ge=0)

    request_timeout: float = Field(60.0, gt=0)
    full_metadata: bool = False
    flag_first_publish: bool = True

    max_runtime: float | None = Field(None, gt=0)
    shutdown_timeout: float = Field(30.0, ge=0)

    data_dir: Path = Path("data")
    events_file: Path | None = None

    @field_validator("backoff_max")
    @classmethod
    def _backoff_cap_not_below_initial(cls, value: float, info) -> float:
        initial = info.data.get("backoff_initial")
        if initial is not None and value < initial:
            raise ValueError("backoff_max must be >= backoff_initial")
        return value

    @property
    def metrics_file(self) -> Path:
        return self.data_dir / ".watch-metrics.json"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> WatchSettings:
        """Build settings from environment variables.

        Args:
            environ: Mapping to read instead of `os.environ`.
            **overrides: Values that win over the environment (CLI options).
                None values are ignored.
        """
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}

        def ms(name: str, field: str) -> None:
            if env.get(name):
                values[field] = float(env[name]) / 1000

        def plain(name: str, field: str) -> None:
            if env.get(name):
                values[field] = env[name]

        def flag(name: str, field: str) -> None:
            raw = env.get(name)
            if not raw:
                return
            lowered = raw.strip().lower()
            if lowered in TRUE_VALUES:
                values[field] = True
            elif lowered in FALSE_VALUES:
                values[field] = False
            else:
                raise ValueError(f"{name} must be a boolean, got {raw!r}")

        plain("NPM_REPLICATE_DB_URL", "replicate_db_url")
        plain("NPM_CHANGES_URL", "changes_url")
        plain("NPM_REGISTRY_URL", "registry_url")
        plain("CHANGES_LIMIT", "batch_limit")
        ms("POLL_MS", "poll_interval")
        plain("MAX_CONCURRENCY", "concurrency")
        plain("RATE_LIMIT", "rate_limit")
        ms("RATE_LIMIT_PERIOD_MS", "rate_limit_period")
        plain("MAX_CACHE_PACKAGES", "cache_capacity")
        plain("JOB_ATTEMPTS", "job_attempts")
        ms("JOB_BACKOFF_MS", "job_backoff")
        plain("JOB_RETAIN_SECONDS", "job_retain_seconds")
        ms("REQUEST_TIMEOUT_MS", "request_timeout")
        flag("FULL_METADATA", "full_metadata")
        flag("FLAG_FIRST_PUBLISH", "flag_first_publish")
        plain("MAX_RUNTIME", "max_runtime")
        plain("SCRIPTWATCH_DATA_DIR", "data_dir")
        plain("SCRIPTWATCH_EVENTS_FILE", "events_file")

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.model_validate(values)
