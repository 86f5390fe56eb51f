"""
Node configuration via pydantic-settings.

Every tunable of a jobspine node lives here and is read from
``JOBSPINE_*`` environment variables or a ``.env`` file, so operators
size poll latency, concurrency and lease lifetimes without code changes.

Manifesto:
    The poll interval is the single knob trading scheduling latency for
    store load; lease TTLs bound how long a crashed node can block a job.
    Both are deployment decisions, not constants.

Examples:
    >>> import os
    >>> os.environ["JOBSPINE_POLL_INTERVAL_SECONDS"] = "2.5"
    >>> clear_settings_cache()
    >>> get_settings().poll_interval_seconds
    2.5

Tags:
    configuration, pydantic-settings, environment, jobspine

Doc-Types:
    - API Reference
    - Configuration Documentation
"""

from __future__ import annotations

import socket

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_node_id() -> str:
    return socket.gethostname() or "jobspine-node"


class JobSpineSettings(BaseSettings):
    """Settings for one engine node.

    Environment variables are prefixed with ``JOBSPINE_``; e.g.
    ``JOBSPINE_NODE_ID=node-a`` or ``JOBSPINE_MAX_CONCURRENT_JOBS=4``.
    """

    model_config = SettingsConfigDict(
        env_prefix="JOBSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Database ─────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///jobspine.db")

    # ── Node identity ────────────────────────────────────────────
    node_id: str = Field(
        default_factory=_default_node_id,
        description="Stable logical identity; must survive restarts for crash recovery",
    )

    # ── Polling ──────────────────────────────────────────────────
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    max_concurrent_jobs: int = Field(default=10, ge=1)
    lock_cleanup_every_ticks: int = Field(default=12, ge=1)
    reap_expired_running: bool = Field(default=True)
    shutdown_grace_seconds: float = Field(default=5.0, ge=0)

    # ── Leases ───────────────────────────────────────────────────
    lease_ttl_seconds: int = Field(default=600, ge=1)
    lease_grace_seconds: int = Field(default=30, ge=0)

    # ── Job defaults ─────────────────────────────────────────────
    default_timeout_seconds: int = Field(default=600, ge=1)
    default_max_retries: int = Field(default=3, ge=0)
    backoff_base_seconds: int = Field(default=5, ge=1)
    max_backoff_seconds: int = Field(default=3600, ge=1)
    history_default_limit: int = Field(default=10, ge=1)

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_json: bool | None = Field(default=None)

    @model_validator(mode="after")
    def _validate_backoff(self) -> JobSpineSettings:
        if self.max_backoff_seconds < self.backoff_base_seconds:
            raise ValueError("max_backoff_seconds must be >= backoff_base_seconds")
        return self


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, JobSpineSettings] = {}


def get_settings(*, _force_reload: bool = False) -> JobSpineSettings:
    """Load, validate, and cache a :class:`JobSpineSettings` instance."""
    if not _force_reload and "default" in _settings_cache:
        return _settings_cache["default"]
    settings = JobSpineSettings()
    _settings_cache["default"] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()
