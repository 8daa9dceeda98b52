"""Process-wide configuration for isobatch.

Every knob the controller reads between batches lives here: the default
drain timeout, the heartbeat interval, the per-task poll bound, where
output sinks are written, and whether process isolation is used at all.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup and on assignment
    - **Environment-driven:** ``ISOBATCH_*`` env vars and ``.env`` files
    - **Mutable between batches:** ``get_settings().default_timeout = 60``

Examples:
    >>> from isobatch.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.default_timeout
    1800.0

Tags:
    settings, configuration, pydantic, environment, isobatch

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

import tempfile
from enum import Enum
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class IsolationMode(str, Enum):
    """How submissions are executed."""

    AUTO = "auto"      # fork when the host supports it, else inline
    INLINE = "inline"  # never fork; run submissions in the controller


class IsoBatchSettings(BaseSettings):
    """isobatch configuration.

    All fields can be set via ``ISOBATCH_*`` environment variables (e.g.
    ``ISOBATCH_DEFAULT_TIMEOUT=60``) or through a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="ISOBATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
    )

    # ── Draining ─────────────────────────────────────────────────
    default_timeout: float = Field(
        default=1800.0,
        description="Seconds a drain waits before killing outstanding tasks (<= 0 waits forever)",
    )
    heartbeat_interval: float = Field(
        default=120.0,
        description="Seconds between 'still waiting' diagnostics (<= 0 disables)",
    )
    poll_interval: float = Field(
        default=0.5,
        gt=0,
        description="Bounded wait applied to each outstanding task per polling pass",
    )

    # ── Workers ──────────────────────────────────────────────────
    isolation: IsolationMode = Field(default=IsolationMode.AUTO)
    output_dir: Path = Field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "isobatch",
        description="Directory holding per-task output sinks",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="console")

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("console", "json"):
            raise ValueError("log_format must be 'console' or 'json'")
        return value

    @property
    def heartbeat_enabled(self) -> bool:
        return self.heartbeat_interval > 0


# ── Settings factory with caching ────────────────────────────────────────

_settings: IsoBatchSettings | None = None


def get_settings(*, _force_reload: bool = False) -> IsoBatchSettings:
    """Load, validate, and cache the process-wide settings."""
    global _settings
    if _settings is None or _force_reload:
        _settings = IsoBatchSettings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None


__all__ = ["IsolationMode", "IsoBatchSettings", "get_settings", "reset_settings"]
