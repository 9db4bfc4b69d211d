"""Configuration for token budgeting, compression and session storage.

User-facing configs leave every field optional; ``normalize_*`` resolves them
to concrete values. Environment variables (``CONTEXTBUDGET_*``, optionally
loaded from a ``.env`` file) provide defaults for the ``load_*`` helpers.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from .errors import ConfigurationError

load_dotenv()

DEFAULT_WARN_THRESHOLD = 0.80
DEFAULT_COMPACT_THRESHOLD = 0.90
DEFAULT_TARGET_RATIO = 0.70
DEFAULT_PRESERVE_RECENT_COUNT = 10
DEFAULT_PRUNE_MINIMUM = 20_000
DEFAULT_PRUNE_PROTECT = 40_000
DEFAULT_PRUNE_MAX_IMPORTANCE = 0.5
DEFAULT_SUMMARY_TIMEOUT_SECONDS = 60.0
DEFAULT_MAX_SUMMARY_TOKENS = 2_000
DEFAULT_CHARS_PER_TOKEN = 4
DEFAULT_SESSION_DIR = "~/.contextbudget/sessions"


class ModelInfo(BaseModel):
    """Model information used for budget decisions."""

    context_window: int = Field(gt=0)
    output_limit: int | None = None


class CompressionConfig(BaseModel):
    """User-facing compression configuration."""

    enabled: bool | None = None
    enable_pruning: bool | None = None
    enable_compaction: bool | None = None
    warn_threshold: float | None = None
    compact_threshold: float | None = None
    target_ratio: float | None = None
    preserve_recent_count: int | None = None
    prune_minimum: int | None = None
    prune_protect: int | None = None
    prune_max_importance: float | None = None
    summary_timeout_seconds: float | None = None
    max_summary_tokens: int | None = None
    chars_per_token: int | None = None
    retain_archived: bool | None = None


class NormalizedCompressionConfig(BaseModel):
    """Internal - all fields resolved to concrete values."""

    enabled: bool = True
    enable_pruning: bool = True
    enable_compaction: bool = True
    warn_threshold: float = DEFAULT_WARN_THRESHOLD
    compact_threshold: float = DEFAULT_COMPACT_THRESHOLD
    target_ratio: float = DEFAULT_TARGET_RATIO
    preserve_recent_count: int = Field(default=DEFAULT_PRESERVE_RECENT_COUNT, ge=0)
    prune_minimum: int = Field(default=DEFAULT_PRUNE_MINIMUM, ge=0)
    prune_protect: int = Field(default=DEFAULT_PRUNE_PROTECT, ge=0)
    prune_max_importance: float = DEFAULT_PRUNE_MAX_IMPORTANCE
    summary_timeout_seconds: float = Field(default=DEFAULT_SUMMARY_TIMEOUT_SECONDS, gt=0)
    max_summary_tokens: int = Field(default=DEFAULT_MAX_SUMMARY_TOKENS, gt=0)
    chars_per_token: int = Field(default=DEFAULT_CHARS_PER_TOKEN, gt=0)
    retain_archived: bool = True

    @model_validator(mode="after")
    def _check_thresholds(self) -> NormalizedCompressionConfig:
        if not 0 < self.target_ratio < self.warn_threshold:
            raise ValueError(
                f"target_ratio ({self.target_ratio}) must be in (0, warn_threshold)"
            )
        if not self.warn_threshold <= self.compact_threshold <= 1:
            raise ValueError(
                f"thresholds must satisfy warn ({self.warn_threshold}) <= "
                f"compact ({self.compact_threshold}) <= 1"
            )
        return self


class SessionConfig(BaseModel):
    """Session storage configuration."""

    storage_dir: str = DEFAULT_SESSION_DIR
    max_sessions: int = Field(default=50, gt=0)
    max_age_days: int = Field(default=30, gt=0)
    auto_save: bool = True


def normalize_compression_config(
    config: CompressionConfig | NormalizedCompressionConfig | None = None,
) -> NormalizedCompressionConfig:
    """Resolve a user-facing config to concrete values.

    Raises:
        ConfigurationError: If the resolved values are inconsistent
    """
    if isinstance(config, NormalizedCompressionConfig):
        return config
    overrides = config.model_dump(exclude_none=True) if config else {}
    try:
        return NormalizedCompressionConfig(**overrides)
    except ValueError as e:
        raise ConfigurationError("compression", overrides, str(e)) from e


# -- Environment loading ------------------------------------------------------


def _env(name: str, cast: Callable[[str], Any]) -> Any:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return None
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(name, raw, str(e)) from e


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError("expected a boolean")


def load_compression_config() -> NormalizedCompressionConfig:
    """Build a compression config from ``CONTEXTBUDGET_*`` environment variables."""
    config = CompressionConfig(
        enabled=_env("CONTEXTBUDGET_ENABLED", _parse_bool),
        enable_pruning=_env("CONTEXTBUDGET_ENABLE_PRUNING", _parse_bool),
        enable_compaction=_env("CONTEXTBUDGET_ENABLE_COMPACTION", _parse_bool),
        warn_threshold=_env("CONTEXTBUDGET_WARN_THRESHOLD", float),
        compact_threshold=_env("CONTEXTBUDGET_COMPACT_THRESHOLD", float),
        target_ratio=_env("CONTEXTBUDGET_TARGET_RATIO", float),
        preserve_recent_count=_env("CONTEXTBUDGET_PRESERVE_RECENT", int),
        prune_minimum=_env("CONTEXTBUDGET_PRUNE_MINIMUM", int),
        prune_protect=_env("CONTEXTBUDGET_PRUNE_PROTECT", int),
        summary_timeout_seconds=_env("CONTEXTBUDGET_SUMMARY_TIMEOUT", float),
        max_summary_tokens=_env("CONTEXTBUDGET_MAX_SUMMARY_TOKENS", int),
    )
    return normalize_compression_config(config)


def load_session_config() -> SessionConfig:
    """Build a session storage config from ``CONTEXTBUDGET_*`` environment variables."""
    overrides = {
        "storage_dir": os.getenv("CONTEXTBUDGET_SESSION_DIR"),
        "max_sessions": _env("CONTEXTBUDGET_MAX_SESSIONS", int),
        "max_age_days": _env("CONTEXTBUDGET_MAX_AGE_DAYS", int),
        "auto_save": _env("CONTEXTBUDGET_AUTO_SAVE", _parse_bool),
    }
    try:
        return SessionConfig(**{k: v for k, v in overrides.items() if v is not None})
    except ValueError as e:
        raise ConfigurationError("session", overrides, str(e)) from e
