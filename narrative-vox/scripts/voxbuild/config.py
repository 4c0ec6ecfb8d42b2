#!/usr/bin/env python3
from __future__ import annotations

"""Runtime configuration for the narrative-vox audio build.

Environment variables and optional CLI overrides are mapped into frozen
dataclasses consumed by the engine client, the locator and the orchestrator.
"""

import os
from dataclasses import dataclass


DEFAULT_RETRY_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BASE_DELAY_MS = 400
DEFAULT_REQUEST_TIMEOUT_MS = 15000
DEFAULT_PROBE_TIMEOUT_MS = 2000
MAX_BUILD_WORKERS = 8


def _env_str(name: str, default: str) -> str:
    """Read string env var with trim + default fallback."""
    v = os.environ.get(name)
    return default if v is None else str(v).strip()


def _env_int(name: str, default: int) -> int:
    """Read integer env var, falling back to default on bad values."""
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    try:
        return int(str(v).strip())
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    """Read boolean env var from common truthy literals."""
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "on"}


def _clamp_int(value: int, low: int, high: int) -> int:
    """Clamp integer to inclusive range."""
    return max(low, min(high, value))


@dataclass(frozen=True)
class LoggingConfig:
    """Logging behavior used by `Logger`."""

    level: str
    debug_events: bool
    include_event_ids: bool

    @staticmethod
    def from_env() -> "LoggingConfig":
        """Build logging config from environment."""
        return LoggingConfig(
            level=_env_str("LOG_LEVEL", "INFO").upper(),
            debug_events=_env_bool("LOG_DEBUG_EVENTS", False),
            include_event_ids=_env_bool("LOG_INCLUDE_EVENT_IDS", True),
        )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry/timeout parameters applied to every engine call."""

    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS
    timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    def normalized(self) -> "RetryPolicy":
        """Return a copy with out-of-range values pulled back to sane floors."""
        return RetryPolicy(
            max_attempts=max(1, int(self.max_attempts)),
            base_delay_ms=max(0, int(self.base_delay_ms)),
            timeout_ms=max(1, int(self.timeout_ms)),
        )

    def to_manifest(self) -> dict:
        return {
            "retry_max_attempts": self.max_attempts,
            "retry_base_delay_ms": self.base_delay_ms,
            "request_timeout_ms": self.timeout_ms,
        }


@dataclass(frozen=True)
class EngineConfig:
    """Engine connection and build scheduling configuration."""

    voicevox_url: str
    retry_max_attempts: int
    retry_base_delay_ms: int
    request_timeout_ms: int
    probe_timeout_ms: int
    max_workers: int

    @staticmethod
    def from_env() -> "EngineConfig":
        """Build engine config from environment."""
        return EngineConfig(
            voicevox_url=_env_str("VOICEVOX_URL", ""),
            retry_max_attempts=max(1, _env_int("VOICEVOX_RETRY_MAX_ATTEMPTS", DEFAULT_RETRY_MAX_ATTEMPTS)),
            retry_base_delay_ms=max(0, _env_int("VOICEVOX_RETRY_BASE_DELAY_MS", DEFAULT_RETRY_BASE_DELAY_MS)),
            request_timeout_ms=max(1, _env_int("VOICEVOX_REQUEST_TIMEOUT_MS", DEFAULT_REQUEST_TIMEOUT_MS)),
            probe_timeout_ms=max(1, _env_int("VOICEVOX_PROBE_TIMEOUT_MS", DEFAULT_PROBE_TIMEOUT_MS)),
            max_workers=_clamp_int(_env_int("VOICEVOX_BUILD_MAX_WORKERS", 1), 1, MAX_BUILD_WORKERS),
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry_max_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            timeout_ms=self.request_timeout_ms,
        ).normalized()
