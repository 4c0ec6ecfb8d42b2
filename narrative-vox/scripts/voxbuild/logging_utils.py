#!/usr/bin/env python3
from __future__ import annotations

"""Structured single-line logger with a timing helper."""

import json
import sys
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterator, Optional

from .config import LoggingConfig


LEVEL_TO_INT = {
    "DEBUG": 10,
    "INFO": 20,
    "WARN": 30,
    "ERROR": 40,
}

_EMIT_LOCK = threading.Lock()


def _safe_json(value: object) -> str:
    """Serialize log fields deterministically."""
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


@dataclass
class Logger:
    """Minimal structured logger shared by build components."""

    config: LoggingConfig
    run_id: str

    @staticmethod
    def create(config: LoggingConfig, run_id: str = "") -> "Logger":
        """Create logger bound to a run id, random when not given."""
        return Logger(config=config, run_id=run_id or uuid.uuid4().hex[:10])

    def _enabled(self, level: str) -> bool:
        current = LEVEL_TO_INT.get(self.config.level, 20)
        wanted = LEVEL_TO_INT.get(level, 20)
        return wanted >= current

    def _emit(self, level: str, message: str, fields: Optional[Dict[str, object]] = None) -> None:
        """Emit one structured log line to stderr."""
        if not self._enabled(level):
            return
        timestamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        event_id = uuid.uuid4().hex[:8] if self.config.include_event_ids else ""
        suffix = " " + _safe_json(fields) if fields else ""
        prefix = f"[{timestamp}] [{level}] [run:{self.run_id}]"
        if event_id:
            prefix = f"{prefix} [event:{event_id}]"
        # Worker threads share stderr.
        with _EMIT_LOCK:
            print(f"{prefix} {message}{suffix}", file=sys.stderr, flush=True)

    def debug(self, message: str, **fields: object) -> None:
        """Emit DEBUG logs only when debug events are enabled."""
        if self.config.debug_events:
            self._emit("DEBUG", message, fields or None)

    def info(self, message: str, **fields: object) -> None:
        self._emit("INFO", message, fields or None)

    def warn(self, message: str, **fields: object) -> None:
        self._emit("WARN", message, fields or None)

    def error(self, message: str, **fields: object) -> None:
        self._emit("ERROR", message, fields or None)

    @contextmanager
    def timed(self, name: str, **fields: object) -> Iterator[None]:
        """Log `<name>_started` / `<name>_completed` with elapsed milliseconds."""
        started = time.time()
        self.info(f"{name}_started", **fields)
        try:
            yield
        finally:
            end_fields = dict(fields)
            end_fields["elapsed_ms"] = int((time.time() - started) * 1000)
            self.info(f"{name}_completed", **end_fields)
