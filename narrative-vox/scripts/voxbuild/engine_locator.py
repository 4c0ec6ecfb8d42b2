#!/usr/bin/env python3
from __future__ import annotations

"""Engine base-URL discovery.

An explicit URL wins outright. Otherwise `VOICEVOX_URL` and a fixed list of
well-known local/container addresses are probed in order; the first one that
answers `GET /version` (or, failing that, `GET /speakers`) is used.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .config import EngineConfig, RetryPolicy
from .engine_client import EngineClient, normalize_engine_url
from .errors import EngineRequestError, EngineUnavailableError
from .logging_utils import Logger


AUTO_DETECT_ENGINE_URLS = (
    "http://127.0.0.1:50021",
    "http://voicevox-engine:50021",
    "http://host.docker.internal:50021",
    "http://narrative-vox-voicevox-engine:50021",
)
PROBE_PATHS = ("/version", "/speakers")


@dataclass
class EngineLocator:
    logger: Logger
    env_url: str = ""
    candidates: Sequence[str] = AUTO_DETECT_ENGINE_URLS
    probe_timeout_seconds: float = 2.0

    @staticmethod
    def from_config(config: EngineConfig, *, logger: Logger) -> "EngineLocator":
        return EngineLocator(
            logger=logger,
            env_url=config.voicevox_url,
            probe_timeout_seconds=config.probe_timeout_ms / 1000.0,
        )

    def candidate_urls(self) -> List[str]:
        ordered: List[str] = []
        for raw in ([self.env_url] if self.env_url else []) + list(self.candidates):
            url = normalize_engine_url(raw)
            if url and url not in ordered:
                ordered.append(url)
        return ordered

    def probe_client(self, base_url: str) -> EngineClient:
        return EngineClient(
            base_url=base_url,
            retry=RetryPolicy(max_attempts=1, timeout_ms=max(1, int(self.probe_timeout_seconds * 1000))),
            logger=self.logger,
        )

    def _probe_path(self, client: EngineClient, path: str) -> bool:
        try:
            response = client.get(path, self.probe_timeout_seconds)
        except EngineRequestError as exc:
            self.logger.debug(
                "engine_probe_failed",
                url=exc.endpoint,
                status_code=exc.status_code,
                error_kind=exc.error_kind,
            )
            return False
        return 200 <= response.status_code < 300

    def is_reachable(self, base_url: str) -> bool:
        client = self.probe_client(base_url)
        return any(self._probe_path(client, path) for path in PROBE_PATHS)

    def resolve(self, explicit_url: Optional[str] = None) -> str:
        """Return a reachable engine base URL without a trailing slash."""
        if explicit_url and explicit_url.strip():
            return normalize_engine_url(explicit_url)
        tried = self.candidate_urls()
        for candidate in tried:
            if self.is_reachable(candidate):
                self.logger.info("engine_url_resolved", url=candidate)
                return candidate
        raise EngineUnavailableError(
            f"VOICEVOX engine is not reachable. Tried: {', '.join(tried)}. "
            "Use --voicevox-url explicitly if needed.",
            candidates=tried,
        )
