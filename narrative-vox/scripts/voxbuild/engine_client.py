#!/usr/bin/env python3
from __future__ import annotations

import http.client
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Callable, Dict, Mapping, Optional

from .config import RetryPolicy
from .errors import (
    ERROR_KIND_CLIENT_ERROR,
    ERROR_KIND_SERVER_ERROR,
    STAGE_PROBE,
    EngineRequestError,
    classify_engine_exception,
)
from .logging_utils import Logger


@dataclass(frozen=True)
class EngineResponse:
    body: bytes
    status_code: int
    attempts: int
    endpoint: str


def backoff_seconds(attempt: int, base_delay_ms: int) -> float:
    """Delay before the retry that follows `attempt` (1-based)."""
    return (max(0, int(base_delay_ms)) / 1000.0) * (2 ** max(0, int(attempt) - 1))


def is_retriable_status(code: int) -> bool:
    return 500 <= int(code) <= 599


def normalize_engine_url(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _error_detail(exc: urllib.error.HTTPError) -> str:
    if getattr(exc, "fp", None) is None:
        return ""
    try:
        return exc.read().decode("utf-8", errors="ignore")[:300]
    except (OSError, ValueError):
        return ""
    finally:
        exc.close()


@dataclass
class EngineClient:
    """HTTP access to a VOICEVOX-compatible engine with bounded retries.

    Every attempt gets its own socket timeout. 5xx responses and transport
    failures are retried with exponential backoff; 4xx responses are final.
    """

    base_url: str
    retry: RetryPolicy
    logger: Logger
    sleep: Callable[[float], None] = time.sleep
    cancel_check: Optional[Callable[[], bool]] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.base_url = normalize_engine_url(self.base_url)
        self.retry = self.retry.normalized()

    def endpoint_url(self, path: str, params: Optional[Mapping[str, object]] = None) -> str:
        url = f"{self.base_url}/{path.lstrip('/')}"
        if params:
            url = f"{url}?{urllib.parse.urlencode({k: str(v) for k, v in params.items()})}"
        return url

    def _sleep_backoff(self, attempt: int) -> None:
        delay_s = backoff_seconds(attempt, self.retry.base_delay_ms)
        if self.cancel_check is None:
            self.sleep(delay_s)
            return
        deadline = time.monotonic() + delay_s
        while True:
            if self.cancel_check():
                raise InterruptedError("Interrupted during engine retry backoff")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self.sleep(min(0.25, remaining))

    def get(self, path: str, timeout_seconds: Optional[float] = None) -> EngineResponse:
        """Single GET without retries; any failure raises `EngineRequestError`."""
        endpoint = self.endpoint_url(path)
        request = urllib.request.Request(endpoint, headers=dict(self.headers), method="GET")
        timeout = self.retry.timeout_seconds if timeout_seconds is None else float(timeout_seconds)
        try:
            with urllib.request.urlopen(request, timeout=timeout) as resp:
                payload = resp.read()
                status = int(getattr(resp, "status", 200) or 200)
        except urllib.error.HTTPError as exc:
            code = int(getattr(exc, "code", 0) or 0)
            detail = _error_detail(exc)
            raise EngineRequestError(
                f"Engine GET {path} returned {code} at {endpoint}" + (f": {detail}" if detail else ""),
                stage=STAGE_PROBE,
                audio_key="",
                endpoint=endpoint,
                attempts=1,
                status_code=code,
                error_kind=ERROR_KIND_SERVER_ERROR if is_retriable_status(code) else ERROR_KIND_CLIENT_ERROR,
            ) from exc
        except (OSError, http.client.HTTPException) as exc:
            raise EngineRequestError(
                f"Failed to GET {endpoint}: {exc}",
                stage=STAGE_PROBE,
                audio_key="",
                endpoint=endpoint,
                attempts=1,
                error_kind=classify_engine_exception(exc),
            ) from exc
        return EngineResponse(body=payload, status_code=status, attempts=1, endpoint=endpoint)

    def request(
        self,
        path: str,
        *,
        stage: str,
        audio_key: str,
        params: Optional[Mapping[str, object]] = None,
        body: Optional[bytes] = None,
        content_type: Optional[str] = None,
        method: str = "POST",
    ) -> EngineResponse:
        endpoint = self.endpoint_url(path, params)
        headers = dict(self.headers)
        if content_type:
            headers["Content-Type"] = content_type
        request = urllib.request.Request(endpoint, data=body, headers=headers, method=method)

        max_attempts = self.retry.max_attempts
        for attempt in range(1, max_attempts + 1):
            if self.cancel_check is not None and self.cancel_check():
                raise InterruptedError(f"Interrupted before engine {stage} request")
            started = time.time()
            try:
                with urllib.request.urlopen(request, timeout=self.retry.timeout_seconds) as resp:
                    payload = resp.read()
                    status = int(getattr(resp, "status", 200) or 200)
                self.logger.debug(
                    "engine_request_ok",
                    stage=stage,
                    audio_key=audio_key,
                    attempt=attempt,
                    elapsed_ms=int((time.time() - started) * 1000),
                    bytes=len(payload),
                )
                return EngineResponse(body=payload, status_code=status, attempts=attempt, endpoint=endpoint)
            except urllib.error.HTTPError as exc:
                code = int(getattr(exc, "code", 0) or 0)
                retriable = is_retriable_status(code)
                self.logger.warn(
                    "engine_http_error",
                    stage=stage,
                    audio_key=audio_key,
                    attempt=attempt,
                    code=code,
                    retriable=retriable,
                    detail=_error_detail(exc),
                )
                if not retriable or attempt >= max_attempts:
                    raise EngineRequestError(
                        f"Engine {stage} returned {code} for {audio_key} at {endpoint}",
                        stage=stage,
                        audio_key=audio_key,
                        endpoint=endpoint,
                        attempts=attempt,
                        status_code=code,
                        error_kind=ERROR_KIND_SERVER_ERROR if retriable else ERROR_KIND_CLIENT_ERROR,
                    ) from exc
            except (OSError, http.client.HTTPException) as exc:
                self.logger.warn(
                    "engine_request_error",
                    stage=stage,
                    audio_key=audio_key,
                    attempt=attempt,
                    error=str(exc),
                )
                if attempt >= max_attempts:
                    raise EngineRequestError(
                        f"Failed to call engine {stage} for {audio_key} at {endpoint}: {exc}",
                        stage=stage,
                        audio_key=audio_key,
                        endpoint=endpoint,
                        attempts=attempt,
                        error_kind=classify_engine_exception(exc),
                    ) from exc
            self.logger.info(
                "engine_request_retry",
                stage=stage,
                audio_key=audio_key,
                attempt=attempt,
                delay_ms=int(backoff_seconds(attempt, self.retry.base_delay_ms) * 1000),
            )
            self._sleep_backoff(attempt)
        raise EngineRequestError(
            f"Failed to call engine {stage} for {audio_key} at {endpoint}",
            stage=stage,
            audio_key=audio_key,
            endpoint=endpoint,
            attempts=max_attempts,
        )
