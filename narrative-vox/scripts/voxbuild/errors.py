#!/usr/bin/env python3
from __future__ import annotations

import json
import socket
import urllib.error
from typing import Iterable, List, Optional

ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_NETWORK = "network"
ERROR_KIND_SERVER_ERROR = "server_error"
ERROR_KIND_CLIENT_ERROR = "client_error"
ERROR_KIND_MALFORMED_RESPONSE = "malformed_response"
ERROR_KIND_FORMAT_MISMATCH = "format_mismatch"
ERROR_KIND_MISSING_ITEM = "missing_item"
ERROR_KIND_INVALID_INPUT = "invalid_input"
ERROR_KIND_ENGINE_UNREACHABLE = "engine_unreachable"
ERROR_KIND_OUTPUT_WRITE = "output_write"
ERROR_KIND_INTERRUPTED = "interrupted"
ERROR_KIND_UNKNOWN = "unknown"

STAGE_AUDIO_QUERY = "audio_query"
STAGE_SYNTHESIS = "synthesis"
STAGE_PROBE = "probe"

RETRIABLE_ERROR_KINDS = {
    ERROR_KIND_TIMEOUT,
    ERROR_KIND_NETWORK,
    ERROR_KIND_SERVER_ERROR,
}


def is_retriable_error_kind(kind: str) -> bool:
    return str(kind or "").strip().lower() in RETRIABLE_ERROR_KINDS


class VoxBuildError(RuntimeError):
    def __init__(self, message: str, *, error_kind: str) -> None:
        super().__init__(message)
        self.error_kind = str(error_kind or ERROR_KIND_UNKNOWN).strip().lower()


class EngineRequestError(VoxBuildError):
    """Terminal failure of one engine call after the retry policy gave up."""

    def __init__(
        self,
        message: str,
        *,
        stage: str,
        audio_key: str,
        endpoint: str,
        attempts: int,
        status_code: Optional[int] = None,
        error_kind: str = ERROR_KIND_UNKNOWN,
    ) -> None:
        super().__init__(message, error_kind=error_kind)
        self.stage = stage
        self.audio_key = audio_key
        self.endpoint = endpoint
        self.attempts = int(attempts)
        self.status_code = status_code
        # Raised only once no further attempt will be made.
        self.retriable = False


class MalformedQueryError(VoxBuildError):
    def __init__(self, message: str) -> None:
        super().__init__(message, error_kind=ERROR_KIND_MALFORMED_RESPONSE)


class WavFormatError(VoxBuildError):
    def __init__(self, message: str) -> None:
        super().__init__(message, error_kind=ERROR_KIND_MALFORMED_RESPONSE)


class WavMergeError(VoxBuildError):
    def __init__(self, message: str, *, error_kind: str = ERROR_KIND_FORMAT_MISMATCH) -> None:
        super().__init__(message, error_kind=error_kind)


class EngineUnavailableError(VoxBuildError):
    def __init__(self, message: str, *, candidates: Iterable[str] = ()) -> None:
        super().__init__(message, error_kind=ERROR_KIND_ENGINE_UNREACHABLE)
        self.candidates = list(candidates)


class ProjectSourceError(VoxBuildError):
    def __init__(self, message: str) -> None:
        super().__init__(message, error_kind=ERROR_KIND_INVALID_INPUT)


class BuildOutputError(VoxBuildError):
    def __init__(self, message: str) -> None:
        super().__init__(message, error_kind=ERROR_KIND_OUTPUT_WRITE)


def _iter_exception_chain(exc: BaseException) -> Iterable[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        yield current
        seen.add(id(current))
        next_exc = getattr(current, "__cause__", None) or getattr(current, "__context__", None)
        current = next_exc if isinstance(next_exc, BaseException) else None


def classify_engine_exception(exc: BaseException) -> str:
    messages: List[str] = []
    for item in _iter_exception_chain(exc):
        if isinstance(item, VoxBuildError):
            return item.error_kind
        if isinstance(item, InterruptedError):
            return ERROR_KIND_INTERRUPTED
        if isinstance(item, (TimeoutError, socket.timeout)):
            return ERROR_KIND_TIMEOUT
        if isinstance(item, urllib.error.HTTPError):
            code = int(getattr(item, "code", 0) or 0)
            if code >= 500:
                return ERROR_KIND_SERVER_ERROR
            if code >= 400:
                return ERROR_KIND_CLIENT_ERROR
        if isinstance(item, urllib.error.URLError):
            reason = getattr(item, "reason", None)
            if isinstance(reason, (TimeoutError, socket.timeout)):
                return ERROR_KIND_TIMEOUT
            return ERROR_KIND_NETWORK
        if isinstance(item, ConnectionError):
            return ERROR_KIND_NETWORK
        if isinstance(item, (json.JSONDecodeError, UnicodeDecodeError)):
            return ERROR_KIND_MALFORMED_RESPONSE
        messages.append(str(item or ""))

    message = " ".join(messages).lower()
    if "timeout" in message or "timed out" in message:
        return ERROR_KIND_TIMEOUT
    if (
        "connection" in message
        or "network" in message
        or "name or service not known" in message
        or "temporary failure in name resolution" in message
        or "urlopen error" in message
    ):
        return ERROR_KIND_NETWORK
    return ERROR_KIND_UNKNOWN
