#!/usr/bin/env python3
from __future__ import annotations

"""Build manifest assembly and persistence.

The manifest is the authoritative record of one audio build: which engine and
retry parameters were used, what happened to every utterance (in track
order), and where the merged track landed, if anywhere.
"""

import json
import os
import time
from typing import Any, Dict, List, Optional, Sequence

from .config import RetryPolicy


MANIFEST_FILENAME = "manifest.json"
MANIFEST_SCHEMA_VERSION = "1.0"


def _atomic_write_json(path: str, payload: Dict[str, Any]) -> None:
    """Write manifest JSON atomically."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2, sort_keys=True)
        f.write("\n")
    os.replace(tmp, path)


def utc_timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def manifest_path(audio_dir: str) -> str:
    return os.path.join(audio_dir, MANIFEST_FILENAME)


def load_manifest(path: str) -> Dict[str, Any] | None:
    """Load manifest from disk when a valid dict payload exists."""
    if not os.path.exists(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def build_manifest(
    *,
    project_id: str,
    run_id: str,
    episode_id: str,
    source_project: str,
    engine_url: str,
    app_version: str,
    retry: RetryPolicy,
    entries: Sequence[Dict[str, Any]],
    merged_wav_path: Optional[str] = None,
    merge_error: Optional[Dict[str, Any]] = None,
    write_error: Optional[Dict[str, Any]] = None,
    generated_at: Optional[str] = None,
) -> Dict[str, Any]:
    utterances: List[Dict[str, Any]] = [dict(entry) for entry in entries]
    succeeded = sum(1 for entry in utterances if entry.get("status") == "succeeded")
    output: Dict[str, Any] = {}
    if merged_wav_path:
        output["merged_wav_path"] = merged_wav_path
    if merge_error:
        output["merge_error"] = dict(merge_error)
    if write_error:
        output["write_error"] = dict(write_error)
    return {
        "schema_version": MANIFEST_SCHEMA_VERSION,
        "meta": {
            "project_id": project_id,
            "run_id": run_id,
            "episode_id": episode_id,
            "source_project": source_project,
            "generated_at": generated_at or utc_timestamp(),
        },
        "voicevox": {
            "url": engine_url,
            "app_version": app_version,
        },
        "parameters": retry.to_manifest(),
        "output": output,
        "utterances": utterances,
        "summary": {
            "total": len(utterances),
            "succeeded": succeeded,
            "failed": len(utterances) - succeeded,
        },
    }


def write_manifest(path: str, manifest: Dict[str, Any]) -> str:
    _atomic_write_json(path, manifest)
    return path
