#!/usr/bin/env python3
from __future__ import annotations

"""Project-file loading and run-directory identity.

A project file carries `appVersion` and a `talk` section whose `audioKeys`
define track order and whose `audioItems` hold text, voice and an optional
precomputed query per key. Run layout is `<project>/<run-YYYYMMDD-HHMM>/`
with the project file under `voicevox_project/` and outputs under `audio/`.
"""

import json
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .errors import ProjectSourceError
from .manifest import manifest_path
from .query_codec import parse_query
from .utterance import Utterance, VoiceSelector


PROJECT_DIR_NAME = "voicevox_project"
AUDIO_DIR_NAME = "audio"
AUDIO_QUERIES_DIR_NAME = "audio_queries"
RUN_ID_PATTERN = re.compile(r"^run-\d{8}-\d{4}$")
UNKNOWN_ID = "unknown"


@dataclass(frozen=True)
class ProjectSource:
    path: str
    app_version: str
    utterances: Tuple[Utterance, ...]

    @property
    def audio_keys(self) -> List[str]:
        return [u.audio_key for u in self.utterances]


@dataclass(frozen=True)
class RunIdentity:
    """Where a build writes and how its outputs are named."""

    run_dir: str
    project_id: str
    run_id: str
    episode_id: str
    source_path: str = ""

    @property
    def audio_dir(self) -> str:
        return os.path.join(self.run_dir, AUDIO_DIR_NAME)

    @property
    def audio_queries_dir(self) -> str:
        return os.path.join(self.run_dir, AUDIO_QUERIES_DIR_NAME)

    @property
    def merged_wav_relpath(self) -> str:
        return f"{AUDIO_DIR_NAME}/{self.episode_id}.wav"

    @property
    def merged_wav_path(self) -> str:
        return os.path.join(self.audio_dir, f"{self.episode_id}.wav")

    @property
    def manifest_path(self) -> str:
        return manifest_path(self.audio_dir)

    @property
    def source_relpath(self) -> str:
        if not self.source_path:
            return ""
        return os.path.relpath(os.path.abspath(self.source_path), os.path.abspath(self.run_dir)).replace(os.sep, "/")


def _require(condition: bool, message: str) -> None:
    if not condition:
        raise ProjectSourceError(message)


def _parse_voice(audio_key: str, raw: Any) -> VoiceSelector:
    _require(isinstance(raw, dict), f"audio item {audio_key} has no voice object")
    style_id = raw.get("styleId")
    _require(
        isinstance(style_id, int) and not isinstance(style_id, bool),
        f"audio item {audio_key} voice.styleId must be an integer",
    )
    return VoiceSelector(
        engine_id=str(raw.get("engineId", "") or ""),
        speaker_id=str(raw.get("speakerId", "") or ""),
        style_id=style_id,
    )


def _parse_item(audio_key: str, raw: Any) -> Utterance:
    _require(isinstance(raw, dict), f"audio item {audio_key} must be an object")
    text = raw.get("text")
    _require(isinstance(text, str), f"audio item {audio_key} text must be a string")
    query = raw.get("query")
    _require(query is None or isinstance(query, dict), f"audio item {audio_key} query must be an object")
    return Utterance(
        audio_key=audio_key,
        text=text,
        voice=_parse_voice(audio_key, raw.get("voice")),
        query=parse_query(query) if query is not None else None,
    )


def parse_project(payload: Any, *, path: str = "") -> ProjectSource:
    _require(isinstance(payload, dict), "project file must contain a JSON object")
    talk = payload.get("talk")
    _require(isinstance(talk, dict), "project file has no talk section")
    audio_keys = talk.get("audioKeys")
    _require(
        isinstance(audio_keys, list) and all(isinstance(k, str) and k for k in audio_keys),
        "talk.audioKeys must be a list of non-empty strings",
    )
    _require(len(set(audio_keys)) == len(audio_keys), "talk.audioKeys contains duplicate keys")
    items = talk.get("audioItems", {})
    _require(isinstance(items, dict), "talk.audioItems must be an object")

    utterances: List[Utterance] = []
    for key in audio_keys:
        if key not in items:
            utterances.append(Utterance.missing_item(key))
            continue
        utterances.append(_parse_item(key, items[key]))
    return ProjectSource(
        path=path,
        app_version=str(payload.get("appVersion", "") or ""),
        utterances=tuple(utterances),
    )


def load_project(path: str) -> ProjectSource:
    try:
        with open(path, "r", encoding="utf-8-sig") as f:
            payload = json.load(f)
    except FileNotFoundError as exc:
        raise ProjectSourceError(f"project file not found: {path}") from exc
    except ValueError as exc:
        raise ProjectSourceError(f"project file is not valid JSON: {path}: {exc}") from exc
    except OSError as exc:
        raise ProjectSourceError(f"project file cannot be read: {path}: {exc}") from exc
    return parse_project(payload, path=os.path.abspath(path))


def infer_run_dir(project_path: str) -> Optional[str]:
    """Return the run directory when the project sits under `voicevox_project/`."""
    project_dir = os.path.dirname(os.path.abspath(project_path))
    if os.path.basename(project_dir) != PROJECT_DIR_NAME:
        return None
    return os.path.dirname(project_dir)


def infer_project_and_run_ids(run_dir: str) -> Tuple[str, str]:
    run_dir = os.path.abspath(run_dir)
    candidate = os.path.basename(run_dir)
    run_id = candidate if RUN_ID_PATTERN.match(candidate) else UNKNOWN_ID
    project_id = os.path.basename(os.path.dirname(run_dir)) or UNKNOWN_ID
    return project_id, run_id


def infer_episode_id(project_path: str, audio_keys: Sequence[str] = ()) -> str:
    stem = os.path.splitext(os.path.basename(project_path))[0]
    if stem:
        return stem
    first_key = audio_keys[0] if audio_keys else ""
    return first_key.split("_")[0] or UNKNOWN_ID


def _validate_episode_id(value: str) -> str:
    candidate = str(value or "").strip()
    _require(bool(candidate), "episode_id must not be empty")
    _require(candidate not in {".", ".."}, "episode_id cannot be '.' or '..'")
    _require(os.path.basename(candidate) == candidate, "episode_id must be a plain name without path separators")
    return candidate


def resolve_run_identity(
    project_path: str,
    *,
    run_dir: Optional[str] = None,
    episode_id: Optional[str] = None,
    audio_keys: Sequence[str] = (),
) -> RunIdentity:
    resolved_run_dir = os.path.abspath(run_dir) if run_dir else infer_run_dir(project_path)
    if not resolved_run_dir:
        raise ProjectSourceError(
            "Could not infer run directory from project path. "
            f"Expected .../{PROJECT_DIR_NAME}/<file> or pass --run-dir explicitly."
        )
    project_id, run_id = infer_project_and_run_ids(resolved_run_dir)
    episode = _validate_episode_id(episode_id) if episode_id else infer_episode_id(project_path, audio_keys)
    return RunIdentity(
        run_dir=resolved_run_dir,
        project_id=project_id,
        run_id=run_id,
        episode_id=episode,
        source_path=os.path.abspath(project_path),
    )


def summarize_project(project: ProjectSource) -> Dict[str, int]:
    return {
        "utterances": len(project.utterances),
        "missing_items": sum(1 for u in project.utterances if u.missing),
        "supplied_queries": sum(1 for u in project.utterances if u.query is not None),
    }
