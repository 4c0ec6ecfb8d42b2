#!/usr/bin/env python3
from __future__ import annotations

"""Pre-build cleanup of per-episode audio artifacts."""

import errno
import os
import shutil
from dataclasses import dataclass
from typing import List

from .logging_utils import Logger


@dataclass
class CleanupReport:
    """Summary stats returned by cleanup operations."""

    deleted_files: int
    deleted_bytes: int
    kept_files: int


def episode_output_names(audio_dir: str, episode_id: str) -> List[str]:
    """List `<episode>.wav` plus any `<episode>_*.wav` file present in audio_dir."""
    names = [f"{episode_id}.wav"]
    if not os.path.isdir(audio_dir):
        return names
    prefix = f"{episode_id}_"
    for entry in sorted(os.scandir(audio_dir), key=lambda e: e.name):
        if entry.is_file() and entry.name.startswith(prefix) and entry.name.endswith(".wav"):
            names.append(entry.name)
    return names


def cleanup_episode_audio_outputs(*, audio_dir: str, episode_id: str, logger: Logger) -> CleanupReport:
    """Delete previously generated audio for one episode.

    Files that are already gone are ignored; any other OS error propagates.
    """
    deleted_files = 0
    deleted_bytes = 0
    for name in episode_output_names(audio_dir, episode_id):
        path = os.path.join(audio_dir, name)
        try:
            size = os.path.getsize(path)
            os.remove(path)
        except OSError as exc:
            if exc.errno == errno.ENOENT:
                continue
            raise
        deleted_files += 1
        deleted_bytes += size
        logger.debug("cleanup_deleted_file", path=path, size=size)

    kept_files = 0
    if os.path.isdir(audio_dir):
        kept_files = sum(1 for entry in os.scandir(audio_dir) if entry.is_file())
    if deleted_files:
        logger.info("cleanup_episode_audio", episode_id=episode_id, deleted_files=deleted_files)
    return CleanupReport(
        deleted_files=deleted_files,
        deleted_bytes=deleted_bytes,
        kept_files=kept_files,
    )


def remove_stale_dir(path: str, *, logger: Logger) -> bool:
    """Remove a leftover intermediate directory; returns whether one existed."""
    if not os.path.isdir(path):
        return False
    shutil.rmtree(path)
    logger.info("cleanup_removed_dir", path=path)
    return True
