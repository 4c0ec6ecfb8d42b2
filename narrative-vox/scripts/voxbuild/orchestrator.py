#!/usr/bin/env python3
from __future__ import annotations

"""Audio build orchestration.

Drives query resolution and synthesis for every utterance, folds each
utterance into a success or failure outcome, merges the successful segments
in track order and writes the merged WAV plus `manifest.json`.

A per-utterance failure never stops the build. Only a merge-time format
mismatch or an output write error fails the build as a whole.
"""

import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .audio_query import QUERY_SOURCE_ENGINE, AudioQueryResolver, ResolvedQuery
from .config import EngineConfig, RetryPolicy
from .engine_client import EngineClient
from .errors import (
    ERROR_KIND_OUTPUT_WRITE,
    STAGE_AUDIO_QUERY,
    STAGE_SYNTHESIS,
    BuildOutputError,
    EngineRequestError,
    WavFormatError,
    WavMergeError,
    classify_engine_exception,
    is_retriable_error_kind,
)
from .housekeeping import cleanup_episode_audio_outputs, remove_stale_dir
from .logging_utils import Logger
from .manifest import build_manifest, write_manifest
from .project_source import RunIdentity
from .synthesis import SynthesisExecutor
from .utterance import Utterance
from .wav_merge import AudioSegment, merge_wav_segments, parse_wav


@dataclass(frozen=True)
class BuildFailure:
    audio_key: str
    stage: str
    message: str
    attempts: int
    retriable: bool = False
    status_code: Optional[int] = None
    error_kind: str = ""

    def to_manifest(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "stage": self.stage,
            "message": self.message,
            "retriable": self.retriable,
            "error_kind": self.error_kind,
        }
        if self.status_code is not None:
            out["status_code"] = self.status_code
        return out


@dataclass(frozen=True)
class UtteranceSuccess:
    index: int
    utterance: Utterance
    query_source: str
    query_attempts: int
    synthesis_attempts: int
    segment: AudioSegment


@dataclass(frozen=True)
class UtteranceFailure:
    index: int
    utterance: Utterance
    query_source: str
    query_attempts: int
    failure: BuildFailure


UtteranceOutcome = Union[UtteranceSuccess, UtteranceFailure]


@dataclass
class BuildAudioResult:
    manifest_path: str
    audio_dir: str
    episode_id: str
    utterance_count: int
    success_count: int
    failure_count: int
    failures: List[BuildFailure] = field(default_factory=list)
    merged_wav_path: Optional[str] = None
    manifest: Dict[str, Any] = field(default_factory=dict)


def to_failure(exc: BaseException, *, audio_key: str, fallback_stage: str) -> BuildFailure:
    if isinstance(exc, EngineRequestError):
        return BuildFailure(
            audio_key=audio_key,
            stage=exc.stage,
            message=str(exc),
            attempts=exc.attempts,
            retriable=exc.retriable,
            status_code=exc.status_code,
            error_kind=exc.error_kind,
        )
    return BuildFailure(
        audio_key=audio_key,
        stage=fallback_stage,
        message=str(exc),
        attempts=1,
        retriable=False,
        error_kind=classify_engine_exception(exc),
    )


def manifest_entry(outcome: UtteranceOutcome, *, wav_path: str) -> Dict[str, Any]:
    utterance = outcome.utterance
    entry: Dict[str, Any] = {
        "audio_key": utterance.audio_key,
        "text": utterance.text,
        "voice": utterance.voice.to_manifest(),
        "query_source": outcome.query_source,
        "wav_path": wav_path,
    }
    if isinstance(outcome, UtteranceSuccess):
        entry["status"] = "succeeded"
        entry["attempts"] = {
            "audio_query": outcome.query_attempts,
            "synthesis": outcome.synthesis_attempts,
        }
        return entry
    failure = outcome.failure
    attempts: Dict[str, int] = {"audio_query": outcome.query_attempts}
    if failure.stage == STAGE_SYNTHESIS:
        attempts["synthesis"] = failure.attempts
    entry["status"] = "failed"
    entry["attempts"] = attempts
    entry["error"] = failure.to_manifest()
    return entry


@dataclass
class BuildAudioOrchestrator:
    resolver: AudioQueryResolver
    executor: SynthesisExecutor
    logger: Logger
    retry: RetryPolicy
    engine_url: str
    max_workers: int = 1
    cancel_check: Optional[Callable[[], bool]] = None

    @staticmethod
    def from_config(
        config: EngineConfig,
        *,
        engine_url: str,
        logger: Logger,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> "BuildAudioOrchestrator":
        client = EngineClient(
            base_url=engine_url,
            retry=config.retry_policy,
            logger=logger,
            cancel_check=cancel_check,
        )
        return BuildAudioOrchestrator(
            resolver=AudioQueryResolver(client=client, logger=logger),
            executor=SynthesisExecutor(client=client),
            logger=logger,
            retry=client.retry,
            engine_url=client.base_url,
            max_workers=config.max_workers,
            cancel_check=cancel_check,
        )

    def _check_cancel(self) -> None:
        if self.cancel_check is not None and self.cancel_check():
            raise InterruptedError("Interrupted by signal during audio build")

    def process_utterance(self, index: int, utterance: Utterance) -> UtteranceOutcome:
        """Run one utterance through query resolution and synthesis."""
        query_source = QUERY_SOURCE_ENGINE
        resolved: Optional[ResolvedQuery] = None
        try:
            resolved = self.resolver.resolve(utterance)
            query_source = resolved.source
            result = self.executor.synthesize(utterance.voice, resolved.query, audio_key=utterance.audio_key)
            try:
                segment = parse_wav(result.audio_bytes)
            except WavFormatError as exc:
                raise EngineRequestError(
                    f"Engine synthesis returned unreadable WAV for {utterance.audio_key}: {exc}",
                    stage=STAGE_SYNTHESIS,
                    audio_key=utterance.audio_key,
                    endpoint=self.executor.client.endpoint_url("/synthesis"),
                    attempts=result.attempts,
                    error_kind=exc.error_kind,
                ) from exc
        except InterruptedError:
            raise
        except Exception as exc:  # noqa: BLE001
            failure = to_failure(
                exc,
                audio_key=utterance.audio_key,
                fallback_stage=STAGE_SYNTHESIS if resolved is not None else STAGE_AUDIO_QUERY,
            )
            if failure.stage == STAGE_AUDIO_QUERY:
                query_attempts = failure.attempts
            else:
                query_attempts = resolved.attempts if resolved is not None else 0
            self.logger.warn(
                "utterance_failed",
                audio_key=utterance.audio_key,
                stage=failure.stage,
                attempts=failure.attempts,
                status_code=failure.status_code,
                error_kind=failure.error_kind,
                transient=is_retriable_error_kind(failure.error_kind),
                error=failure.message,
            )
            return UtteranceFailure(
                index=index,
                utterance=utterance,
                query_source=query_source,
                query_attempts=query_attempts,
                failure=failure,
            )
        self.logger.info(
            "utterance_succeeded",
            audio_key=utterance.audio_key,
            query_source=resolved.source,
            query_attempts=resolved.attempts,
            synthesis_attempts=result.attempts,
            data_bytes=len(segment.data_chunk),
        )
        return UtteranceSuccess(
            index=index,
            utterance=utterance,
            query_source=resolved.source,
            query_attempts=resolved.attempts,
            synthesis_attempts=result.attempts,
            segment=segment,
        )

    def _run_sequential(self, utterances: Sequence[Utterance]) -> List[UtteranceOutcome]:
        outcomes: List[UtteranceOutcome] = []
        for index, utterance in enumerate(utterances):
            self._check_cancel()
            outcomes.append(self.process_utterance(index, utterance))
        return outcomes

    def _run_parallel(self, utterances: Sequence[Utterance]) -> List[UtteranceOutcome]:
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="voxbuild")
        outcomes: Dict[int, UtteranceOutcome] = {}
        try:
            future_map: Dict[Future, int] = {
                executor.submit(self.process_utterance, index, utterance): index
                for index, utterance in enumerate(utterances)
            }
            pending = set(future_map.keys())
            while pending:
                if self.cancel_check is not None and self.cancel_check():
                    for fut in pending:
                        fut.cancel()
                    raise InterruptedError("Interrupted by signal during audio build")
                done, pending = wait(pending, timeout=1.0, return_when=FIRST_COMPLETED)
                for fut in done:
                    outcomes[future_map[fut]] = fut.result()
        finally:
            executor.shutdown(wait=True, cancel_futures=True)
        # Completion order is arbitrary; track order is input order.
        return [outcomes[index] for index in range(len(utterances))]

    def run_utterances(self, utterances: Sequence[Utterance]) -> List[UtteranceOutcome]:
        if self.max_workers > 1 and len(utterances) > 1:
            return self._run_parallel(utterances)
        return self._run_sequential(utterances)

    def _write_audio_atomic(self, path: str, content: bytes) -> None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = f"{path}.tmp"
        with open(tmp, "wb") as f:
            f.write(content)
        os.replace(tmp, path)

    def prepare_output_dir(self, identity: RunIdentity) -> None:
        """Remove artifacts a previous build of the same episode left behind."""
        os.makedirs(identity.audio_dir, exist_ok=True)
        remove_stale_dir(identity.audio_queries_dir, logger=self.logger)
        cleanup_episode_audio_outputs(
            audio_dir=identity.audio_dir,
            episode_id=identity.episode_id,
            logger=self.logger,
        )

    def build(
        self,
        utterances: Sequence[Utterance],
        *,
        identity: RunIdentity,
        app_version: str = "",
    ) -> BuildAudioResult:
        with self.logger.timed(
            "build_audio",
            episode_id=identity.episode_id,
            utterances=len(utterances),
            max_workers=self.max_workers,
        ):
            try:
                self.prepare_output_dir(identity)
            except OSError as exc:
                raise BuildOutputError(
                    f"Failed to prepare audio output directory {identity.audio_dir}: {exc}"
                ) from exc
            outcomes = self.run_utterances(utterances)

            successes = [o for o in outcomes if isinstance(o, UtteranceSuccess)]
            failures = [o.failure for o in outcomes if isinstance(o, UtteranceFailure)]
            merged_bytes: Optional[bytes] = None
            merge_error: Optional[WavMergeError] = None
            if successes:
                try:
                    merged_bytes = merge_wav_segments([o.segment for o in successes])
                except WavMergeError as exc:
                    merge_error = exc

            merged_rel: Optional[str] = None
            wav_error: Optional[OSError] = None
            if merged_bytes is not None:
                try:
                    self._write_audio_atomic(identity.merged_wav_path, merged_bytes)
                    merged_rel = identity.merged_wav_relpath
                except OSError as exc:
                    wav_error = exc

            manifest = build_manifest(
                project_id=identity.project_id,
                run_id=identity.run_id,
                episode_id=identity.episode_id,
                source_project=identity.source_relpath,
                engine_url=self.engine_url,
                app_version=app_version,
                retry=self.retry,
                entries=[manifest_entry(o, wav_path=identity.merged_wav_relpath) for o in outcomes],
                merged_wav_path=merged_rel,
                merge_error=(
                    {"message": str(merge_error), "error_kind": merge_error.error_kind}
                    if merge_error is not None
                    else None
                ),
                write_error=(
                    {"message": str(wav_error), "error_kind": ERROR_KIND_OUTPUT_WRITE}
                    if wav_error is not None
                    else None
                ),
            )
            try:
                write_manifest(identity.manifest_path, manifest)
            except OSError as exc:
                raise BuildOutputError(f"Failed to write manifest {identity.manifest_path}: {exc}") from exc

            summary = manifest["summary"]
            if wav_error is not None:
                raise BuildOutputError(
                    f"Failed to write merged WAV {identity.merged_wav_path}: {wav_error}"
                ) from wav_error
            if merge_error is not None:
                self.logger.error(
                    "build_audio_merge_failed",
                    episode_id=identity.episode_id,
                    manifest_path=identity.manifest_path,
                    error=str(merge_error),
                )
                raise merge_error
            self.logger.info(
                "build_audio_summary",
                episode_id=identity.episode_id,
                total=summary["total"],
                succeeded=summary["succeeded"],
                failed=summary["failed"],
                merged_wav_path=merged_rel,
            )
            return BuildAudioResult(
                manifest_path=identity.manifest_path,
                audio_dir=identity.audio_dir,
                episode_id=identity.episode_id,
                utterance_count=len(utterances),
                success_count=summary["succeeded"],
                failure_count=summary["failed"],
                failures=failures,
                merged_wav_path=identity.merged_wav_path if merged_rel else None,
                manifest=manifest,
            )

