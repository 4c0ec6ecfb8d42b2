#!/usr/bin/env python3
from __future__ import annotations

import argparse
import dataclasses
import signal
import sys

from voxbuild.config import EngineConfig, LoggingConfig, MAX_BUILD_WORKERS
from voxbuild.engine_locator import EngineLocator
from voxbuild.errors import (
    EngineUnavailableError,
    ProjectSourceError,
    VoxBuildError,
    WavMergeError,
)
from voxbuild.logging_utils import Logger
from voxbuild.orchestrator import BuildAudioOrchestrator
from voxbuild.project_source import UNKNOWN_ID, load_project, resolve_run_identity, summarize_project

EXIT_OK = 0
EXIT_UTTERANCE_FAILURES = 1
EXIT_BUILD_FATAL = 2
EXIT_INTERRUPTED = 130


def _positive_int(value: str) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
    if parsed < 1:
        raise argparse.ArgumentTypeError("value must be >= 1")
    return parsed


def _non_negative_int(value: str) -> int:
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}")
    if parsed < 0:
        raise argparse.ArgumentTypeError("value must be >= 0")
    return parsed


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Synthesize every utterance of a VOICEVOX project through the engine and merge the audio."
    )
    parser.add_argument("project_path", help="VOICEVOX project JSON (.vvproj)")
    parser.add_argument(
        "--run-dir",
        default=None,
        help="Run directory; inferred when the project sits under voicevox_project/",
    )
    parser.add_argument("--voicevox-url", default=None, help="Engine base URL; auto-detected when omitted")
    parser.add_argument("--episode-id", default=None, help="Output name; defaults to the project file stem")
    parser.add_argument("--max-attempts", type=_positive_int, default=None)
    parser.add_argument("--base-delay-ms", type=_non_negative_int, default=None)
    parser.add_argument("--timeout-ms", type=_positive_int, default=None)
    parser.add_argument("--max-workers", type=_positive_int, default=None)
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("--debug", action="store_true")
    return parser.parse_args(argv)


def _engine_config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig.from_env()
    overrides = {}
    if args.max_attempts is not None:
        overrides["retry_max_attempts"] = args.max_attempts
    if args.base_delay_ms is not None:
        overrides["retry_base_delay_ms"] = args.base_delay_ms
    if args.timeout_ms is not None:
        overrides["request_timeout_ms"] = args.timeout_ms
    if args.max_workers is not None:
        overrides["max_workers"] = min(MAX_BUILD_WORKERS, args.max_workers)
    return dataclasses.replace(config, **overrides) if overrides else config


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    log_cfg = LoggingConfig.from_env()
    if args.debug:
        log_cfg = dataclasses.replace(log_cfg, level="DEBUG", debug_events=True)
    elif args.verbose:
        log_cfg = dataclasses.replace(log_cfg, level="INFO")
    engine_cfg = _engine_config(args)

    try:
        project = load_project(args.project_path)
        identity = resolve_run_identity(
            args.project_path,
            run_dir=args.run_dir,
            episode_id=args.episode_id,
            audio_keys=project.audio_keys,
        )
    except ProjectSourceError as exc:
        Logger.create(log_cfg).error("build_audio_invalid_input", error=str(exc), error_kind=exc.error_kind)
        return EXIT_BUILD_FATAL

    run_id = identity.run_id if identity.run_id != UNKNOWN_ID else ""
    logger = Logger.create(log_cfg, run_id=run_id)
    shutdown = {"requested": False}

    def _signal_handler(signum, _frame):  # type: ignore[no-untyped-def]
        shutdown["requested"] = True
        logger.warn("signal_received", signal=signum)

    signal.signal(signal.SIGINT, _signal_handler)
    sigterm = getattr(signal, "SIGTERM", None)
    if sigterm is not None:
        signal.signal(sigterm, _signal_handler)

    logger.info(
        "build_audio_project_loaded",
        project_path=project.path,
        episode_id=identity.episode_id,
        **summarize_project(project),
    )
    try:
        engine_url = EngineLocator.from_config(engine_cfg, logger=logger).resolve(args.voicevox_url)
        orchestrator = BuildAudioOrchestrator.from_config(
            engine_cfg,
            engine_url=engine_url,
            logger=logger,
            cancel_check=lambda: shutdown["requested"],
        )
        result = orchestrator.build(project.utterances, identity=identity, app_version=project.app_version)
    except (InterruptedError, KeyboardInterrupt) as exc:
        logger.warn("build_audio_interrupted", error=str(exc))
        return EXIT_INTERRUPTED
    except EngineUnavailableError as exc:
        logger.error("build_audio_engine_unreachable", error=str(exc), candidates=exc.candidates)
        return EXIT_BUILD_FATAL
    except WavMergeError as exc:
        logger.error(
            "build_audio_failed_merge",
            error=str(exc),
            error_kind=exc.error_kind,
            manifest_path=identity.manifest_path,
        )
        return EXIT_BUILD_FATAL
    except VoxBuildError as exc:
        logger.error("build_audio_failed", error=str(exc), error_kind=exc.error_kind)
        return EXIT_BUILD_FATAL

    print(result.manifest_path)
    if result.failure_count:
        logger.warn(
            "build_audio_partial_failure",
            failed=result.failure_count,
            failed_keys=[f.audio_key for f in result.failures],
        )
        return EXIT_UTTERANCE_FAILURES
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
