#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import shutil
import sys
import time
from pathlib import Path
from typing import Any

from chunkscribe.audio import (
    SourceUnreadable,
    extract_segment,
    probe_duration_seconds,
    remove_silence,
    scan_silence,
)
from chunkscribe.config import RESPONSE_FORMAT_EXTENSIONS, ConfigError, PipelineConfig
from chunkscribe.dispatcher import TranscriptionDispatcher
from chunkscribe.exporters import export_docx, export_txt
from chunkscribe.merge import merge_transcriptions, write_merged
from chunkscribe.models import DispatchReport, Segment
from chunkscribe.openai_engine import create_client
from chunkscribe.paths import (
    chunks_dir,
    final_transcript_path,
    plan_path,
    transcriptions_dir,
    trimmed_audio_path,
)
from chunkscribe.segmenter import build_segments, plan_ranges
from chunkscribe.storage import load_plan, save_plan

logger = logging.getLogger("chunkscribe.worker")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def emit(event_type: str, payload: object) -> None:
    print(json.dumps({"type": event_type, "payload": payload}, ensure_ascii=False), flush=True)


def progress_payload(
    *,
    stage: str,
    percent: float,
    segments_done: int,
    segments_total: int,
    message: str,
) -> dict[str, object]:
    return {
        "stage": stage,
        "percent": round(max(0.0, min(100.0, percent)), 2),
        "segmentsDone": segments_done,
        "segmentsTotal": segments_total,
        "message": message,
    }


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    overrides = {
        "output_dir": getattr(args, "output_dir", None),
        "target_length": getattr(args, "chunk_duration", None),
        "tolerance": getattr(args, "tolerance", None),
        "silence_threshold_db": getattr(args, "silence_threshold_db", None),
        "min_silence_duration": getattr(args, "silence_duration", None),
        "max_concurrency": getattr(args, "parallel_jobs", None),
        "max_retries": getattr(args, "max_retries", None),
        "initial_backoff": getattr(args, "retry_delay", None),
        "request_timeout": getattr(args, "timeout", None),
        "model": getattr(args, "model", None),
        "response_format": getattr(args, "response_format", None),
        "language": getattr(args, "language", None),
        "audio_bitrate": getattr(args, "bitrate", None),
    }
    if getattr(args, "no_normalize", False):
        overrides["normalize"] = False
    if getattr(args, "trim_silence", False):
        overrides["trim_silence"] = True
    return PipelineConfig.from_env().with_overrides(overrides).validate()


def detect_silence(config: PipelineConfig, audio_path: Path) -> list[float]:
    try:
        return list(
            scan_silence(
                audio_path,
                threshold_db=config.silence_threshold_db,
                min_silence_duration=config.min_silence_duration,
            )
        )
    except SourceUnreadable as exc:
        logger.warning("Silence scan failed, falling back to fixed-interval cuts: %s", exc)
        return []


def planning_settings(config: PipelineConfig, source: Path) -> dict[str, Any]:
    return {
        "sourcePath": str(source),
        "targetLength": config.target_length,
        "tolerance": config.tolerance,
        "silenceThresholdDb": config.silence_threshold_db,
        "minSilenceDuration": config.min_silence_duration,
        "trimSilence": config.trim_silence,
    }


def discard_previous_artifacts(base: Path) -> None:
    """Chunk audio and transcripts from another plan cover different time ranges."""
    for directory in (base / "chunks", base / "transcriptions"):
        if directory.exists():
            logger.info("Removing artifacts of a previous plan: %s", directory)
            shutil.rmtree(directory)


def plan_segments(config: PipelineConfig, source: Path) -> tuple[float, Path, list[Segment]]:
    """Return (duration, audio path, segments), reusing a stored plan made with the same settings."""
    base = config.output_dir
    settings = planning_settings(config, source)
    stored = load_plan(plan_path(base))
    if (
        stored is not None
        and stored["segments"]
        and all(stored.get(key) == value for key, value in settings.items())
    ):
        logger.info("Reusing stored plan with %d segments", len(stored["segments"]))
        return float(stored["durationSec"]), Path(str(stored["audioPath"])), stored["segments"]

    discard_previous_artifacts(base)
    audio_path = source
    if config.trim_silence:
        emit("progress", progress_payload(stage="trim", percent=2, segments_done=0, segments_total=0, message="Removing long silences..."))
        audio_path = remove_silence(
            source,
            trimmed_audio_path(base),
            threshold_db=config.silence_threshold_db,
            min_silence_duration=config.min_silence_duration,
            keep=config.silence_keep,
        )

    duration = probe_duration_seconds(audio_path)
    points = detect_silence(config, audio_path)
    ranges = plan_ranges(duration, config.target_length, config.tolerance, points)
    segments = build_segments(ranges, chunks_dir(base))
    save_plan(
        plan_path(base),
        source=source,
        audio_path=audio_path,
        duration_sec=duration,
        target_length=config.target_length,
        tolerance=config.tolerance,
        segments=segments,
        silence_threshold_db=config.silence_threshold_db,
        min_silence_duration=config.min_silence_duration,
        trim_silence=config.trim_silence,
    )
    logger.info(
        "Planned %d segments over %.1fs using %d silence points",
        len(segments), duration, len(points),
    )
    return duration, audio_path, segments


def ensure_segment_files(config: PipelineConfig, audio_path: Path, segments: list[Segment]) -> None:
    total = len(segments)
    for done, segment in enumerate(segments, start=1):
        if segment.artifact_path.exists():
            continue
        extract_segment(
            audio_path,
            segment.range,
            segment.artifact_path,
            bitrate=config.audio_bitrate,
            sample_rate=config.sample_rate,
            channels=config.channels,
            normalize=config.normalize,
        )
        emit(
            "progress",
            progress_payload(
                stage="extract",
                percent=5 + (done / max(total, 1)) * 15,
                segments_done=done,
                segments_total=total,
                message=f"Extracted segment {segment.index}/{total}",
            ),
        )


def transcribe_segments(config: PipelineConfig, segments: list[Segment], client: Any = None) -> DispatchReport:
    if client is None:
        client = create_client(base_url=config.base_url)

    total = len(segments)
    finished = 0
    started = time.monotonic()

    def _on_event(event: str, payload: dict[str, Any]) -> None:
        nonlocal finished
        emit("segment", {"event": event, **payload})
        if event in ("segment_done", "segment_failed", "segment_skipped"):
            finished += 1
            elapsed = time.monotonic() - started
            emit(
                "progress",
                progress_payload(
                    stage="transcribe",
                    percent=20 + (finished / max(total, 1)) * 70,
                    segments_done=finished,
                    segments_total=total,
                    message=f"{finished}/{total} segments finished ({elapsed:.1f}s)",
                ),
            )

    dispatcher = TranscriptionDispatcher(
        client,
        config,
        transcriptions_dir(config.output_dir),
        on_event=_on_event,
    )
    report = dispatcher.dispatch(segments)
    emit("summary", report.to_payload())
    for line in report.summary_lines():
        logger.info("%s", line)
    return report


def merge_outputs(config: PipelineConfig, *, add_markers: bool = False, docx: bool = False, meta: dict[str, Any] | None = None) -> Path:
    merged = merge_transcriptions(
        transcriptions_dir(config.output_dir),
        add_markers=add_markers,
        extensions=(config.result_extension,),
    )
    out_path = write_merged(merged, final_transcript_path(config.output_dir))
    if docx:
        export_docx(meta or {}, merged, final_transcript_path(config.output_dir, ".docx"))
    emit(
        "result",
        {
            "filePath": str(out_path),
            "merged": merged.merged_count,
            "skipped": merged.skipped,
            "words": merged.word_count,
        },
    )
    return out_path


def _report_exit_code(report: DispatchReport) -> int:
    if report.interrupted:
        return EXIT_INTERRUPTED
    return EXIT_FAILED if report.failed else EXIT_OK


def command_run(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    source = Path(args.source).expanduser().resolve()
    if not source.exists():
        emit("error", {"message": f"Source not found: {source}"})
        return EXIT_FAILED

    try:
        duration, audio_path, segments = plan_segments(config, source)
        ensure_segment_files(config, audio_path, segments)
    except SourceUnreadable as exc:
        emit("error", {"message": str(exc)})
        return EXIT_FAILED

    report = transcribe_segments(config, segments)
    exit_code = _report_exit_code(report)
    if exit_code == EXIT_INTERRUPTED or (args.strict and report.failed):
        return exit_code

    try:
        merge_outputs(
            config,
            add_markers=args.markers,
            docx=args.docx,
            meta={"source_name": source.name, "duration_sec": duration},
        )
    except FileNotFoundError as exc:
        emit("error", {"message": str(exc)})
        return EXIT_FAILED
    return exit_code


def command_plan(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    source = Path(args.source).expanduser().resolve()
    try:
        duration = probe_duration_seconds(source)
    except SourceUnreadable as exc:
        emit("error", {"message": str(exc)})
        return EXIT_FAILED

    points = detect_silence(config, source)
    ranges = plan_ranges(duration, config.target_length, config.tolerance, points)
    emit(
        "result",
        {
            "durationSec": duration,
            "silencePoints": len(points),
            "ranges": [
                {"index": idx, "startSec": r.start, "endSec": r.end}
                for idx, r in enumerate(ranges, start=1)
            ],
        },
    )
    return EXIT_OK


def command_transcribe(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    stored = load_plan(plan_path(config.output_dir))
    if not stored or not stored["segments"]:
        emit("error", {"message": f"No plan found in {config.output_dir}; run 'run' first"})
        return EXIT_FAILED
    report = transcribe_segments(config, stored["segments"])
    return _report_exit_code(report)


def command_merge(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    try:
        merge_outputs(config, add_markers=args.markers)
    except FileNotFoundError as exc:
        emit("error", {"message": str(exc)})
        return EXIT_FAILED
    return EXIT_OK


def _export(args: argparse.Namespace, exporter) -> int:
    config = config_from_args(args)
    try:
        merged = merge_transcriptions(transcriptions_dir(config.output_dir), extensions=(config.result_extension,))
    except FileNotFoundError as exc:
        emit("error", {"message": str(exc)})
        return EXIT_FAILED

    stored = load_plan(plan_path(config.output_dir)) or {}
    meta = {
        "source_path": stored.get("sourcePath", ""),
        "duration_sec": stored.get("durationSec", 0),
        "created_at": stored.get("createdAt", ""),
    }
    exporter(meta, merged, Path(args.output))
    emit("result", {"filePath": args.output})
    return EXIT_OK


def command_export_txt(args: argparse.Namespace) -> int:
    return _export(args, export_txt)


def command_export_docx(args: argparse.Namespace) -> int:
    return _export(args, export_docx)


def command_cleanup(args: argparse.Namespace) -> int:
    config = config_from_args(args)
    base = config.output_dir
    final = final_transcript_path(base)
    if not final.exists():
        emit("error", {"message": f"{final} not found; refusing to clean up"})
        return EXIT_FAILED

    trimmed_audio_path(base).unlink(missing_ok=True)
    plan_path(base).unlink(missing_ok=True)
    shutil.rmtree(base / "chunks", ignore_errors=True)
    shutil.rmtree(base / "transcriptions", ignore_errors=True)
    emit("result", {"kept": str(final)})
    return EXIT_OK


def _add_output_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--output-dir", required=False)


def _add_planning_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--chunk-duration", type=float)
    parser.add_argument("--tolerance", type=float)
    parser.add_argument("--silence-threshold-db", type=float)
    parser.add_argument("--silence-duration", type=float)


def _add_response_format(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--response-format", choices=sorted(RESPONSE_FORMAT_EXTENSIONS))


def _add_transcription_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--parallel-jobs", type=int)
    parser.add_argument("--max-retries", type=int)
    parser.add_argument("--retry-delay", type=float)
    parser.add_argument("--timeout", type=float)
    parser.add_argument("--model")
    _add_response_format(parser)
    parser.add_argument("--language")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="chunkscribe worker")
    parser.add_argument("-v", "--verbose", action="store_true")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run")
    run.add_argument("--source", required=True)
    _add_output_dir(run)
    _add_planning_args(run)
    _add_transcription_args(run)
    run.add_argument("--bitrate")
    run.add_argument("--no-normalize", action="store_true")
    run.add_argument("--trim-silence", action="store_true")
    run.add_argument("--markers", action="store_true")
    run.add_argument("--docx", action="store_true")
    run.add_argument("--strict", action="store_true")
    run.set_defaults(func=command_run)

    plan = sub.add_parser("plan")
    plan.add_argument("--source", required=True)
    _add_planning_args(plan)
    plan.set_defaults(func=command_plan)

    transcribe = sub.add_parser("transcribe")
    _add_output_dir(transcribe)
    _add_transcription_args(transcribe)
    transcribe.set_defaults(func=command_transcribe)

    merge = sub.add_parser("merge")
    _add_output_dir(merge)
    merge.add_argument("--markers", action="store_true")
    _add_response_format(merge)
    merge.set_defaults(func=command_merge)

    export_txt_parser = sub.add_parser("export-txt")
    _add_output_dir(export_txt_parser)
    export_txt_parser.add_argument("--output", required=True)
    _add_response_format(export_txt_parser)
    export_txt_parser.set_defaults(func=command_export_txt)

    export_docx_parser = sub.add_parser("export-docx")
    _add_output_dir(export_docx_parser)
    export_docx_parser.add_argument("--output", required=True)
    _add_response_format(export_docx_parser)
    export_docx_parser.set_defaults(func=command_export_docx)

    cleanup = sub.add_parser("cleanup")
    _add_output_dir(cleanup)
    cleanup.set_defaults(func=command_cleanup)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return int(args.func(args))
    except ConfigError as exc:
        emit("error", {"message": str(exc)})
        return EXIT_CONFIG
    except RuntimeError as exc:
        emit("error", {"message": str(exc)})
        return EXIT_FAILED
    except KeyboardInterrupt:
        emit("error", {"message": "Interrupted"})
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
