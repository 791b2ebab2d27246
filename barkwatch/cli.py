"""Command-line entry point for barkwatch.

  barkwatch stream <url> [--model heuristic|ml|ensemble]
  barkwatch file <path> [--model ...]
  barkwatch models
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Mapping, Sequence

from barkwatch.classifier import ModelLoader, build_classifier, describe_models
from barkwatch.config import (
    CLASSIFIER_MODES,
    active_config_path,
    cfg_str,
    configure_logging,
    get_cfg,
    search_paths,
)
from barkwatch.models import BarkwatchError
from barkwatch.pipeline import DetectionPipeline, PipelineMode, PipelineReport, PipelineSettings, PipelineStatus
from barkwatch.sink import DetectionSink, SinkError, SqliteDetectionSink
from barkwatch.sources import FfmpegChunkSource

_LOG = logging.getLogger("barkwatch.cli")

_POLL_INTERVAL_SEC = 0.5


def _parse_cli_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="barkwatch", description="Detect dog barks in audio streams and files")
    parser.add_argument("--db", default=None, help="SQLite database for detections (overrides sink.database)")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text, target_help in (
        ("stream", "Monitor a live audio stream", "Stream URL (rtsp://, http://, ...)"),
        ("file", "Analyze a recorded audio or video file", "Path to the media file"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("target", help=target_help)
        cmd.add_argument(
            "--model",
            choices=CLASSIFIER_MODES,
            default=None,
            help="Classifier to use (defaults to classifier.mode)",
        )

    sub.add_parser("models", help="List available classifiers")
    return parser.parse_args(argv)


class _StopFlag:
    """Set from signal handlers; the main thread does the actual stopping."""

    def __init__(self) -> None:
        self.event = threading.Event()
        self.signum: int | None = None

    def __call__(self, signum: int, _frame: Any) -> None:
        self.signum = signum
        self.event.set()


def _install_signal_handlers(flag: _StopFlag) -> None:
    signal.signal(signal.SIGINT, flag)
    signal.signal(signal.SIGTERM, flag)


def _open_sink(cfg: Mapping[str, Any], override: str | None) -> DetectionSink:
    path = override or cfg_str(cfg, "sink.database")
    return SqliteDetectionSink(Path(path))


def _build_pipeline(
    cfg: Mapping[str, Any],
    mode: PipelineMode,
    target: str,
    model: str | None,
    sink: DetectionSink,
    *,
    model_loader: ModelLoader | None = None,
) -> DetectionPipeline:
    settings = PipelineSettings.from_config(cfg, mode)
    source = FfmpegChunkSource.for_input(
        target,
        settings.sample_rate,
        ffmpeg_path=cfg_str(cfg, "audio.ffmpeg_path"),
        live=mode is PipelineMode.STREAM,
    )
    return DetectionPipeline(
        source,
        build_classifier(cfg, model, model_loader=model_loader),
        sink,
        mode=mode,
        settings=settings,
        source_name=target,
    )


def _supervise(pipeline: DetectionPipeline, flag: _StopFlag) -> PipelineReport:
    pipeline.start()
    while not pipeline.join(_POLL_INTERVAL_SEC):
        if flag.event.is_set():
            print("[barkwatch] stopping...", flush=True)
            grace = pipeline.settings.shutdown_grace_sec
            pipeline.stop(timeout=grace + 2.0)
            pipeline.join(grace + 2.0)
            break
    return pipeline.report


def _print_file_summary(report: PipelineReport) -> None:
    print("[barkwatch] analysis complete", flush=True)
    print(f"[barkwatch]   detections:  {report.detections}", flush=True)
    print(f"[barkwatch]   audio:       {report.audio_seconds:.1f}s", flush=True)
    print(f"[barkwatch]   processing:  {report.processing_seconds:.1f}s", flush=True)
    if report.processing_seconds > 0:
        print(f"[barkwatch]   speed:       {report.realtime_factor:.1f}x realtime", flush=True)
    if report.sink_failures:
        print(f"[barkwatch]   unsaved:     {report.sink_failures}", flush=True)


def _run_pipeline(args: argparse.Namespace, cfg: Mapping[str, Any], mode: PipelineMode) -> int:
    if mode is PipelineMode.FILE and not Path(args.target).exists():
        print(f"[barkwatch] ERROR: file not found: {args.target}", flush=True)
        return 1
    try:
        sink = _open_sink(cfg, args.db)
    except SinkError as exc:
        print(f"[barkwatch] ERROR: {exc}", flush=True)
        return 1

    flag = _StopFlag()
    _install_signal_handlers(flag)
    try:
        pipeline = _build_pipeline(cfg, mode, args.target, args.model, sink)
        print(f"[barkwatch] {mode.value} {args.target} ({pipeline.classifier.name})", flush=True)
        report = _supervise(pipeline, flag)
    finally:
        sink.close()

    if pipeline.error is not None:
        print(f"[barkwatch] ERROR: {pipeline.error}", flush=True)
        return 1
    if mode is PipelineMode.FILE and report.status is PipelineStatus.COMPLETED:
        _print_file_summary(report)
    if report.status is PipelineStatus.FAILED:
        print(f"[barkwatch] ERROR: {report.last_error_kind}: {report.last_error}", flush=True)
        return 1
    return 0


def _list_models(cfg: Mapping[str, Any]) -> int:
    for entry in describe_models(cfg):
        state = "available" if entry["available"] else "unavailable"
        print(f"{entry['name']:<10} [{entry['mode']}] {state} - {entry['description']}", flush=True)
        if entry.get("error"):
            print(f"{'':<10} {entry['error']}", flush=True)
    return 0


def _log_config_source() -> None:
    path = active_config_path()
    if path is not None:
        _LOG.info("using config %s", path)
    else:
        _LOG.debug("no config file found (searched %s); using defaults", ", ".join(str(p) for p in search_paths()))


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_cli_args(argv)
    cfg = get_cfg()
    configure_logging(cfg)
    _log_config_source()
    try:
        if args.command == "models":
            return _list_models(cfg)
        return _run_pipeline(args, cfg, PipelineMode(args.command))
    except (BarkwatchError, ValueError) as exc:
        print(f"[barkwatch] ERROR: {exc}", flush=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
