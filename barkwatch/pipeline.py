"""Decode -> window -> classify -> emit, for live streams and finite files.

One pipeline owns one source and processes its windows strictly in arrival
order on a single thread. Pipelines share nothing but the sink.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from barkwatch.classifier import Classifier
from barkwatch.config import cfg_bool, cfg_float, cfg_int
from barkwatch.decoder import DecodeError, PcmFormat, SampleDecoder
from barkwatch.models import DetectionEvent, Window
from barkwatch.sink import DetectionSink, SinkError
from barkwatch.sources import ByteChunkSource, ProcessError
from barkwatch.window_buffer import WindowBuffer

_LOG = logging.getLogger("barkwatch.pipeline")

Clock = Callable[[], datetime]


class PipelineMode(str, enum.Enum):
    STREAM = "stream"
    FILE = "file"


class PipelineStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (PipelineStatus.STOPPED, PipelineStatus.COMPLETED, PipelineStatus.FAILED)


@dataclass(frozen=True)
class PipelineSettings:
    sample_rate: int = 8000
    window_size: int = 8000
    overlap_size: int = 0
    header_bytes: int = 44
    chunk_bytes: int = 4096
    pad_final_window: bool = False
    shutdown_grace_sec: float = 5.0

    def __post_init__(self) -> None:
        if not 0 <= self.overlap_size < self.window_size:
            raise ValueError("overlap_size must satisfy 0 <= overlap_size < window_size")

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any], mode: PipelineMode | str) -> "PipelineSettings":
        section = PipelineMode(mode).value
        window_size = cfg_int(cfg, f"{section}.window_size", min_value=1)
        overlap_size = cfg_int(cfg, f"{section}.overlap_size", min_value=0)
        if overlap_size >= window_size:
            _LOG.warning(
                "%s.overlap_size=%s must be smaller than window_size=%s; using no overlap",
                section,
                overlap_size,
                window_size,
            )
            overlap_size = 0
        pad_final = cfg_bool(cfg, "file.pad_final_window") if section == "file" else False
        return cls(
            sample_rate=cfg_int(cfg, f"{section}.sample_rate", min_value=1),
            window_size=window_size,
            overlap_size=overlap_size,
            header_bytes=cfg_int(cfg, "audio.header_bytes", min_value=0),
            chunk_bytes=cfg_int(cfg, "audio.chunk_bytes", min_value=2),
            pad_final_window=pad_final,
            shutdown_grace_sec=cfg_float(cfg, "pipeline.shutdown_grace_sec", min_value=0.0),
        )


@dataclass
class PipelineReport:
    pipeline_id: str
    mode: PipelineMode
    source: str
    status: PipelineStatus = PipelineStatus.IDLE
    sample_rate: int = 0
    samples_decoded: int = 0
    windows_processed: int = 0
    detections: int = 0
    records_written: int = 0
    last_record_id: int | None = None
    sink_failures: int = 0
    window_failures: int = 0
    decode_errors: int = 0
    last_error_kind: str | None = None
    last_error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    processing_seconds: float = 0.0

    @property
    def audio_seconds(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.samples_decoded / float(self.sample_rate)

    @property
    def realtime_factor(self) -> float:
        if self.processing_seconds <= 0:
            return 0.0
        return self.audio_seconds / self.processing_seconds


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DetectionPipeline:
    def __init__(
        self,
        source: ByteChunkSource,
        classifier: Classifier,
        sink: DetectionSink,
        *,
        mode: PipelineMode | str = PipelineMode.STREAM,
        settings: PipelineSettings | None = None,
        source_name: str | None = None,
        pipeline_id: str | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.mode = PipelineMode(mode)
        self.settings = settings or PipelineSettings()
        self.source = source
        self.classifier = classifier
        self.sink = sink
        self.pipeline_id = pipeline_id or uuid.uuid4().hex[:12]
        self._clock = clock
        self.report = PipelineReport(
            pipeline_id=self.pipeline_id,
            mode=self.mode,
            source=source_name or getattr(source, "description", "source"),
            sample_rate=self.settings.sample_rate,
        )
        self._lock = threading.Lock()
        self._stop_requested = threading.Event()
        self._done = threading.Event()
        self._started = False
        self._source_started = False
        self._source_terminated = False
        self._thread: threading.Thread | None = None
        self._error: BaseException | None = None

    # ------------------------------------------------------------------ state

    @property
    def status(self) -> PipelineStatus:
        return self.report.status

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def _set_status(self, status: PipelineStatus) -> None:
        with self._lock:
            self.report.status = status

    def _note_error(self, exc: BaseException) -> None:
        kind = getattr(exc, "kind", None) or type(exc).__name__
        self.report.last_error_kind = kind
        self.report.last_error = str(exc)

    # ------------------------------------------------------------- processing

    def _timestamp_for(self, window: Window) -> datetime:
        if self.mode is PipelineMode.FILE and self.report.started_at is not None:
            return self.report.started_at + timedelta(seconds=window.offset_seconds)
        return self._clock()

    def process_window(self, window: Window) -> Optional[DetectionEvent]:
        """Classify one window and hand a detection to the sink.

        Failures are contained here so one bad window never ends the run.
        """

        self.report.windows_processed += 1
        try:
            result = self.classifier.detect(window)
        except Exception as exc:  # noqa: BLE001 - contained at the window boundary
            self.report.window_failures += 1
            self._note_error(exc)
            _LOG.warning("[%s] classification failed at %.2fs: %s", self.pipeline_id, window.offset_seconds, exc)
            return None
        if not result.is_bark:
            return None

        offset = window.offset_seconds if self.mode is PipelineMode.FILE else None
        event = DetectionEvent.from_result(
            result,
            timestamp=self._timestamp_for(window),
            source=self.report.source,
            duration_offset_seconds=offset,
        )
        self.report.detections += 1
        if offset is not None:
            _LOG.info(
                "[%s] bark #%d at %.1fs (%s, confidence %.1f%%)",
                self.pipeline_id,
                self.report.detections,
                offset,
                result.model_used,
                result.confidence * 100,
            )
        else:
            _LOG.info(
                "[%s] bark #%d at %s (%s, confidence %.1f%%)",
                self.pipeline_id,
                self.report.detections,
                event.timestamp.isoformat(),
                result.model_used,
                result.confidence * 100,
            )
        if result.ensemble_detail:
            _LOG.debug(
                "[%s] ensemble: %s",
                self.pipeline_id,
                ", ".join(f"{d.model_used}({d.confidence * 100:.1f}%)" for d in result.ensemble_detail),
            )
        try:
            record_id = self.sink.record(event)
        except Exception as exc:  # noqa: BLE001 - never retried, never fatal
            error = exc if isinstance(exc, SinkError) else SinkError(str(exc))
            self.report.sink_failures += 1
            self._note_error(error)
            _LOG.error("[%s] failed to record detection: %s", self.pipeline_id, exc)
        else:
            self.report.records_written += 1
            self.report.last_record_id = record_id
        return event

    def _drain(self, buffer: WindowBuffer) -> None:
        for window in buffer.drain():
            self.process_window(window)

    def run(self) -> PipelineReport:
        """Process the source to completion (or until ``stop``) on this thread.

        In file mode a decoder process failure raises ``ProcessError`` after
        the report has been finalized; in stream mode it ends the pipeline
        with ``FAILED`` status.
        """

        with self._lock:
            if self._started:
                raise RuntimeError("pipeline already started")
            self._started = True
            if self._stop_requested.is_set():
                self.report.status = PipelineStatus.STOPPED
                self._done.set()
                return self.report
            self.report.status = PipelineStatus.RUNNING

        settings = self.settings
        self.report.started_at = self._clock()
        started = time.monotonic()
        decoder = SampleDecoder(PcmFormat(settings.sample_rate), header_bytes=settings.header_bytes)
        buffer = WindowBuffer(settings.window_size, settings.overlap_size, sample_rate=settings.sample_rate)
        failure: ProcessError | None = None
        _LOG.info(
            "[%s] %s pipeline started for %s (%d Hz, window=%d, overlap=%d)",
            self.pipeline_id,
            self.mode.value,
            self.report.source,
            settings.sample_rate,
            settings.window_size,
            settings.overlap_size,
        )

        try:
            # Model loading happens once per pipeline; failure only degrades.
            self.classifier.load()
            # launch and stop() serialize on the lock
            with self._lock:
                if not self._stop_requested.is_set():
                    self.source.start()
                    self._source_started = True

            while not self._stop_requested.is_set():
                chunk = self.source.read(settings.chunk_bytes)
                if not chunk:
                    break
                if self._stop_requested.is_set():
                    break
                samples = decoder.feed(chunk)
                buffer.push(samples)
                self._drain(buffer)

            self.report.samples_decoded = decoder.samples_decoded
            if not self._stop_requested.is_set():
                try:
                    decoder.finish()
                except DecodeError as exc:
                    self.report.decode_errors += 1
                    self._note_error(exc)
                    _LOG.warning("[%s] %s", self.pipeline_id, exc)
                if self.mode is PipelineMode.FILE:
                    final = buffer.flush(pad=settings.pad_final_window)
                    if final is not None:
                        self.process_window(final)
                failure = self._check_exit()
        except ProcessError as exc:
            failure = exc
        except Exception as exc:
            self._note_error(exc)
            self._finish(PipelineStatus.FAILED, started)
            _LOG.exception("[%s] pipeline crashed", self.pipeline_id)
            raise
        finally:
            self._shutdown_source()

        if self._stop_requested.is_set():
            self._finish(PipelineStatus.STOPPED, started)
        elif failure is not None:
            self._note_error(failure)
            self._finish(PipelineStatus.FAILED, started)
            _LOG.error("[%s] %s", self.pipeline_id, failure)
            if self.mode is PipelineMode.FILE:
                raise failure
        else:
            self._finish(PipelineStatus.COMPLETED, started)
        return self.report

    def _check_exit(self) -> ProcessError | None:
        returncode = self.source.wait(self.settings.shutdown_grace_sec)
        if returncode is None or returncode == 0:
            return None
        return ProcessError(f"decoder exited with code {returncode}", returncode)

    def _finish(self, status: PipelineStatus, started: float) -> None:
        self.report.processing_seconds = time.monotonic() - started
        self.report.finished_at = self._clock()
        self._set_status(status)
        self._done.set()
        _LOG.info(
            "[%s] pipeline %s: %d window(s), %d detection(s), %.1fs audio",
            self.pipeline_id,
            status.value,
            self.report.windows_processed,
            self.report.detections,
            self.report.audio_seconds,
        )

    # --------------------------------------------------------------- shutdown

    def _terminate_source(self) -> None:
        with self._lock:
            if self._source_terminated or not self._source_started:
                return
            self._source_terminated = True
        self.source.terminate()

    def _shutdown_source(self) -> None:
        if self._source_started and self.source.returncode is None:
            self._terminate_source()
            if self.source.wait(self.settings.shutdown_grace_sec) is None:
                _LOG.warning(
                    "[%s] decoder did not exit within %.1fs; killing it",
                    self.pipeline_id,
                    self.settings.shutdown_grace_sec,
                )
                self.source.kill()
                self.source.wait(1.0)
        self.source.close()

    # ---------------------------------------------------------------- control

    def start(self) -> "DetectionPipeline":
        """Run the pipeline on a background thread."""

        if self._thread is not None:
            raise RuntimeError("pipeline already started")
        self._thread = threading.Thread(
            target=self._run_in_thread,
            name=f"barkwatch_pipeline_{self.pipeline_id}",
            daemon=True,
        )
        self._thread.start()
        return self

    def _run_in_thread(self) -> None:
        try:
            self.run()
        except Exception as exc:  # noqa: BLE001 - surfaced through report/error
            self._error = exc

    @property
    def error(self) -> BaseException | None:
        return self._error

    def join(self, timeout: float | None = None) -> bool:
        if self._thread is not None:
            self._thread.join(timeout)
            return not self._thread.is_alive()
        return self._done.wait(timeout)

    def stop(self, timeout: float | None = None) -> PipelineReport:
        """Stop the pipeline and wait for the in-flight window to finish.

        Safe to call repeatedly and from any thread other than the one
        executing ``run``.
        """

        with self._lock:
            already = self._stop_requested.is_set()
            self._stop_requested.set()
            started = self._started
            if not started:
                self.report.status = PipelineStatus.STOPPED
                self._done.set()
            elif not self.report.status.terminal:
                self.report.status = PipelineStatus.STOPPING
        if not started:
            return self.report
        if not already:
            _LOG.info("[%s] stop requested", self.pipeline_id)
        if not self._done.is_set():
            self._terminate_source()
        if not self._done.wait(timeout):
            _LOG.warning("[%s] pipeline still draining after stop request", self.pipeline_id)
        return self.report


SourceFactory = Callable[[str, PipelineMode, PipelineSettings], ByteChunkSource]
ClassifierFactory = Callable[[], Classifier]


class PipelineRegistry:
    """Tracks running pipelines by id for an orchestration layer."""

    def __init__(
        self,
        *,
        source_factory: SourceFactory,
        classifier_factory: ClassifierFactory,
        sink: DetectionSink,
        settings_for: Callable[[PipelineMode], PipelineSettings] | None = None,
    ) -> None:
        self._source_factory = source_factory
        self._classifier_factory = classifier_factory
        self._sink = sink
        self._settings_for = settings_for or (lambda mode: PipelineSettings())
        self._lock = threading.Lock()
        self._pipelines: dict[str, DetectionPipeline] = {}

    def start(self, source: str, mode: PipelineMode | str = PipelineMode.STREAM) -> str:
        mode = PipelineMode(mode)
        settings = self._settings_for(mode)
        pipeline = DetectionPipeline(
            self._source_factory(source, mode, settings),
            self._classifier_factory(),
            self._sink,
            mode=mode,
            settings=settings,
            source_name=source,
        )
        with self._lock:
            self._pipelines[pipeline.pipeline_id] = pipeline
        pipeline.start()
        return pipeline.pipeline_id

    def get(self, pipeline_id: str) -> DetectionPipeline:
        with self._lock:
            try:
                return self._pipelines[pipeline_id]
            except KeyError:
                raise KeyError(f"unknown pipeline {pipeline_id!r}") from None

    def stop(self, pipeline_id: str, timeout: float | None = None) -> PipelineReport:
        return self.get(pipeline_id).stop(timeout)

    def stop_all(self, timeout: float | None = None) -> list[PipelineReport]:
        with self._lock:
            pipelines = list(self._pipelines.values())
        return [pipeline.stop(timeout) for pipeline in pipelines]

    def reports(self) -> list[PipelineReport]:
        with self._lock:
            return [pipeline.report for pipeline in self._pipelines.values()]

    def prune(self) -> list[str]:
        """Forget pipelines that reached a terminal status."""

        with self._lock:
            finished = [pid for pid, p in self._pipelines.items() if p.status.terminal]
            for pid in finished:
                del self._pipelines[pid]
        return finished

    def __len__(self) -> int:
        with self._lock:
            return len(self._pipelines)

    def __contains__(self, pipeline_id: object) -> bool:
        with self._lock:
            return pipeline_id in self._pipelines
