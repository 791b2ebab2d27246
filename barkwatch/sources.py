"""Byte chunk sources feeding the detection pipeline.

A source is read by exactly one pipeline thread. ``terminate`` may be called
from any thread and must unblock a pending ``read`` (it returns ``b""``).
"""
from __future__ import annotations

import logging
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Iterable, Optional, Sequence

from barkwatch.ffmpeg_io import decode_command
from barkwatch.models import BarkwatchError

_LOG = logging.getLogger("barkwatch.sources")


class ProcessError(BarkwatchError):
    """Raised when the decoding process cannot start or exits non-zero."""

    kind = "ProcessError"

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class ByteChunkSource(ABC):
    description: str = "source"

    def start(self) -> None:
        """Begin producing data; called once by the pipeline before reading."""

    @abstractmethod
    def read(self, size: int) -> bytes:
        """Return up to ``size`` bytes, or ``b""`` at end of input."""

    @abstractmethod
    def terminate(self) -> None:
        """Ask the producer to stop."""

    def kill(self) -> None:
        self.terminate()

    @abstractmethod
    def wait(self, timeout: float | None = None) -> Optional[int]:
        """Wait for the producer to exit; None if still running after ``timeout``."""

    @property
    @abstractmethod
    def returncode(self) -> Optional[int]:
        raise NotImplementedError

    def close(self) -> None:
        """Release pipes and helper threads."""


class FfmpegChunkSource(ByteChunkSource):
    """Spawn a decoder process and read its stdout."""

    def __init__(self, command: Sequence[str], *, description: str | None = None) -> None:
        if not command:
            raise ValueError("command is required for FfmpegChunkSource")
        self.command = list(command)
        self.description = description or self.command[0]
        self._proc: subprocess.Popen | None = None
        self._stderr_thread: threading.Thread | None = None

    @classmethod
    def for_input(
        cls,
        source: str,
        sample_rate: int,
        *,
        ffmpeg_path: str = "ffmpeg",
        live: bool = False,
    ) -> "FfmpegChunkSource":
        return cls(
            decode_command(source, sample_rate, ffmpeg_path=ffmpeg_path, live=live),
            description=source,
        )

    def start(self) -> None:
        if self._proc is not None:
            raise RuntimeError("FfmpegChunkSource already started")
        try:
            self._proc = subprocess.Popen(
                self.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                bufsize=0,
                start_new_session=True,
            )
        except OSError as exc:
            raise ProcessError(f"failed to launch decoder {self.command[0]!r}: {exc}") from exc
        _LOG.debug("decoder pid=%s started: %s", self._proc.pid, " ".join(self.command))
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr,
            name="barkwatch_decoder_stderr",
            daemon=True,
        )
        self._stderr_thread.start()

    def _drain_stderr(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        for raw in iter(proc.stderr.readline, b""):
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            if "error" in line.lower():
                _LOG.warning("decoder: %s", line)
            else:
                _LOG.debug("decoder: %s", line)

    def read(self, size: int) -> bytes:
        if self._proc is None or self._proc.stdout is None:
            return b""
        try:
            return self._proc.stdout.read(size) or b""
        except (OSError, ValueError):
            # stdout closed underneath us during shutdown
            return b""

    def terminate(self) -> None:
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            pass

    def kill(self) -> None:
        proc = self._proc
        if proc is None or proc.poll() is not None:
            return
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    def wait(self, timeout: float | None = None) -> Optional[int]:
        if self._proc is None:
            return None
        try:
            return self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    @property
    def returncode(self) -> Optional[int]:
        if self._proc is None:
            return None
        return self._proc.poll()

    def close(self) -> None:
        proc = self._proc
        if proc is None:
            return
        for stream in (proc.stdout, proc.stderr):
            if stream is None:
                continue
            try:
                stream.close()
            except OSError as exc:
                _LOG.debug("decoder pipe close error: %r", exc)
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=1.0)
            self._stderr_thread = None


class IterableChunkSource(ByteChunkSource):
    """Serve pre-built byte chunks, e.g. synthetic audio in tests.

    With ``live=True`` the source behaves like a network stream: once the
    chunks are exhausted ``read`` blocks until ``terminate`` is called.
    ``exit_code`` is what ``returncode`` reports after natural exhaustion.
    """

    def __init__(
        self,
        chunks: Iterable[bytes],
        *,
        live: bool = False,
        exit_code: int = 0,
        description: str = "memory",
        exits_on_terminate: bool = True,
    ) -> None:
        self._chunks = iter(chunks)
        self.live = live
        self.exit_code = exit_code
        self.description = description
        self.exits_on_terminate = exits_on_terminate
        self._returncode: int | None = None
        self._terminated = threading.Event()
        self._exited = threading.Event()
        self.terminate_calls = 0
        self.kill_calls = 0

    def read(self, size: int) -> bytes:
        if self._terminated.is_set():
            return b""
        for chunk in self._chunks:
            if self._terminated.is_set():
                return b""
            if chunk:
                return bytes(chunk)
        if self.live:
            self._terminated.wait()
            return b""
        self._set_exit(self.exit_code)
        return b""

    def _set_exit(self, code: int) -> None:
        if self._returncode is None:
            self._returncode = code
        self._exited.set()

    def terminate(self) -> None:
        self.terminate_calls += 1
        self._terminated.set()
        if self.exits_on_terminate:
            self._set_exit(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self._terminated.set()
        self._set_exit(-9)

    def wait(self, timeout: float | None = None) -> Optional[int]:
        if not self._exited.wait(timeout):
            return None
        return self._returncode

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode
