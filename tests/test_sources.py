import sys
import threading
import time

from barkwatch.sources import FfmpegChunkSource, IterableChunkSource, ProcessError

import pytest


def _python_source(code: str) -> FfmpegChunkSource:
    return FfmpegChunkSource([sys.executable, "-c", code], description="python")


def _read_all(source, size=7):
    out = bytearray()
    while True:
        chunk = source.read(size)
        if not chunk:
            return bytes(out)
        out.extend(chunk)


def test_subprocess_source_reads_stdout():
    source = _python_source("import sys; sys.stdout.buffer.write(bytes(range(50)))")
    source.start()
    assert _read_all(source) == bytes(range(50))
    assert source.wait(5.0) == 0
    assert source.returncode == 0
    source.close()


def test_subprocess_source_reports_exit_code():
    source = _python_source("import sys; sys.stderr.write('fatal error\\n'); sys.exit(3)")
    source.start()
    assert _read_all(source) == b""
    assert source.wait(5.0) == 3
    source.close()


def test_subprocess_source_terminate_unblocks_read():
    source = _python_source("import time; time.sleep(30)")
    source.start()
    result = {}

    reader = threading.Thread(target=lambda: result.setdefault("data", source.read(10)))
    reader.start()
    time.sleep(0.1)
    source.terminate()
    assert source.wait(5.0) is not None
    reader.join(5.0)
    assert not reader.is_alive()
    assert result["data"] == b""
    source.close()


def test_subprocess_source_launch_failure():
    source = FfmpegChunkSource(["/nonexistent/barkwatch-decoder"])
    with pytest.raises(ProcessError):
        source.start()
    assert source.returncode is None
    assert source.wait(0.01) is None
    source.close()


def test_subprocess_source_cannot_start_twice():
    source = _python_source("pass")
    source.start()
    with pytest.raises(RuntimeError):
        source.start()
    source.wait(5.0)
    source.close()


def test_for_input_builds_ffmpeg_command():
    source = FfmpegChunkSource.for_input("rtsp://cam/audio", 8000, ffmpeg_path="/opt/ffmpeg", live=True)
    assert source.command[0] == "/opt/ffmpeg"
    assert source.description == "rtsp://cam/audio"


def test_iterable_source_exit_code_after_exhaustion():
    source = IterableChunkSource([b"ab", b"", b"cd"], exit_code=1)
    assert source.returncode is None
    assert _read_all(source) == b"abcd"
    assert source.returncode == 1
    assert source.wait(0) == 1


def test_live_iterable_source_blocks_until_terminated():
    source = IterableChunkSource([b"xy"], live=True)
    assert source.read(2) == b"xy"

    timer = threading.Timer(0.05, source.terminate)
    timer.start()
    assert source.read(2) == b""
    timer.join()
    assert source.returncode == -15
    assert source.terminate_calls == 1
