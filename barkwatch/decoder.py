"""Convert the decoder process's PCM byte stream into normalized samples."""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from barkwatch.models import BarkwatchError

WAV_HEADER_BYTES = 44
SAMPLE_WIDTH = 2


class DecodeError(BarkwatchError):
    """Raised when the audio framing is malformed or truncated."""

    kind = "DecodeError"


@dataclass(frozen=True, slots=True)
class PcmFormat:
    sample_rate: int
    channels: int = 1
    bit_depth: int = 16
    signed: bool = True
    little_endian: bool = True

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if (self.channels, self.bit_depth, self.signed, self.little_endian) != (1, 16, True, True):
            raise ValueError("only mono signed 16-bit little-endian PCM is supported")


def _pcm_to_float(pcm: bytes) -> np.ndarray:
    if not pcm:
        return np.array([], dtype=np.float64)
    samples = np.frombuffer(pcm, dtype="<i2").astype(np.float64)
    return samples / 32768.0


class SampleDecoder:
    """Incremental s16le decoder with a one-time container header skip.

    Header bytes are buffered across chunk boundaries until ``header_bytes``
    have been seen; only the remainder of the completing chunk is decoded.
    A sample split across two chunks is carried over to the next call.
    """

    def __init__(self, fmt: PcmFormat, *, header_bytes: int = WAV_HEADER_BYTES) -> None:
        if header_bytes < 0:
            raise ValueError("header_bytes must be >= 0")
        self.format = fmt
        self.header_bytes = header_bytes
        self._header = bytearray()
        self._carry = b""
        self._finished = False
        self.samples_decoded = 0

    @property
    def sample_rate(self) -> int:
        return self.format.sample_rate

    @property
    def header_complete(self) -> bool:
        return len(self._header) >= self.header_bytes

    def feed(self, chunk: bytes) -> np.ndarray:
        """Decode ``chunk`` and return the samples it completes."""

        if self._finished:
            raise DecodeError("decoder already finished")
        data = bytes(chunk)
        if not self.header_complete:
            needed = self.header_bytes - len(self._header)
            self._header.extend(data[:needed])
            data = data[needed:]
            if not data:
                return np.array([], dtype=np.float64)

        if self._carry:
            data = self._carry + data
            self._carry = b""
        usable = len(data) - (len(data) % SAMPLE_WIDTH)
        if usable < len(data):
            self._carry = data[usable:]
        samples = _pcm_to_float(data[:usable])
        self.samples_decoded += samples.size
        return samples

    def finish(self) -> None:
        """Signal end of input; a dangling half sample is dropped."""

        if self._finished:
            return
        self._finished = True
        if self._carry:
            dropped = len(self._carry)
            self._carry = b""
            raise DecodeError(f"stream ended mid-sample ({dropped} trailing byte discarded)")
        if not self.header_complete:
            raise DecodeError(
                f"stream ended inside the container header ({len(self._header)}/{self.header_bytes} bytes)"
            )
