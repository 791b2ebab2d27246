"""Fixed-size, optionally overlapping windowing over an ordered sample stream."""
from __future__ import annotations

from typing import Iterator, Optional

import numpy as np

from barkwatch.models import Window


class WindowBuffer:
    """Accumulate samples and hand out windows in arrival order.

    ``take_window`` only ever returns complete windows. After each window the
    read position advances by ``window_size - overlap_size`` samples, so
    consecutive windows share ``overlap_size`` samples. The single short
    window of a finite source is produced by ``flush``.
    """

    def __init__(
        self,
        window_size: int,
        overlap_size: int = 0,
        *,
        sample_rate: int = 8000,
    ) -> None:
        if window_size <= 0:
            raise ValueError("window_size must be positive")
        if not 0 <= overlap_size < window_size:
            raise ValueError("overlap_size must satisfy 0 <= overlap_size < window_size")
        self.window_size = int(window_size)
        self.overlap_size = int(overlap_size)
        self.hop_size = self.window_size - self.overlap_size
        self.sample_rate = int(sample_rate)
        self._buf = np.zeros(0, dtype=np.float64)
        self._flushed = False
        self.samples_consumed = 0

    @property
    def pending(self) -> int:
        return int(self._buf.size)

    def push(self, samples: np.ndarray) -> None:
        if self._flushed:
            raise RuntimeError("WindowBuffer already flushed")
        data = np.asarray(samples, dtype=np.float64)
        if data.size == 0:
            return
        self._buf = np.concatenate((self._buf, data.ravel()))

    def take_window(self) -> Optional[Window]:
        if self._buf.size < self.window_size:
            return None
        window = Window.from_samples(
            self._buf[: self.window_size],
            start_index=self.samples_consumed,
            sample_rate=self.sample_rate,
        )
        # copy so the backing array does not keep every drained sample alive
        self._buf = self._buf[self.hop_size :].copy()
        self.samples_consumed += self.hop_size
        return window

    def drain(self) -> Iterator[Window]:
        while True:
            window = self.take_window()
            if window is None:
                return
            yield window

    def flush(self, *, pad: bool = False) -> Optional[Window]:
        """Return the terminal short window, if the remainder warrants one.

        Only a remainder strictly longer than ``overlap_size`` holds samples
        that no previous window has covered.
        """

        if self._flushed:
            return None
        if self._buf.size >= self.window_size:
            raise RuntimeError("drain complete windows before flushing")
        self._flushed = True
        remainder = self._buf
        real_size = int(remainder.size)
        self._buf = np.zeros(0, dtype=np.float64)
        if real_size <= self.overlap_size:
            self.samples_consumed += real_size
            return None
        if pad and remainder.size < self.window_size:
            remainder = np.concatenate(
                (remainder, np.zeros(self.window_size - remainder.size, dtype=np.float64))
            )
        window = Window.from_samples(
            remainder,
            start_index=self.samples_consumed,
            sample_rate=self.sample_rate,
            final=True,
        )
        self.samples_consumed += real_size
        return window
