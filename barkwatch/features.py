"""Per-window acoustic descriptors used by the heuristic bark classifier.

The spectral features do not use an FFT. The window is decimated to roughly
``MAX_TRANSFORM_SIZE`` points by uniform subsampling and a magnitude spectrum
of ``transform_size // 2`` bins is accumulated by direct summation over every
``step``-th decimated sample, adding terms in ascending ``n`` like a plain
loop would. The heuristic profile ranges are calibrated against this spectrum.
"""
from __future__ import annotations

import math

import numpy as np

from barkwatch.models import FeatureVector, Window

MAX_TRANSFORM_SIZE = 512
ROLLOFF_FRACTION = 0.85


def rms(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(samples * samples)))


def zero_crossing_rate(samples: np.ndarray) -> float:
    if samples.size == 0:
        return 0.0
    non_negative = samples >= 0
    crossings = int(np.count_nonzero(non_negative[1:] != non_negative[:-1]))
    return crossings / (2 * samples.size)


def decimate(samples: np.ndarray, target_size: int) -> np.ndarray:
    """Keep every ``len // target_size``-th sample when longer than ``target_size``."""

    if samples.size <= target_size:
        return samples
    step = samples.size // target_size
    return samples[::step]


def magnitude_spectrum(samples: np.ndarray) -> np.ndarray:
    """Return ``transform_size // 2`` magnitudes by direct summation."""

    transform_size = min(MAX_TRANSFORM_SIZE, samples.size)
    bins = transform_size // 2
    if bins == 0:
        return np.zeros(0, dtype=np.float64)
    decimated = decimate(samples, transform_size)
    length = decimated.size
    step = max(1, length // bins)
    n = np.arange(0, length, step, dtype=np.float64)
    values = decimated[::step]
    k = np.arange(bins, dtype=np.float64)[:, np.newaxis]
    angle = (-2.0 * math.pi * k * n) / length
    # accumulate over n in index order, one bin per row
    real = np.cumsum(values * np.cos(angle), axis=1)[:, -1]
    imag = np.cumsum(values * np.sin(angle), axis=1)[:, -1]
    return np.sqrt(real * real + imag * imag)


def bin_frequencies(bins: int, sample_rate: int) -> np.ndarray:
    if bins == 0:
        return np.zeros(0, dtype=np.float64)
    return np.arange(bins, dtype=np.float64) * sample_rate / (2.0 * bins)


def spectral_centroid(spectrum: np.ndarray, sample_rate: int) -> float:
    freqs = bin_frequencies(spectrum.size, sample_rate)
    # DC bin excluded
    denominator = float(np.sum(spectrum[1:]))
    if denominator <= 0:
        return 0.0
    return float(np.sum(freqs[1:] * spectrum[1:])) / denominator


def spectral_rolloff(
    spectrum: np.ndarray,
    sample_rate: int,
    fraction: float = ROLLOFF_FRACTION,
) -> float:
    freqs = bin_frequencies(spectrum.size, sample_rate)
    target = float(np.sum(spectrum)) * fraction
    cumulative = np.cumsum(spectrum)
    reached = np.flatnonzero(cumulative >= target)
    if reached.size == 0:
        return sample_rate / 2.0
    return float(freqs[reached[0]])


class FeatureExtractor:
    """Stateless ``Window -> FeatureVector`` function object."""

    def extract(self, window: Window) -> FeatureVector:
        samples = np.asarray(window.samples, dtype=np.float64)
        spectrum = magnitude_spectrum(samples)
        return FeatureVector(
            rms=rms(samples),
            zcr=zero_crossing_rate(samples),
            spectral_centroid=spectral_centroid(spectrum, window.sample_rate),
            spectral_rolloff=spectral_rolloff(spectrum, window.sample_rate),
        )

    __call__ = extract
