"""Value types shared by the detection pipeline."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import numpy as np

HEURISTIC_MODEL = "Heuristic"
ENSEMBLE_MODEL = "Ensemble"


class BarkwatchError(Exception):
    """Base class for recoverable and fatal pipeline errors."""

    kind = "BarkwatchError"


@dataclass(frozen=True, slots=True)
class Window:
    """A contiguous, read-only slice of mono samples.

    ``start_index`` is the number of samples that preceded the window in the
    stream; ``final`` marks the single short window flushed at end of input.
    """

    samples: np.ndarray
    start_index: int
    sample_rate: int
    final: bool = False

    @classmethod
    def from_samples(
        cls,
        samples: Any,
        *,
        start_index: int = 0,
        sample_rate: int = 8000,
        final: bool = False,
    ) -> "Window":
        data = np.array(samples, dtype=np.float64)
        data.setflags(write=False)
        return cls(data, int(start_index), int(sample_rate), final)

    def __len__(self) -> int:
        return int(self.samples.size)

    @property
    def offset_seconds(self) -> float:
        return self.start_index / float(self.sample_rate)


@dataclass(frozen=True, slots=True)
class FeatureVector:
    rms: float
    zcr: float
    spectral_centroid: float
    spectral_rolloff: float

    def to_payload(self) -> dict[str, float]:
        return {
            "rms": float(self.rms),
            "zcr": float(self.zcr),
            "spectralCentroid": float(self.spectral_centroid),
            "spectralRolloff": float(self.spectral_rolloff),
        }


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    is_bark: bool
    confidence: float
    model_used: str
    features: FeatureVector | None = None
    ensemble_detail: tuple["ClassificationResult", ...] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.model_used,
            "isBark": bool(self.is_bark),
            "confidence": float(self.confidence),
        }
        if self.features is not None:
            payload["features"] = self.features.to_payload()
        return payload


@dataclass(frozen=True, slots=True)
class DetectionEvent:
    """A single bark detection handed to a sink."""

    timestamp: datetime
    confidence: float
    source: str
    model_used: str
    duration_offset_seconds: float | None = None
    features: dict[str, Any] = field(default_factory=dict)
    ensemble_info: dict[str, Any] | None = None

    @classmethod
    def from_result(
        cls,
        result: ClassificationResult,
        *,
        timestamp: datetime,
        source: str,
        duration_offset_seconds: float | None = None,
    ) -> "DetectionEvent":
        features = result.features.to_payload() if result.features is not None else {}
        ensemble_info = None
        if result.ensemble_detail:
            ensemble_info = {
                "allResults": [detail.to_payload() for detail in result.ensemble_detail],
            }
        return cls(
            timestamp=timestamp,
            confidence=float(result.confidence),
            source=source,
            model_used=result.model_used,
            duration_offset_seconds=duration_offset_seconds,
            features=features,
            ensemble_info=ensemble_info,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "confidence": float(self.confidence),
            "duration": self.duration_offset_seconds,
            "source": self.source,
            "model_used": self.model_used,
            "audio_features": dict(self.features),
            "ensemble_info": self.ensemble_info,
        }
