"""Bark classifiers: rule-based heuristic, pretrained audio-event model, and
the fallback/ensemble wrappers the pipeline composes them with.

``predict`` is strict and may raise ``ModelLoadError`` or ``InferenceError``;
``detect`` is what the pipeline calls and never raises for per-window
failures.
"""
from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Sequence

import numpy as np
from scipy import signal

from barkwatch.config import CLASSIFIER_MODES, cfg_float, cfg_int, cfg_str
from barkwatch.features import FeatureExtractor
from barkwatch.models import (
    ENSEMBLE_MODEL,
    HEURISTIC_MODEL,
    BarkwatchError,
    ClassificationResult,
    FeatureVector,
    Window,
)

_LOG = logging.getLogger("barkwatch.classifier")

ScoreFunction = Callable[[np.ndarray], Any]
ModelLoader = Callable[[str], ScoreFunction]


class ModelLoadError(BarkwatchError):
    """Raised when the ML model cannot be loaded (or was never loaded)."""

    kind = "ModelLoadError"


class InferenceError(BarkwatchError):
    """Raised when a single inference call fails or returns garbage."""

    kind = "InferenceError"


class ModelState(enum.Enum):
    NOT_STARTED = "not_started"
    LOAD_ATTEMPTED = "load_attempted"
    READY = "ready"
    UNAVAILABLE = "unavailable"


class Classifier(ABC):
    name: str = "classifier"

    def load(self) -> bool:
        """Prepare external resources; returns False when degraded."""
        return True

    @abstractmethod
    def predict(self, window: Window) -> ClassificationResult:
        raise NotImplementedError

    def detect(self, window: Window) -> ClassificationResult:
        return self.predict(window)


@dataclass(frozen=True)
class BarkProfile:
    """Inclusive feature ranges typical for a bark, plus the decision threshold."""

    rms_min: float = 0.01
    rms_max: float = 0.5
    zcr_min: float = 0.05
    zcr_max: float = 0.3
    spectral_centroid_min: float = 500.0
    spectral_centroid_max: float = 3000.0
    spectral_rolloff_min: float = 1000.0
    spectral_rolloff_max: float = 8000.0
    threshold: float = 0.7

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "BarkProfile":
        values = {
            key: cfg_float(cfg, f"classifier.heuristic.{key}")
            for key in (
                "rms_min",
                "rms_max",
                "zcr_min",
                "zcr_max",
                "spectral_centroid_min",
                "spectral_centroid_max",
                "spectral_rolloff_min",
                "spectral_rolloff_max",
                "threshold",
            )
        }
        return cls(**values)

    def score(self, features: FeatureVector) -> float:
        checks = (
            self.rms_min <= features.rms <= self.rms_max,
            self.zcr_min <= features.zcr <= self.zcr_max,
            self.spectral_centroid_min <= features.spectral_centroid <= self.spectral_centroid_max,
            self.spectral_rolloff_min <= features.spectral_rolloff <= self.spectral_rolloff_max,
        )
        return sum(1 for passed in checks if passed) / len(checks)


class HeuristicClassifier(Classifier):
    name = HEURISTIC_MODEL

    def __init__(
        self,
        profile: BarkProfile | None = None,
        extractor: FeatureExtractor | None = None,
    ) -> None:
        self.profile = profile or BarkProfile()
        self.extractor = extractor or FeatureExtractor()

    def predict(self, window: Window) -> ClassificationResult:
        features = self.extractor.extract(window)
        confidence = self.profile.score(features)
        return ClassificationResult(
            is_bark=confidence > self.profile.threshold,
            confidence=confidence,
            model_used=self.name,
            features=features,
        )


def resample(samples: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Band-limited (FFT) resampling to the model rate."""

    if src_rate == dst_rate or samples.size == 0:
        return samples
    if src_rate <= 0 or dst_rate <= 0:
        raise ValueError("sample rates must be positive")
    target_len = max(1, int(round(samples.size * dst_rate / src_rate)))
    return signal.resample(samples, target_len)


def fit_length(samples: np.ndarray, length: int) -> np.ndarray:
    """Zero-pad or truncate to exactly ``length`` float32 samples."""

    out = np.zeros(length, dtype=np.float32)
    count = min(length, samples.size)
    out[:count] = samples[:count]
    return out


def load_hub_model(model_url: str) -> ScoreFunction:  # pragma: no cover - needs tensorflow
    """Load a YAMNet-style model from TensorFlow Hub.

    The returned callable maps a float32 waveform to the per-frame class
    score matrix (first model output).
    """

    import tensorflow as tf  # type: ignore[import-not-found]
    import tensorflow_hub as hub  # type: ignore[import-not-found]

    model = hub.load(model_url)

    def _infer(waveform: np.ndarray) -> np.ndarray:
        outputs = model(tf.constant(waveform, dtype=tf.float32))
        if isinstance(outputs, (list, tuple)):
            outputs = outputs[0]
        return outputs.numpy()

    return _infer


class MLClassifier(Classifier):
    """Delegates to a pretrained audio-event model and reads one class score.

    The model is loaded at most once. When it is unavailable, or a single
    inference fails, ``detect`` answers with ``fallback`` instead.
    """

    def __init__(
        self,
        model_url: str,
        *,
        name: str = "YAMNet",
        model_loader: ModelLoader | None = None,
        sample_rate: int = 16000,
        input_length: int = 16000,
        class_index: int = 69,
        threshold: float = 0.3,
        fallback: Classifier | None = None,
    ) -> None:
        self.name = name
        self.model_url = model_url
        self.sample_rate = int(sample_rate)
        self.input_length = int(input_length)
        self.class_index = int(class_index)
        self.threshold = float(threshold)
        self.fallback = fallback or HeuristicClassifier()
        self._loader: ModelLoader = model_loader or load_hub_model
        self._infer: ScoreFunction | None = None
        self.state = ModelState.NOT_STARTED
        self.load_error: ModelLoadError | None = None

    @property
    def ready(self) -> bool:
        return self.state is ModelState.READY

    def load(self) -> bool:
        if self.state is not ModelState.NOT_STARTED:
            return self.ready
        self.state = ModelState.LOAD_ATTEMPTED
        _LOG.info("loading %s model from %s", self.name, self.model_url)
        try:
            self._infer = self._loader(self.model_url)
        except Exception as exc:  # noqa: BLE001 - any loader failure degrades to heuristic
            self.state = ModelState.UNAVAILABLE
            self.load_error = ModelLoadError(f"failed to load {self.name} from {self.model_url}: {exc}")
            _LOG.warning("%s unavailable, using heuristic detection: %s", self.name, exc)
            return False
        self.state = ModelState.READY
        _LOG.info("%s model loaded", self.name)
        return True

    def prepare_input(self, window: Window) -> np.ndarray:
        samples = resample(np.asarray(window.samples, dtype=np.float64), window.sample_rate, self.sample_rate)
        return fit_length(samples, self.input_length)

    def _read_score(self, output: Any) -> float:
        try:
            scores = np.asarray(output, dtype=np.float64)
        except (TypeError, ValueError) as exc:
            raise InferenceError(f"model returned unreadable scores: {exc}") from exc
        if scores.ndim == 0:
            raise InferenceError("model returned a scalar instead of a score vector")
        if scores.size == 0:
            raise InferenceError(f"model returned an empty score array of shape {scores.shape}")
        if scores.ndim > 1:
            # first frame of a [frames, classes] score matrix
            scores = scores.reshape(-1, scores.shape[-1])[0]
        if self.class_index >= scores.size:
            raise InferenceError(
                f"model returned {scores.size} scores, class index {self.class_index} out of range"
            )
        score = float(scores[self.class_index])
        if not np.isfinite(score):
            raise InferenceError(f"model returned non-finite score {score!r}")
        return score

    def predict(self, window: Window) -> ClassificationResult:
        if self.state is ModelState.NOT_STARTED:
            self.load()
        if not self.ready or self._infer is None:
            raise self.load_error or ModelLoadError(f"{self.name} model is not loaded")
        waveform = self.prepare_input(window)
        try:
            output = self._infer(waveform)
        except Exception as exc:  # noqa: BLE001 - wrapped for the caller
            raise InferenceError(f"{self.name} inference failed: {exc}") from exc
        score = self._read_score(output)
        return ClassificationResult(
            is_bark=score > self.threshold,
            confidence=min(1.0, max(0.0, score)),
            model_used=self.name,
        )

    def detect(self, window: Window) -> ClassificationResult:
        try:
            return self.predict(window)
        except ModelLoadError:
            return self.fallback.detect(window)
        except InferenceError as exc:
            _LOG.warning("%s inference failed at %.2fs, using heuristic: %s", self.name, window.offset_seconds, exc)
            return self.fallback.detect(window)
        except Exception as exc:  # noqa: BLE001 - contained at the window boundary
            _LOG.warning("%s failed at %.2fs, using heuristic: %r", self.name, window.offset_seconds, exc)
            return self.fallback.detect(window)


class FallbackClassifier(Classifier):
    """Try ``primary`` first and answer with ``fallback`` on any failure.

    A ``ModelLoadError`` switches to the fallback for the lifetime of this
    instance; any other failure only affects the current window.
    """

    def __init__(self, primary: Classifier, fallback: Classifier | None = None) -> None:
        self.primary = primary
        self.fallback = fallback or HeuristicClassifier()
        self.name = primary.name
        self.degraded = False
        self.fallback_count = 0

    def load(self) -> bool:
        try:
            ok = self.primary.load()
        except Exception as exc:  # noqa: BLE001 - loading is never fatal
            _LOG.warning("%s load raised: %s", self.primary.name, exc)
            ok = False
        if not ok:
            self._degrade()
        self.fallback.load()
        return ok

    def _degrade(self) -> None:
        if not self.degraded:
            self.degraded = True
            _LOG.warning("%s unavailable; falling back to %s for this pipeline", self.primary.name, self.fallback.name)

    def predict(self, window: Window) -> ClassificationResult:
        if self.degraded:
            return self.fallback.predict(window)
        return self.primary.predict(window)

    def detect(self, window: Window) -> ClassificationResult:
        if not self.degraded:
            try:
                return self.primary.predict(window)
            except ModelLoadError:
                self._degrade()
            except Exception as exc:  # noqa: BLE001 - contained at the window boundary
                self.fallback_count += 1
                _LOG.warning(
                    "%s failed at %.2fs, using %s for this window: %s",
                    self.primary.name,
                    window.offset_seconds,
                    self.fallback.name,
                    exc,
                )
        return self.fallback.detect(window)


class EnsembleClassifier(Classifier):
    """Run every member and report a bark if any member reports one."""

    name = ENSEMBLE_MODEL

    def __init__(self, members: Sequence[Classifier]) -> None:
        if not members:
            raise ValueError("EnsembleClassifier needs at least one member")
        self.members = list(members)

    def load(self) -> bool:
        return all([member.load() for member in self.members])

    def _combine(self, results: list[ClassificationResult]) -> ClassificationResult:
        positives = [result for result in results if result.is_bark]
        best = max(positives or results, key=lambda result: result.confidence)
        features = next((result.features for result in results if result.features is not None), None)
        return ClassificationResult(
            is_bark=bool(positives),
            confidence=best.confidence,
            model_used=best.model_used,
            features=features,
            ensemble_detail=tuple(results),
        )

    def predict(self, window: Window) -> ClassificationResult:
        return self._combine([member.predict(window) for member in self.members])

    def detect(self, window: Window) -> ClassificationResult:
        return self._combine([member.detect(window) for member in self.members])


def _ml_from_config(
    cfg: Mapping[str, Any],
    model_loader: ModelLoader | None,
    fallback: Classifier,
) -> MLClassifier:
    return MLClassifier(
        cfg_str(cfg, "classifier.ml.model_url"),
        name=cfg_str(cfg, "classifier.ml.name"),
        model_loader=model_loader,
        sample_rate=cfg_int(cfg, "classifier.ml.sample_rate", min_value=1),
        input_length=cfg_int(cfg, "classifier.ml.input_length", min_value=1),
        class_index=cfg_int(cfg, "classifier.ml.class_index", min_value=0),
        threshold=cfg_float(cfg, "classifier.ml.threshold"),
        fallback=fallback,
    )


def build_classifier(
    cfg: Mapping[str, Any],
    mode: Optional[str] = None,
    *,
    model_loader: ModelLoader | None = None,
) -> Classifier:
    """Build the classifier for ``mode`` (defaults to ``classifier.mode``)."""

    if mode is None:
        mode = cfg_str(cfg, "classifier.mode")
    mode = mode.strip().lower()
    if mode not in CLASSIFIER_MODES:
        raise ValueError(f"unknown classifier mode {mode!r} (expected one of {', '.join(CLASSIFIER_MODES)})")
    heuristic = HeuristicClassifier(BarkProfile.from_config(cfg))
    if mode == "heuristic":
        return heuristic
    ml = _ml_from_config(cfg, model_loader, heuristic)
    if mode == "ml":
        return FallbackClassifier(ml, heuristic)
    return EnsembleClassifier([ml, heuristic])


def describe_models(
    cfg: Mapping[str, Any],
    *,
    model_loader: ModelLoader | None = None,
) -> list[dict[str, Any]]:
    """Report which classifiers can be used on this host."""

    heuristic = HeuristicClassifier(BarkProfile.from_config(cfg))
    ml = _ml_from_config(cfg, model_loader, heuristic)
    available = ml.load()
    ml_entry: dict[str, Any] = {
        "name": ml.name,
        "mode": "ml",
        "available": available,
        "source": ml.model_url,
        "description": "Pretrained audio-event model; highest accuracy, needs the model download",
    }
    if ml.load_error is not None:
        ml_entry["error"] = str(ml.load_error)
    return [
        ml_entry,
        {
            "name": heuristic.name,
            "mode": "heuristic",
            "available": True,
            "source": "built-in",
            "description": "Rule-based detection on energy, zero-crossing rate and spectral shape",
        },
    ]
