from datetime import datetime, timezone

import numpy as np
import pytest

from barkwatch.models import ClassificationResult, DetectionEvent, FeatureVector, Window


def test_window_copies_and_freezes_samples():
    source = np.array([0.1, 0.2, 0.3])
    window = Window.from_samples(source, start_index=8000, sample_rate=8000)
    source[0] = 9.0

    assert window.samples[0] == pytest.approx(0.1)
    assert not window.samples.flags.writeable
    assert len(window) == 3
    assert window.offset_seconds == 1.0


def test_result_payload_omits_missing_features():
    result = ClassificationResult(is_bark=True, confidence=0.42, model_used="YAMNet")
    assert result.to_payload() == {"model": "YAMNet", "isBark": True, "confidence": 0.42}


def test_event_from_result_carries_features():
    features = FeatureVector(rms=0.1, zcr=0.2, spectral_centroid=900.0, spectral_rolloff=2500.0)
    result = ClassificationResult(True, 1.0, "Heuristic", features)
    event = DetectionEvent.from_result(
        result,
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        source="cam",
        duration_offset_seconds=2.0,
    )
    assert event.features == {
        "rms": 0.1,
        "zcr": 0.2,
        "spectralCentroid": 900.0,
        "spectralRolloff": 2500.0,
    }
    assert event.ensemble_info is None
    assert event.duration_offset_seconds == 2.0
