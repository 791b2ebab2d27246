"""Tests covering config file loading and environment variable overrides."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest

from barkwatch import config as config_module


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)
    for key in (
        "DEV",
        "BARKWATCH_CLASSIFIER",
        "BARKWATCH_DB",
        "BARKWATCH_MODEL_URL",
        "BARKWATCH_LOG_LEVEL",
        "FFMPEG_PATH",
        "STREAM_SAMPLE_RATE",
        "FILE_SAMPLE_RATE",
        "SHUTDOWN_GRACE_SEC",
    ):
        monkeypatch.delenv(key, raising=False)


def test_config_file_merges_over_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("stream:\n  window_size: 4000\nclassifier:\n  heuristic:\n    threshold: 0.5\n")

    _reset_config_state(monkeypatch)
    monkeypatch.setenv("BARKWATCH_CONFIG", str(config_path))

    cfg = config_module.get_cfg()

    assert cfg["stream"]["window_size"] == 4000
    assert cfg["stream"]["sample_rate"] == 8000
    assert cfg["classifier"]["heuristic"]["threshold"] == 0.5
    assert cfg["classifier"]["heuristic"]["rms_max"] == 0.5
    assert config_module.active_config_path() == config_path.resolve()
    assert config_module.search_paths()[0] == config_path.resolve()


def test_env_overrides(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("classifier:\n  mode: heuristic\nsink:\n  database: file.db\n")

    _reset_config_state(monkeypatch)
    monkeypatch.setenv("BARKWATCH_CONFIG", str(config_path))
    monkeypatch.setenv("BARKWATCH_CLASSIFIER", "Ensemble")
    monkeypatch.setenv("BARKWATCH_DB", str(tmp_path / "env.db"))
    monkeypatch.setenv("BARKWATCH_MODEL_URL", "/models/yamnet")
    monkeypatch.setenv("FFMPEG_PATH", "/usr/local/bin/ffmpeg")
    monkeypatch.setenv("STREAM_SAMPLE_RATE", "16000")
    monkeypatch.setenv("SHUTDOWN_GRACE_SEC", "1.5")
    monkeypatch.setenv("DEV", "1")

    cfg = config_module.get_cfg()

    assert cfg["classifier"]["mode"] == "ensemble"
    assert cfg["sink"]["database"] == str(tmp_path / "env.db")
    assert cfg["classifier"]["ml"]["model_url"] == "/models/yamnet"
    assert cfg["audio"]["ffmpeg_path"] == "/usr/local/bin/ffmpeg"
    assert cfg["stream"]["sample_rate"] == 16000
    assert cfg["pipeline"]["shutdown_grace_sec"] == 1.5
    assert cfg["logging"]["dev_mode"] is True


def test_invalid_env_values_ignored(monkeypatch, tmp_path: Path) -> None:
    _reset_config_state(monkeypatch)
    monkeypatch.setenv("BARKWATCH_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("BARKWATCH_CLASSIFIER", "svm")
    monkeypatch.setenv("FILE_SAMPLE_RATE", "fast")

    cfg = config_module.get_cfg()

    assert cfg["classifier"]["mode"] == "heuristic"
    assert cfg["file"]["sample_rate"] == 16000


def test_unreadable_yaml_falls_back_to_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("stream: [unclosed\n")

    _reset_config_state(monkeypatch)
    monkeypatch.setenv("BARKWATCH_CONFIG", str(config_path))

    cfg = config_module.get_cfg()
    assert cfg["stream"]["window_size"] == 8000


def test_get_cfg_is_cached_until_reload(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("pipeline:\n  shutdown_grace_sec: 2\n")

    _reset_config_state(monkeypatch)
    monkeypatch.setenv("BARKWATCH_CONFIG", str(config_path))

    first = config_module.get_cfg()
    config_path.write_text("pipeline:\n  shutdown_grace_sec: 9\n")
    assert config_module.get_cfg() is first
    assert config_module.reload_cfg()["pipeline"]["shutdown_grace_sec"] == 9


@pytest.mark.parametrize(
    "value,expected",
    [(12000, 12000), ("12000", 12000), ("12000.0", 12000), (12000.7, 12000), ("abc", 8000), (True, 8000), (-5, 8000)],
)
def test_cfg_int_coercion(value, expected) -> None:
    cfg = {"stream": {"sample_rate": value}}
    assert config_module.cfg_int(cfg, "stream.sample_rate", min_value=1) == expected


def test_cfg_float_bool_and_str_fallbacks() -> None:
    cfg = {
        "pipeline": {"shutdown_grace_sec": "inf"},
        "file": {"pad_final_window": "yes"},
        "sink": {"database": "   "},
    }
    assert config_module.cfg_float(cfg, "pipeline.shutdown_grace_sec") == 5.0
    assert config_module.cfg_bool(cfg, "file.pad_final_window") is True
    assert config_module.cfg_bool({}, "file.pad_final_window") is False
    assert config_module.cfg_str(cfg, "sink.database") == "bark_detections.db"


def test_configure_logging_dev_mode(monkeypatch) -> None:
    captured = {}
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: captured.update(kwargs))

    config_module.configure_logging({"logging": {"dev_mode": True, "level": "ERROR"}})
    assert captured["level"] == logging.DEBUG

    config_module.configure_logging({"logging": {"level": "warning"}})
    assert captured["level"] == logging.WARNING
    assert "%(name)s" in captured["format"]
