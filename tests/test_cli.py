import pytest

from barkwatch import cli
from barkwatch import config as config_module
from barkwatch.pipeline import PipelineMode
from barkwatch.sources import IterableChunkSource


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setenv("BARKWATCH_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setattr(config_module, "configure_logging", lambda cfg=None: None)
    monkeypatch.setattr(cli, "configure_logging", lambda cfg=None: None)


def test_parse_stream_args():
    args = cli._parse_cli_args(["--db", "x.db", "stream", "rtsp://cam/audio", "--model", "ensemble"])
    assert args.command == "stream"
    assert args.target == "rtsp://cam/audio"
    assert args.model == "ensemble"
    assert args.db == "x.db"


def test_unknown_model_rejected():
    with pytest.raises(SystemExit):
        cli._parse_cli_args(["file", "a.wav", "--model", "svm"])


def test_models_command_lists_classifiers(monkeypatch, capsys):
    monkeypatch.setattr(
        cli,
        "describe_models",
        lambda cfg: [
            {"name": "YAMNet", "mode": "ml", "available": False, "description": "model", "error": "offline"},
            {"name": "Heuristic", "mode": "heuristic", "available": True, "description": "rules"},
        ],
    )
    assert cli.main(["models"]) == 0
    out = capsys.readouterr().out
    assert "YAMNet" in out and "unavailable" in out
    assert "offline" in out
    assert "Heuristic" in out


def test_missing_file_fails(tmp_path, capsys):
    assert cli.main(["--db", str(tmp_path / "d.db"), "file", str(tmp_path / "nope.wav")]) == 1
    assert "file not found" in capsys.readouterr().out


def test_build_pipeline_wires_ffmpeg_source(tmp_path):
    cfg = {"audio": {"ffmpeg_path": "/opt/ffmpeg"}, "file": {"window_size": 8000, "overlap_size": 2000}}
    pipeline = cli._build_pipeline(
        cfg,
        PipelineMode.FILE,
        str(tmp_path / "clip.mp4"),
        "heuristic",
        sink=None,
    )
    assert pipeline.mode is PipelineMode.FILE
    assert pipeline.settings.sample_rate == 16000
    assert pipeline.settings.overlap_size == 2000
    assert pipeline.source.command[0] == "/opt/ffmpeg"
    assert pipeline.classifier.name == "Heuristic"


def test_file_command_prints_summary(monkeypatch, tmp_path, capsys):
    media = tmp_path / "clip.wav"
    media.write_bytes(b"")

    def fake_for_input(source, sample_rate, *, ffmpeg_path, live):
        assert live is False
        return IterableChunkSource([b"\x00" * 44 + b"\x00\x00" * sample_rate])

    monkeypatch.setattr(cli.FfmpegChunkSource, "for_input", staticmethod(fake_for_input))
    monkeypatch.setattr(cli, "_install_signal_handlers", lambda flag: None)

    db = tmp_path / "barks.db"
    assert cli.main(["--db", str(db), "file", str(media)]) == 0
    out = capsys.readouterr().out
    assert "analysis complete" in out
    assert "detections:  0" in out
    assert db.exists()


def test_file_command_reports_decoder_failure(monkeypatch, tmp_path, capsys):
    media = tmp_path / "clip.wav"
    media.write_bytes(b"")

    monkeypatch.setattr(
        cli.FfmpegChunkSource,
        "for_input",
        staticmethod(lambda *args, **kwargs: IterableChunkSource([], exit_code=1)),
    )
    monkeypatch.setattr(cli, "_install_signal_handlers", lambda flag: None)

    assert cli.main(["--db", str(tmp_path / "barks.db"), "file", str(media)]) == 1
    assert "ERROR" in capsys.readouterr().out


def test_logs_active_config_path(monkeypatch, tmp_path, caplog):
    config_path = tmp_path / "barkwatch.yaml"
    config_path.write_text("classifier:\n  mode: heuristic\n", encoding="utf-8")
    monkeypatch.setenv("BARKWATCH_CONFIG", str(config_path))
    monkeypatch.setattr(cli, "describe_models", lambda cfg: [])

    with caplog.at_level("INFO", logger="barkwatch.cli"):
        assert cli.main(["models"]) == 0

    messages = [record.getMessage() for record in caplog.records if record.name == "barkwatch.cli"]
    assert f"using config {config_path.resolve()}" in messages


def test_logs_searched_paths_without_config(monkeypatch, tmp_path, caplog):
    monkeypatch.setattr(config_module, "_candidate_search_paths", lambda root, script: [tmp_path / "missing.yaml"])
    monkeypatch.setattr(cli, "describe_models", lambda cfg: [])

    with caplog.at_level("DEBUG", logger="barkwatch.cli"):
        assert cli.main(["models"]) == 0

    messages = [record.getMessage() for record in caplog.records if record.name == "barkwatch.cli"]
    assert any("no config file found" in msg and str(tmp_path / "missing.yaml") in msg for msg in messages)
