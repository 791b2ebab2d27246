#!/usr/bin/env python3
"""
Unified configuration loader for barkwatch.

Load order (first found wins):
  1) BARKWATCH_CONFIG (env, absolute or relative to CWD)
  2) /etc/barkwatch/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import math
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

_LOG = logging.getLogger("barkwatch.config")

_DEFAULTS: Dict[str, Any] = {
    "audio": {
        "ffmpeg_path": "ffmpeg",
        "header_bytes": 44,
        "chunk_bytes": 4096,
    },
    "stream": {
        "sample_rate": 8000,
        "window_size": 8000,
        "overlap_size": 0,
    },
    "file": {
        "sample_rate": 16000,
        "window_size": 16000,
        "overlap_size": 4000,
        "pad_final_window": False,
    },
    "classifier": {
        "mode": "heuristic",
        "heuristic": {
            "threshold": 0.7,
            "rms_min": 0.01,
            "rms_max": 0.5,
            "zcr_min": 0.05,
            "zcr_max": 0.3,
            "spectral_centroid_min": 500.0,
            "spectral_centroid_max": 3000.0,
            "spectral_rolloff_min": 1000.0,
            "spectral_rolloff_max": 8000.0,
        },
        "ml": {
            "name": "YAMNet",
            "model_url": "https://tfhub.dev/google/yamnet/1",
            "sample_rate": 16000,
            "input_length": 16000,
            "class_index": 69,
            "threshold": 0.3,
        },
    },
    "sink": {
        "database": "bark_detections.db",
    },
    "pipeline": {
        "shutdown_grace_sec": 5.0,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

CLASSIFIER_MODES = ("heuristic", "ml", "ensemble")

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        # Ignore unreadable files and continue with other locations/defaults
        _LOG.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("BARKWATCH_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/barkwatch/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return False


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    if "BARKWATCH_CLASSIFIER" in os.environ:
        mode = os.environ["BARKWATCH_CLASSIFIER"].strip().lower()
        if mode in CLASSIFIER_MODES:
            cfg.setdefault("classifier", {})["mode"] = mode
    if "BARKWATCH_MODEL_URL" in os.environ:
        value = os.environ["BARKWATCH_MODEL_URL"].strip()
        if value:
            cfg.setdefault("classifier", {}).setdefault("ml", {})["model_url"] = value
    if "BARKWATCH_DB" in os.environ:
        value = os.environ["BARKWATCH_DB"].strip()
        if value:
            cfg.setdefault("sink", {})["database"] = value
    if "FFMPEG_PATH" in os.environ:
        value = os.environ["FFMPEG_PATH"].strip()
        if value:
            cfg.setdefault("audio", {})["ffmpeg_path"] = value

    env_map = {
        "STREAM_SAMPLE_RATE": ("stream", "sample_rate", int),
        "FILE_SAMPLE_RATE": ("file", "sample_rate", int),
        "SHUTDOWN_GRACE_SEC": ("pipeline", "shutdown_grace_sec", float),
        "BARKWATCH_LOG_LEVEL": ("logging", "level", lambda s: s.strip().upper()),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                _LOG.warning("ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (barkwatch/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active
    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def _parse_int_like(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return int(text, 10)
        except ValueError:
            try:
                float_candidate = float(text)
            except ValueError:
                return None
            if not math.isfinite(float_candidate) or not float_candidate.is_integer():
                return None
            return int(float_candidate)
    return None


def _parse_float_like(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        candidate = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            candidate = float(text)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(candidate):
        return None
    return candidate


def _section(cfg: Mapping[str, Any], *keys: str) -> Mapping[str, Any]:
    node: Any = cfg
    for key in keys:
        node = node.get(key) if isinstance(node, Mapping) else None
    return node if isinstance(node, Mapping) else {}


def cfg_int(
    cfg: Mapping[str, Any],
    path: str,
    *,
    min_value: int | None = None,
) -> int:
    """Return an int setting at ``path`` ("section.key"), falling back to defaults."""

    *parents, key = path.split(".")
    default = _section(_DEFAULTS, *parents).get(key)
    value = _parse_int_like(_section(cfg, *parents).get(key))
    if value is None or (min_value is not None and value < min_value):
        return int(default)
    return value


def cfg_float(
    cfg: Mapping[str, Any],
    path: str,
    *,
    min_value: float | None = None,
) -> float:
    """Return a float setting at ``path`` ("section.key"), falling back to defaults."""

    *parents, key = path.split(".")
    default = _section(_DEFAULTS, *parents).get(key)
    value = _parse_float_like(_section(cfg, *parents).get(key))
    if value is None or (min_value is not None and value < min_value):
        return float(default)
    return value


def cfg_str(cfg: Mapping[str, Any], path: str) -> str:
    *parents, key = path.split(".")
    value = _section(cfg, *parents).get(key)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return str(_section(_DEFAULTS, *parents).get(key))


def cfg_bool(cfg: Mapping[str, Any], path: str) -> bool:
    *parents, key = path.split(".")
    section = _section(cfg, *parents)
    if key not in section:
        return bool(_section(_DEFAULTS, *parents).get(key))
    return _parse_bool(section.get(key))


def configure_logging(cfg: Mapping[str, Any] | None = None) -> None:
    """Configure root logging from the ``logging`` section."""

    if cfg is None:
        cfg = get_cfg()
    if cfg_bool(cfg, "logging.dev_mode"):
        level = logging.DEBUG
    else:
        level = getattr(logging, cfg_str(cfg, "logging.level").upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
