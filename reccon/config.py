#!/usr/bin/env python3
"""
Unified configuration loader for reccon.

Load order (first found wins):
  1) RECCON_CONFIG (env, absolute or relative to CWD)
  2) /etc/reccon/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from reccon.segmentation import (
    BYTES_PER_CHUNK,
    INT16_MAX,
    SAMPLE_RATE,
    SegmentationConfig,
    duration_to_chunks,
)

LOG = logging.getLogger("reccon")

_DEFAULTS: Dict[str, Any] = {
    "audio": {
        "device": "default",
        "sample_rate": SAMPLE_RATE,
        "chunk_bytes": BYTES_PER_CHUNK,
        "record_command": None,
    },
    "segmenter": {
        "threshold": 0.25,
        "max_segment_seconds": 600.0,
        "min_hot_ms": 200,
        "max_quiet_seconds": 5.0,
    },
    "paths": {
        "storage_dir": "/var/lib/reccon",
    },
    "encoder": {
        "container_format": "opus",
        "bitrate": "48k",
        "queue_chunks": 64,
        "close_timeout_sec": 30.0,
    },
    "upload": {
        "gcs_bucket": "",
        "access_token": "",
        "timeout_sec": 30.0,
        "delete_after_upload": False,
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

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
        LOG.warning("ignoring unreadable config %s: %s", path, exc)
        return {}
    if isinstance(data, dict):
        return data
    LOG.warning("ignoring config %s: top level is not a mapping", path)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("RECCON_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/reccon/config.yaml"),
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


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True

    if "AUDIO_DEV" in os.environ:
        env_device = os.environ["AUDIO_DEV"].strip()
        if env_device:
            cfg.setdefault("audio", {})["device"] = env_device

    env_map = {
        "SAMPLE_RATE": ("audio", "sample_rate", int),
        "STORAGE_DIR": ("paths", "storage_dir", str),
        "THRESHOLD": ("segmenter", "threshold", float),
        "GCS_BUCKET": ("upload", "gcs_bucket", str),
        "GCS_ACCESS_TOKEN": ("upload", "access_token", str),
        "LOG_LEVEL": ("logging", "level", lambda s: s.strip().upper()),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                LOG.warning("ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # reccon/ -> project root
    project_root = Path(__file__).resolve().parent.parent
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
    get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    get_cfg()
    return list(_search_paths)


def threshold_level(value: Any) -> int:
    """Map a configured threshold to a 16-bit sample level.

    Values up to 1.0 are a fraction of full scale; larger values are absolute.
    """
    level = float(value)
    if level < 0:
        raise ValueError("threshold must not be negative")
    if level <= 1.0:
        level *= INT16_MAX
    return min(INT16_MAX, int(level))


def segmentation_config(cfg: Mapping[str, Any]) -> SegmentationConfig:
    """Build the engine configuration from the ``audio`` and ``segmenter`` sections."""
    audio = cfg.get("audio", {})
    seg = cfg.get("segmenter", {})
    sample_rate = int(audio.get("sample_rate", SAMPLE_RATE))
    chunk_size = int(audio.get("chunk_bytes", BYTES_PER_CHUNK))

    def _chunks(seconds: Any) -> int:
        count = duration_to_chunks(
            float(seconds), sample_rate=sample_rate, chunk_size=chunk_size
        )
        return max(1, count)

    return SegmentationConfig(
        chunk_size=chunk_size,
        max_total_chunks=_chunks(seg.get("max_segment_seconds", 600.0)),
        min_hot_chunks=_chunks(float(seg.get("min_hot_ms", 200)) / 1000.0),
        max_quiet_chunks=_chunks(seg.get("max_quiet_seconds", 5.0)),
        threshold=threshold_level(seg.get("threshold", 0.25)),
    )
