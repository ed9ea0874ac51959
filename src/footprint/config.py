from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Protocol

import structlog

from .errors import ConfigError
from .lock import FileLock
from .models import ExportState

log = structlog.get_logger("footprint.config")

DEFAULT_EXPORT_INTERVAL_SEC = 3600


def app_data_dir() -> Path:
    override = os.environ.get("FOOTPRINT_HOME", "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "footprint"


def config_path() -> Path:
    override = os.environ.get("FOOTPRINT_CONFIG", "").strip()
    if override:
        return Path(override).expanduser()
    return app_data_dir() / "config.json"


def db_path() -> Path:
    return app_data_dir() / "store.db"


def defaults() -> dict[str, Any]:
    return {
        "export_path": str(app_data_dir() / "export"),
        "export_remote": "",
        "export_interval_sec": DEFAULT_EXPORT_INTERVAL_SEC,
        "export_last": 0,
        "tracked_repos": [],
        "log_file": "",
    }


def load_config(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"could not read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must contain a JSON object")
    return data


def save_config(path: Path, config: dict) -> None:
    tmp = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_text(json.dumps(config, indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        raise ConfigError(f"could not write config {path}: {e}") from e


def config_lock(path: Path) -> FileLock:
    return FileLock(path.with_name(path.name + ".lock"), timeout=10.0, stale_after=30.0)


def get(path: Path, key: str) -> Any:
    cfg = load_config(path)
    if key in cfg:
        return cfg[key]
    return defaults().get(key)


def update(path: Path, **values: Any) -> dict:
    """Read-modify-write under the config lock."""
    with config_lock(path):
        cfg = load_config(path)
        cfg.update(values)
        save_config(path, cfg)
    return cfg


def _as_int(value: Any, key: str, fallback: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        log.warning("invalid_config_value", key=key, value=value, using=fallback)
        return fallback


class StateStore(Protocol):
    def load(self) -> ExportState: ...

    def save_last_export(self, timestamp: int) -> None: ...


class ConfigStateStore:
    """Export state kept in the JSON config file (`export_interval_sec`, `export_last`)."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> ExportState:
        cfg = load_config(self.path)
        return ExportState(
            interval_sec=_as_int(cfg.get("export_interval_sec", DEFAULT_EXPORT_INTERVAL_SEC), "export_interval_sec", DEFAULT_EXPORT_INTERVAL_SEC),
            last_export=_as_int(cfg.get("export_last", 0), "export_last", 0),
        )

    def save_last_export(self, timestamp: int) -> None:
        update(self.path, export_last=int(timestamp))


class InMemoryStateStore:
    def __init__(self, state: ExportState | None = None) -> None:
        self.state = state or ExportState()

    def load(self) -> ExportState:
        return ExportState(interval_sec=self.state.interval_sec, last_export=self.state.last_export)

    def save_last_export(self, timestamp: int) -> None:
        self.state.last_export = int(timestamp)
