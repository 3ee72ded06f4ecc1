"""Load pipeline settings from YAML and env configuration."""
from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any

import yaml
from croniter import croniter
from dotenv import load_dotenv

from matchflow.errors import ConfigError
from matchflow.log import get_logger

log = get_logger(__name__)

load_dotenv()

ROOT_DIR: Path = Path(__file__).resolve().parent.parent
CONFIG_DIR: Path = ROOT_DIR / "config"
SETTINGS_PATH: Path = CONFIG_DIR / "pipeline.yaml"
DATA_DIR: Path = ROOT_DIR / "data"
REPORTS_DIR: Path = ROOT_DIR / "reports"

DEFAULTS: dict[str, Any] = {
    "database": {"path": str(DATA_DIR / "matchflow.sqlite3")},
    "matching": {
        "notify_threshold": 50,
        "sweep_stale_hours": 24,
    },
    "queue": {
        "max_attempts": 3,
        "base_delay_seconds": 5.0,
        "max_delay_seconds": 3600.0,
        "visibility_timeout_seconds": 300,
        "retention_days": 90,
        "throughput_window_minutes": 15,
    },
    "dispatch": {
        "workers": 5,
        "batch_size": 10,
        "poll_interval_seconds": 2.0,
    },
    "triggers": {
        "consumers": 1,
        "retry_base_seconds": 30.0,
        "retry_max_seconds": 900.0,
        "max_attempts": 10,
    },
    "embeddings": {
        "provider": "hashing",
        "model": "text-embedding-3-small",
        "base_url": "",
        "dimensions": 64,
        "timeout_seconds": 20.0,
    },
    "transport": {
        "kind": "log",
        "timeout_seconds": 15.0,
        "sender_name": "Job Portal",
    },
    "catalog": {"path": ""},
    "reminders": {"stale_profile_days": 30},
    "scheduler": {
        "tick_seconds": 30.0,
        "timezone": "UTC",
        "jobs": {
            "match_sweep": {"schedule": "0 10 * * *", "enabled": True},
            "visibility_sweep": {"schedule": "* * * * *", "enabled": True},
            "notification_cleanup": {"schedule": "0 2 * * *", "enabled": True},
            "weekly_reminders": {"schedule": "0 9 * * 1", "enabled": True},
            "daily_summary": {"schedule": "0 1 * * *", "enabled": True},
        },
    },
}

EMBEDDING_PROVIDERS: tuple[str, ...] = ("hashing", "openai")
TRANSPORT_KINDS: tuple[str, ...] = ("log", "smtp", "brevo")

# env var -> (section, key, converter)
_ENV_OVERRIDES: dict[str, tuple[str, str, Any]] = {
    "JOB_MATCH_THRESHOLD": ("matching", "notify_threshold", float),
    "NOTIFICATION_RETRY_ATTEMPTS": ("queue", "max_attempts", int),
    "NOTIFICATION_RETRY_DELAY": ("queue", "base_delay_seconds", lambda v: int(v) / 1000.0),
    "NOTIFICATION_CONCURRENCY": ("dispatch", "workers", int),
    "MATCHFLOW_DB_PATH": ("database", "path", str),
    "EMBEDDING_PROVIDER": ("embeddings", "provider", str),
    "NOTIFICATION_TRANSPORT": ("transport", "kind", str),
}


def get_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def load_settings(path: Path | str | None = None) -> dict[str, Any]:
    """Defaults, overlaid by the YAML file, overlaid by env overrides."""
    path = Path(path or get_env("MATCHFLOW_CONFIG") or SETTINGS_PATH)
    data: dict[str, Any] = {}
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a mapping at the top level")
        log.debug("Loaded settings from %s", path)
    else:
        log.debug("No settings file at %s, using defaults", path)

    settings = _merge(DEFAULTS, data)

    for env_key, (section, key, convert) in _ENV_OVERRIDES.items():
        raw = get_env(env_key)
        if not raw:
            continue
        try:
            settings[section][key] = convert(raw)
        except ValueError as exc:
            raise ConfigError(f"{env_key}={raw!r} is not valid: {exc}") from exc

    for section in ("database", "catalog"):
        value = settings[section].get("path")
        if value and value != ":memory:" and not Path(value).is_absolute():
            settings[section]["path"] = str(ROOT_DIR / value)

    validate_settings(settings)
    return settings


def validate_settings(settings: dict[str, Any]) -> None:
    threshold = settings["matching"]["notify_threshold"]
    if not 0 <= float(threshold) <= 100:
        raise ConfigError(f"matching.notify_threshold must be within 0-100, got {threshold}")

    queue = settings["queue"]
    if int(queue["max_attempts"]) < 1:
        raise ConfigError("queue.max_attempts must be at least 1")
    if float(queue["base_delay_seconds"]) <= 0:
        raise ConfigError("queue.base_delay_seconds must be positive")
    if float(queue["max_delay_seconds"]) < float(queue["base_delay_seconds"]):
        raise ConfigError("queue.max_delay_seconds must be >= queue.base_delay_seconds")
    if float(queue["visibility_timeout_seconds"]) <= 0:
        raise ConfigError("queue.visibility_timeout_seconds must be positive")

    if int(settings["triggers"]["max_attempts"]) < 1:
        raise ConfigError("triggers.max_attempts must be at least 1")

    dispatch = settings["dispatch"]
    if int(dispatch["workers"]) < 1 or int(dispatch["batch_size"]) < 1:
        raise ConfigError("dispatch.workers and dispatch.batch_size must be at least 1")

    if settings["embeddings"]["provider"] not in EMBEDDING_PROVIDERS:
        raise ConfigError(f"embeddings.provider must be one of {', '.join(EMBEDDING_PROVIDERS)}")
    if settings["transport"]["kind"] not in TRANSPORT_KINDS:
        raise ConfigError(f"transport.kind must be one of {', '.join(TRANSPORT_KINDS)}")

    for name, job in settings["scheduler"]["jobs"].items():
        schedule = job.get("schedule")
        if not isinstance(schedule, str) or not croniter.is_valid(schedule):
            raise ConfigError(f"scheduler.jobs.{name}: invalid schedule {schedule!r}")


def ensure_dirs(settings: dict[str, Any] | None = None) -> None:
    for d in (DATA_DIR, REPORTS_DIR):
        d.mkdir(parents=True, exist_ok=True)
    if settings:
        Path(settings["database"]["path"]).parent.mkdir(parents=True, exist_ok=True)
