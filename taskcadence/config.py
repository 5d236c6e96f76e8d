from __future__ import annotations

import os
import shutil
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import BaseModel, Field


DEFAULT_SETTINGS_PATH = os.environ.get("TASKCADENCE_SETTINGS", "/data/settings.yml")


class AppSettings(BaseModel):
    name: str = "TaskCadence"
    # Fallback for users without a timezone on their profile.
    timezone: str = "UTC"
    host: str = "0.0.0.0"  # nosec B104
    port: int = 8890


class DatabaseSettings(BaseModel):
    path: str = "/data/taskcadence.db"


class GenerationSettings(BaseModel):
    # When disabled the background job is not scheduled; on-demand runs still work.
    enabled: bool = True
    interval_minutes: int = 15

    # How far past "today" (user local date) a pass materializes instances.
    horizon_days: int = 7

    # Long enough for one pass, short enough that a crashed holder self-heals.
    lock_ttl_seconds: int = 30


class LoggingSettings(BaseModel):
    level: str = "INFO"
    directory: str = "/data/logs"
    retention_days: int = 14


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def _ensure_settings_file(path: str) -> None:
    p = Path(path)
    if p.exists():
        return

    p.parent.mkdir(parents=True, exist_ok=True)

    sample = Path(__file__).resolve().parent.parent / "settings.sample.yml"
    if sample.exists():
        shutil.copy(sample, p)
    else:
        p.write_text(
            "app:\n  name: 'TaskCadence'\n  timezone: 'UTC'\n  host: '0.0.0.0'\n  port: 8890\n"
            "database:\n  path: '/data/taskcadence.db'\n"
            "generation:\n  enabled: true\n  interval_minutes: 15\n  horizon_days: 7\n  lock_ttl_seconds: 30\n"
            "logging:\n  level: 'INFO'\n  directory: '/data/logs'\n  retention_days: 14\n"
        )


def _load_yaml(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError("settings.yml must contain a YAML mapping at the root")
    return data


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings_path = os.environ.get("TASKCADENCE_SETTINGS", DEFAULT_SETTINGS_PATH)
    _ensure_settings_file(settings_path)
    raw = _load_yaml(settings_path)
    s = Settings.model_validate(raw)

    db_path_env = os.environ.get("TASKCADENCE_DB_PATH")
    if db_path_env:
        s.database.path = str(db_path_env).strip()

    tz_env = os.environ.get("TASKCADENCE_TIMEZONE")
    if tz_env:
        s.app.timezone = str(tz_env).strip()

    port_env = os.environ.get("PORT") or os.environ.get("TASKCADENCE_PORT")
    if port_env:
        try:
            s.app.port = int(port_env)
        except ValueError:
            pass

    return s
