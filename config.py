"""
Settings for the Task API, read from environment variables.
"""
import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None or v.strip() == "" else v


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_list(name: str, default: List[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return list(default)
    return [p.strip() for p in raw.split(",") if p.strip()]


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "taskapi"
    port: int = 8000
    task_default_limit: int = 100
    log_level: str = "INFO"
    cors_origins: List[str] = field(default_factory=lambda: ["*"])


@lru_cache()
def get_settings() -> Settings:
    return Settings(
        database_url=_env("DATABASE_URL", Settings.database_url),
        database_name=_env("DATABASE_NAME", Settings.database_name),
        port=_env_int("PORT", Settings.port),
        task_default_limit=_env_int("TASK_DEFAULT_LIMIT", Settings.task_default_limit),
        log_level=_env("LOG_LEVEL", Settings.log_level).upper(),
        cors_origins=_env_list("CORS_ORIGINS", ["*"]),
    )
