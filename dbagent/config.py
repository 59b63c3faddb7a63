"""
Configuration settings for dbagent.

Uses Pydantic Settings to load environment variables for the database connection,
logging, and worker pool defaults. Named queries live in a separate JSON file loaded
with `load_queries`.
"""
from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from pydantic import Field, TypeAdapter, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WORKER_COUNT = 3

_QUERIES_ADAPTER = TypeAdapter(Dict[str, str])


class Settings(BaseSettings):
    # Database
    db_host: str = Field("localhost", alias="DB_HOST")
    db_port: int = Field(5432, alias="DB_PORT")
    db_user: str = Field("postgres", alias="DB_USER")
    db_password: str = Field("postgres", alias="DB_PASSWORD")
    db_name: str = Field("dbagent", alias="DB_NAME")

    # Application
    app_env: str = Field("development", alias="APP_ENV")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_json: bool = Field(False, alias="LOG_JSON")

    # Worker pool
    agent_worker_count: int = Field(DEFAULT_WORKER_COUNT, alias="AGENT_WORKER_COUNT", ge=1)
    agent_debug: bool = Field(False, alias="AGENT_DEBUG")
    agent_shutdown_grace_seconds: float = Field(2.0, alias="AGENT_SHUTDOWN_GRACE_SECONDS", ge=0)
    agent_throttle_delay_seconds: float = Field(0.001, alias="AGENT_THROTTLE_DELAY_SECONDS", ge=0)
    agent_dry_run_writes: bool = Field(False, alias="AGENT_DRY_RUN_WRITES")
    agent_report_failures: bool = Field(False, alias="AGENT_REPORT_FAILURES")
    agent_queries_file: Optional[str] = Field(None, alias="AGENT_QUERIES_FILE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Retrieve a cached instance of Settings to avoid repeated env parsing.
    """
    return Settings()


def build_dsn(settings: Optional[Settings] = None) -> str:
    """Compose a libpq connection URL from settings."""
    settings = settings or get_settings()
    return (
        f"postgresql://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


def load_queries(path: Path | str) -> Dict[str, str]:
    """
    Load named query definitions from a JSON object of ``{"name": "SQL"}``.

    Raises
    ------
    ValueError
        If the file is not a JSON object mapping strings to strings.
    """
    query_path = Path(path)
    with query_path.open("r", encoding="utf-8") as f:
        raw = json.load(f)
    try:
        return _QUERIES_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid query definitions in {query_path}: {exc}") from exc


__all__ = ["DEFAULT_WORKER_COUNT", "Settings", "build_dsn", "get_settings", "load_queries"]
