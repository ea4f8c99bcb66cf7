"""Runtime configuration for the Warfront service."""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class Settings(BaseSettings):
    """Application settings read from the environment (``WARFRONT_*``) or ``.env``."""

    model_config = SettingsConfigDict(
        env_prefix="WARFRONT_", env_file=".env", env_file_encoding="utf-8"
    )

    database_url: str = Field(
        default="sqlite:///warfront.db", description="SQLAlchemy URL of the game database"
    )
    database_echo: bool = Field(default=False, description="Echo emitted SQL to the log")
    database_pool_size: int = Field(default=5, ge=1)
    database_max_overflow: int = Field(default=10, ge=0)
    database_pool_recycle: int = Field(default=1800, description="Seconds before recycling")
    database_pool_timeout: int = Field(default=30, ge=1)
    sqlite_busy_timeout_seconds: float = Field(
        default=30.0,
        description="How long SQLite connections wait on a locked database",
        gt=0.0,
    )
    sweep_enabled: bool = Field(
        default=False, description="Run the scheduled sweeps inside the API process"
    )
    battle_sweep_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between battle/rebellion expiry sweeps",
        gt=0.0,
    )
    maintenance_interval_seconds: float = Field(
        default=3600.0,
        description="Seconds between rage decay and modifier cleanup sweeps",
        gt=0.0,
    )
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Origins allowed to call the HTTP API",
    )
    log_level: str = Field(default="INFO", description="Root log level")


@lru_cache
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()


def configure_logging(level: str | int = "INFO") -> None:
    """Install a basic root handler unless the host application already did."""

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("warfront").setLevel(level)
