"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

import os
import tempfile
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from queuectl.constants import DEFAULT_BACKOFF_BASE, DEFAULT_MAX_RETRIES


class Settings(BaseSettings):
    """Application settings loaded from QUEUECTL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="QUEUECTL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = "sqlite:///queuectl.db"
    database_busy_timeout_seconds: float = 5.0

    # Worker Configuration
    worker_poll_interval_seconds: float = 1.0

    # Supervisor Configuration
    supervisor_shutdown_grace_seconds: float = 1.0
    pid_file: str = os.path.join(tempfile.gettempdir(), "queuectl.pid")

    # Job Defaults (overridable at runtime through `queuectl config set`)
    default_max_retries: int = DEFAULT_MAX_RETRIES
    default_backoff_base: int = DEFAULT_BACKOFF_BASE

    # Observability
    log_level: str = "INFO"
    log_format: str = "console"  # json or console
    metrics_port: int | None = None
    otel_service_name: str = "queuectl"
    otel_exporter_otlp_endpoint: str | None = None
    otel_console_export: bool = False


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
