"""Application configuration loaded from environment variables."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Variables use the ``CADENCE_`` prefix, e.g. ``CADENCE_LOG_LEVEL=DEBUG``.
    """

    # --- App ---
    app_name: str = "Cadence"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Pipeline ---
    pipeline_config_path: Path | None = None  # None = bundled timeline_config.yaml
    default_timezone: str | None = None  # overrides calendar.timezone from the YAML
    max_concurrent_fetches: int | None = None

    model_config = {"env_prefix": "CADENCE_", "env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
