"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """nof1 experiment server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: experiment records are personal health data and
    # there is no auth layer. Opt into `0.0.0.0` explicitly for remote access.
    nof1_host: str = "127.0.0.1"
    nof1_port: int = 8011
    nof1_log_level: str = "info"
    nof1_allow_insecure_bind: bool = False

    # Storage (experiment data bank)
    db_path: str = "~/.nof1/experiments.db"

    # Encryption; empty disables persistence
    encryption_key: str = ""

    # Experiments
    default_phase_duration_days: int = 7


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
