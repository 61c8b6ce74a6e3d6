"""Configuration settings for Procura.

## Bidding windows

A project's bidding window closes either by hand (owner or admin) or when the
closure scheduler notices the deadline has passed. The scheduler checks every
``sweep_interval_seconds`` (5 minutes by default) and once at startup, so a
window may stay open up to one interval past its deadline. Bids are still
refused from the deadline onwards; only the status flip is delayed.

## Backends

- store_backend=mongo: MongoDB via motor. Awards and resets use transactions,
  so the server must be a replica set (Atlas or a single-node rs works).
- store_backend=memory: in-process store for demos and tests.
- notification_backend=log: events are only logged.
- notification_backend=webhook: events are POSTed to notification_webhook_url.
"""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Procura settings from environment."""

    model_config = SettingsConfigDict(
        env_prefix="PROCURA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # MongoDB
    mongodb_uri: str = "mongodb://localhost:27017/?replicaSet=rs0"
    mongodb_database: str = "procura"

    # Store
    store_backend: str = "mongo"  # mongo | memory

    # Closure scheduler
    scheduler_enabled: bool = True
    sweep_interval_seconds: float = 300.0
    sweep_on_start: bool = True

    # Notifications
    notification_backend: str = "log"  # log | webhook
    notification_webhook_url: str = ""
    notification_timeout: float = 10.0

    # Bidder role that hears about newly opened projects
    bidder_broadcast_role: str = "installation_company"

    # Logging
    log_level: str = "INFO"
    log_json: bool = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
