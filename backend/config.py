"""Application configuration powered by Pydantic settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Final
from urllib.parse import quote_plus

from pydantic import AnyUrl, Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized configuration object with environment fallbacks."""

    model_config = SettingsConfigDict(env_prefix="HOMEFLOW_", env_file=".env", extra="allow")

    # App
    app_name: str = "HomeFlow"
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8430
    debug: bool = False
    log_level: str = Field(default="info")

    # Database
    db_host: str = Field(default="localhost")
    db_port: int = Field(default=5432)
    db_name: str = Field(default="homeflow")
    db_user: str = Field(default="homeflow")
    db_password: str = Field(default="homeflow")
    db_url: AnyUrl | str | None = Field(default=None)

    # Device proxy (the service that actually talks to physical devices)
    device_proxy_url: AnyUrl | str = Field(default="http://localhost:8440")
    device_proxy_token: str = Field(default="")
    device_proxy_timeout: float = Field(default=15.0)

    # Notifications (empty gateway = log-only delivery)
    notification_gateway_url: str = Field(default="")
    webhook_timeout: float = Field(default=10.0)

    # Automation engine
    timezone: str = Field(default="UTC")
    execution_log_capacity: int = Field(default=100, ge=1)
    high_priority_threshold: int = Field(default=7, ge=1, le=10)
    group_sequence_interval_ms: int = Field(default=500, ge=0)
    time_trigger_interval_seconds: int = Field(default=60, ge=1)

    @field_validator("notification_gateway_url", mode="before")
    @classmethod
    def _strip_gateway(cls, v: str | None) -> str:
        """Treat a blank gateway (env var set but empty) as unset."""
        if v is None:
            return ""
        return str(v).strip()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def database_url(self) -> str:
        """Return a fully qualified async SQLAlchemy database URL."""

        if self.db_url:
            return str(self.db_url)
        return (
            f"postgresql+psycopg://{quote_plus(self.db_user)}:{quote_plus(self.db_password)}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


SETTINGS: Final[Settings] = get_settings()
