"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Airdate", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    catalog_timeout_seconds: float = Field(
        default=15.0, alias="CATALOG_TIMEOUT", gt=0, le=120
    )

    trakt_client_id: str | None = Field(default=None, alias="TRAKT_CLIENT_ID")
    trakt_api_url: HttpUrl = Field(
        default="https://api.trakt.tv", alias="TRAKT_API_URL"
    )

    display_timezone: str = Field(default="UTC", alias="DISPLAY_TIMEZONE")

    sync_batch_size: int = Field(default=4, alias="SYNC_BATCH_SIZE", ge=1, le=50)
    sync_batch_delay_ms: int = Field(
        default=500, alias="SYNC_BATCH_DELAY_MS", ge=0, le=60_000
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./airdate.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("display_timezone", mode="before")
    @classmethod
    def _validate_timezone(cls, value: object) -> str:
        """Reject timezone names zoneinfo cannot resolve."""

        if value is None:
            return "UTC"
        name = str(value).strip() or "UTC"
        try:
            ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown display timezone: {name}") from exc
        return name

    @property
    def sync_batch_delay_seconds(self) -> float:
        return self.sync_batch_delay_ms / 1000

    @property
    def display_zone(self) -> ZoneInfo:
        return ZoneInfo(self.display_timezone)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
