"""Application configuration models."""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="ShelfSync", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    catalog_addon_url: HttpUrl | None = Field(default=None, alias="CATALOG_ADDON_URL")
    stream_provider_url: HttpUrl | None = Field(
        default=None, alias="STREAM_PROVIDER_URL"
    )
    upstream_auth_header: str | None = Field(
        default=None, alias="UPSTREAM_AUTH_HEADER"
    )

    catalog_max_items: int = Field(
        default=100, alias="CATALOG_MAX_ITEMS", ge=1, le=10_000
    )
    catalog_fetch_timeout: float = Field(
        default=300.0, alias="CATALOG_FETCH_TIMEOUT", ge=1
    )
    series_import_delay_ms: int = Field(
        default=2_000, alias="SERIES_IMPORT_DELAY_MS", ge=0
    )
    max_parallel_movie_imports: int = Field(
        default=2, alias="MAX_PARALLEL_MOVIE_IMPORTS", ge=1, le=16
    )
    stream_fetch_timeout: float = Field(
        default=30.0, alias="STREAM_FETCH_TIMEOUT", ge=1
    )
    stream_refresh_wait: float = Field(
        default=1.0, alias="STREAM_REFRESH_WAIT", ge=0
    )
    stream_cache_max_age_hours: int | None = Field(
        default=None, alias="STREAM_CACHE_MAX_AGE_HOURS", ge=1
    )
    catalog_sync_interval_seconds: int = Field(
        default=43_200, alias="CATALOG_SYNC_INTERVAL", ge=3_600
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./shelfsync.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("upstream_auth_header", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def upstream_headers(self) -> dict[str, str]:
        """Return request headers derived from ``UPSTREAM_AUTH_HEADER``.

        ``"X-Api-Key: secret"`` becomes ``{"X-Api-Key": "secret"}`` while a bare
        value is sent as the ``Authorization`` header.
        """

        raw = (self.upstream_auth_header or "").strip()
        if not raw:
            return {}
        name, separator, value = raw.partition(":")
        if separator and name.strip() and " " not in name.strip():
            return {name.strip(): value.strip()}
        return {"Authorization": raw}

    @property
    def series_import_delay(self) -> float:
        """Delay between sequential series imports, in seconds."""

        return self.series_import_delay_ms / 1000

    @property
    def stream_cache_max_age(self) -> timedelta | None:
        if self.stream_cache_max_age_hours is None:
            return None
        return timedelta(hours=self.stream_cache_max_age_hours)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
