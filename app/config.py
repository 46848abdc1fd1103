"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


HOUR_MS = 60 * 60 * 1000


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Personal Catalog", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=8000, alias="PORT")
    server_base_url: str | None = Field(default=None, alias="SERVER_BASE_URL")

    trakt_client_id: str | None = Field(default=None, alias="TRAKT_CLIENT_ID")
    trakt_client_secret: str | None = Field(
        default=None, alias="TRAKT_CLIENT_SECRET"
    )
    trakt_redirect_uri: HttpUrl | None = Field(
        default=None, alias="TRAKT_REDIRECT_URI"
    )
    trakt_featured_list: str | None = Field(
        default=None, alias="TRAKT_FEATURED_LIST"
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")

    trakt_api_url: HttpUrl = Field(
        default="https://api.trakt.tv", alias="TRAKT_API_URL"
    )
    trakt_authorize_url: HttpUrl = Field(
        default="https://trakt.tv/oauth/authorize", alias="TRAKT_AUTHORIZE_URL"
    )
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_image_base_url: str = Field(
        default="https://image.tmdb.org/t/p", alias="TMDB_IMAGE_BASE_URL"
    )
    netflix_top10_url: HttpUrl = Field(
        default="https://www.netflix.com/tudum/top10/sweden",
        alias="NETFLIX_TOP10_URL",
    )
    netflix_country: str = Field(default="Sweden", alias="NETFLIX_COUNTRY")
    netflix_country_code: str = Field(
        default="se", alias="NETFLIX_COUNTRY_CODE", min_length=2, max_length=8
    )

    redis_url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        validation_alias=AliasChoices("REDIS_URL", "KV_URL"),
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./catalog.db", alias="DATABASE_URL"
    )

    trakt_cache_ttl_ms: int = Field(
        default=6 * HOUR_MS, alias="TRAKT_CACHE_TTL", ge=1_000
    )
    tmdb_cache_ttl_ms: int = Field(
        default=2 * HOUR_MS, alias="TMDB_CACHE_TTL", ge=1_000
    )
    netflix_cache_ttl_ms: int = Field(
        default=24 * HOUR_MS, alias="NETFLIX_CACHE_TTL", ge=1_000
    )
    newly_released_cache_ttl_ms: int = Field(
        default=24 * HOUR_MS, alias="NEWLY_RELEASED_CACHE_TTL", ge=1_000
    )
    poster_cache_ttl_ms: int = Field(
        default=24 * HOUR_MS, alias="POSTER_CACHE_TTL", ge=1_000
    )
    search_delay_ms: int = Field(
        default=250, alias="SEARCH_DELAY_MS", ge=0, le=10_000
    )
    session_ttl_days: int = Field(
        default=90, alias="SESSION_TTL_DAYS", ge=1, le=3_650
    )
    admin_token: str | None = Field(default=None, alias="ADMIN_TOKEN")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator(
        "trakt_client_id",
        "trakt_client_secret",
        "trakt_featured_list",
        "tmdb_api_key",
        "redis_url",
        "server_base_url",
        "admin_token",
        mode="before",
    )
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    @field_validator("trakt_featured_list")
    @classmethod
    def _validate_featured_list(cls, value: str | None) -> str | None:
        """Featured lists are configured as ``username/list-slug``."""

        if value is None:
            return None
        username, _, slug = value.partition("/")
        if not username or not slug or "/" in slug:
            raise ValueError("TRAKT_FEATURED_LIST must look like 'username/list-slug'")
        return value

    @property
    def public_base_url(self) -> str:
        """Return the externally reachable base URL for generated links."""

        if self.server_base_url:
            return self.server_base_url.rstrip("/")
        return f"http://localhost:{self.server_port}"

    @property
    def featured_list(self) -> tuple[str, str] | None:
        if not self.trakt_featured_list:
            return None
        username, _, slug = self.trakt_featured_list.partition("/")
        return username, slug

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
