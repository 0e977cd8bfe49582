"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Iterable, Literal

from pydantic import Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="TitleXref", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")
    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./titlexref.db", alias="DATABASE_URL"
    )

    conversion_cache_size: int = Field(
        default=10_000, alias="CONVERSION_CACHE_SIZE", ge=1
    )
    conversion_cache_ttl_seconds: int = Field(
        default=86_400, alias="CONVERSION_CACHE_TTL", ge=1
    )
    title_search_cache_size: int = Field(
        default=5_000, alias="TITLE_SEARCH_CACHE_SIZE", ge=1
    )
    title_search_cache_ttl_seconds: int = Field(
        default=86_400, alias="TITLE_SEARCH_CACHE_TTL", ge=1
    )
    stale_threshold_seconds: int = Field(
        default=86_400, alias="STALE_THRESHOLD", ge=1
    )
    private_enrichment_ttl_seconds: int = Field(
        default=7 * 86_400, alias="PRIVATE_ENRICHMENT_TTL", ge=1
    )
    rate_limit_cooldown_seconds: int = Field(
        default=3_600, alias="RATE_LIMIT_COOLDOWN", ge=1
    )
    background_refresh_delay_seconds: float = Field(
        default=0.1, alias="BACKGROUND_REFRESH_DELAY", ge=0
    )
    conflict_retry_limit: int = Field(
        default=3, alias="CONFLICT_RETRY_LIMIT", ge=1, le=10
    )

    request_timeout_seconds: float = Field(
        default=5.0, alias="REQUEST_TIMEOUT", gt=0
    )
    tmdb_timeout_seconds: float = Field(default=8.0, alias="TMDB_TIMEOUT", gt=0)
    mdblist_timeout_seconds: float = Field(
        default=5.0, alias="MDBLIST_TIMEOUT", gt=0
    )

    mapping_api_url: HttpUrl = Field(
        default="https://arm.haglund.dev/api/v2", alias="MAPPING_API_URL"
    )
    cinemeta_api_url: HttpUrl = Field(
        default="https://cinemeta-live.strem.io/meta", alias="CINEMETA_API_URL"
    )
    imdb_api_url: HttpUrl = Field(
        default="https://api.imdbapi.dev", alias="IMDB_API_URL"
    )
    title_search_api_url: HttpUrl = Field(
        default="https://imdb.iamidiotareyoutoo.com", alias="TITLE_SEARCH_API_URL"
    )
    jikan_api_url: HttpUrl = Field(
        default="https://api.jikan.moe/v4", alias="JIKAN_API_URL"
    )
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    mdblist_api_url: HttpUrl = Field(
        default="https://api.mdblist.com", alias="MDBLIST_API_URL"
    )

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    mdblist_api_key: str | None = Field(default=None, alias="MDBLIST_API_KEY")
    language: str = Field(default="en", alias="LANGUAGE")

    excluded_genre_terms: tuple[str, ...] = Field(
        default=(), alias="EXCLUDED_GENRE_TERMS"
    )
    excluded_genre_substrings: tuple[str, ...] = Field(
        default=(), alias="EXCLUDED_GENRE_SUBSTRINGS"
    )

    @field_validator("excluded_genre_terms", "excluded_genre_substrings", mode="before")
    @classmethod
    def _parse_terms(cls, value: object) -> tuple[str, ...]:
        """Normalise comma separated exclusion lists from environment values."""

        if value is None:
            return ()
        if isinstance(value, str):
            raw_values = value.split(",")
        elif isinstance(value, Iterable):
            raw_values = [str(part) for part in value]
        else:
            raise TypeError("Exclusion lists must be a string or iterable of strings")

        cleaned: list[str] = []
        for entry in raw_values:
            term = entry.strip().lower()
            if term and term not in cleaned:
                cleaned.append(term)
        return tuple(cleaned)

    @field_validator("tmdb_api_key", "mdblist_api_key", mode="before")
    @classmethod
    def _strip_blank(cls, value: object) -> object:
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return value

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
