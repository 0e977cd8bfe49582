"""Pydantic models describing title records and cross-reference payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ContentType = Literal["movie", "series"]

CANONICAL_NAMESPACE = "imdb"
SINGLE_VALUE_NAMESPACES: tuple[str, ...] = ("tmdb", "tvdb")
MULTI_VALUE_NAMESPACES: tuple[str, ...] = ("mal", "anilist", "kitsu")
ID_NAMESPACES: tuple[str, ...] = (
    CANONICAL_NAMESPACE,
    *SINGLE_VALUE_NAMESPACES,
    *MULTI_VALUE_NAMESPACES,
)


class Rating(BaseModel):
    """A single provider rating."""

    score: float | None = None
    votes: int | None = None


class TitleRecord(BaseModel):
    """The persisted, merged view of one real-world title."""

    model_config = ConfigDict(from_attributes=True)

    id: int | None = None
    imdb: str | None = None
    tmdb: str | None = None
    tvdb: str | None = None
    mal: list[str] = Field(default_factory=list)
    anilist: list[str] = Field(default_factory=list)
    kitsu: list[str] = Field(default_factory=list)

    title: str | None = None
    original_title: str | None = None
    type: ContentType | None = None
    year: int | None = None
    runtime: str | None = None
    plot: str | None = None
    tagline: str | None = None
    status: str | None = None
    seasons: int | None = None
    episodes: int | None = None
    network: dict[str, Any] | None = None
    studio: dict[str, Any] | None = None
    content_rating: str | None = None
    origin_country: str | None = None

    genres: list[str] = Field(default_factory=list)
    interests: list[str] = Field(default_factory=list)
    demographics: str | None = None

    ratings: dict[str, Rating] = Field(default_factory=dict)
    rank_mal: int | None = None
    mal_url: str | None = None
    awards: str | None = None
    stars: list[dict[str, Any]] = Field(default_factory=list)
    directors: list[dict[str, Any]] = Field(default_factory=list)
    alt_titles: list[dict[str, Any]] = Field(default_factory=list)
    poster: str | None = None
    background: str | None = None
    logo: str | None = None
    trailer: str | None = None

    meta_source: str | None = None
    meta_source_private: str | None = None
    last_updated: datetime | None = None
    last_enriched_private: datetime | None = None
    is_anime: bool = False
    anime_reason: str | None = None

    @field_validator("genres", "interests", "stars", "directors", "alt_titles", mode="before")
    @classmethod
    def _none_to_list(cls, value: object) -> object:
        return [] if value is None else value

    @field_validator("ratings", mode="before")
    @classmethod
    def _none_to_dict(cls, value: object) -> object:
        return {} if value is None else value

    def is_stale(self, threshold_seconds: float, *, now: datetime | None = None) -> bool:
        """Return ``True`` when the record has not been written recently."""

        if self.last_updated is None:
            return True
        current = now or datetime.utcnow()
        return current - self.last_updated > timedelta(seconds=threshold_seconds)

    def identifiers(self) -> dict[str, str | list[str]]:
        """Return every populated identifier keyed by namespace."""

        result: dict[str, str | list[str]] = {}
        for namespace in ID_NAMESPACES:
            value = getattr(self, namespace)
            if value:
                result[namespace] = list(value) if isinstance(value, list) else value
        return result

    def has_all_ids(self) -> bool:
        """Return ``True`` when every cross-reference namespace is populated."""

        return all(getattr(self, namespace) for namespace in ID_NAMESPACES)

    def to_partial(self) -> dict[str, Any]:
        """Return a mapping suitable for feeding back into the merge algorithm."""

        return self.model_dump(
            exclude={"id", "last_updated", "is_anime", "anime_reason"},
            exclude_none=True,
        )


@dataclass(slots=True)
class IdMapping:
    """Identifiers in every known namespace for one title."""

    imdb: str | None = None
    tmdb: str | None = None
    tvdb: str | None = None
    mal: list[str] = field(default_factory=list)
    anilist: list[str] = field(default_factory=list)
    kitsu: list[str] = field(default_factory=list)

    def as_partial(self) -> dict[str, Any]:
        """Return only the populated namespaces."""

        payload: dict[str, Any] = {}
        for namespace in ID_NAMESPACES:
            value = getattr(self, namespace)
            if value:
                payload[namespace] = list(value) if isinstance(value, list) else value
        return payload

    def has_any(self) -> bool:
        return bool(self.as_partial())


class ExtractedTitle(BaseModel):
    """Identifiers and descriptive hints handed over by page extractors."""

    model_config = ConfigDict(extra="allow")

    imdb: str | None = None
    tmdb: str | None = None
    tvdb: str | None = None
    mal: str | list[str] | None = None
    anilist: str | list[str] | None = None
    kitsu: str | list[str] | None = None
    title: str | None = None
    original_title: str | None = None
    type: ContentType | None = None
    year: int | None = None
    priority: bool = False

    @field_validator("imdb", "tmdb", "tvdb", "mal", "anilist", "kitsu", mode="before")
    @classmethod
    def _coerce_ids(cls, value: object) -> object:
        if isinstance(value, int):
            return str(value)
        if isinstance(value, list):
            return [str(item) for item in value]
        return value

    def to_partial(self) -> dict[str, Any]:
        """Return the extracted data as a partial title record."""

        return self.model_dump(exclude={"priority"}, exclude_none=True)

    def candidate_ids(self) -> dict[str, str | list[str]]:
        return {
            namespace: getattr(self, namespace)
            for namespace in ID_NAMESPACES
            if getattr(self, namespace)
        }


class StoreStats(BaseModel):
    """Maintenance counters for the title store."""

    total_titles: int
    need_refresh: int
