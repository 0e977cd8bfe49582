"""Utilities for resolving metadata from The Movie Database (TMDB)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..cache import MISSING, TTLCache
from ..errors import InvalidArgumentError, ProviderError
from .http import JsonProvider

logger = logging.getLogger(__name__)

IMAGE_BASE_URL = "https://image.tmdb.org/t/p/"
PROFILE_SIZE = "w185"
POSTER_SIZE = "w500"
BACKDROP_SIZE = "original"
COMPANY_LOGO_SIZE = "w92"
ID_CACHE_TTL_SECONDS = 30 * 86_400

MAX_CAST = 8
MAX_DIRECTORS = 2


def _image_url(path: str | None, size: str) -> str | None:
    if not path:
        return None
    if path.startswith("http"):
        return path
    return f"{IMAGE_BASE_URL}{size}{path}"


class TMDBClient(JsonProvider):
    """Client responsible for looking up TMDB details by IMDb id."""

    name = "tmdb"

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        api_key: str | None,
        language: str = "en",
        **kwargs: Any,
    ) -> None:
        if not api_key:
            raise InvalidArgumentError("TMDB API key is required when initialising TMDBClient")
        super().__init__(http_client, **kwargs)
        self._api_key = api_key
        self._language = language
        self._id_cache = TTLCache(2_000, ID_CACHE_TTL_SECONDS)

    async def find_tmdb_id(self, imdb_id: str, content_type: str, *, priority: bool = False) -> str | None:
        """Translate an IMDb id into the TMDB id of the requested media type."""

        cache_key = f"{imdb_id}:{content_type}"
        cached = self._id_cache.get(cache_key)
        if cached is not MISSING:
            return cached

        payload = await self._get_json(
            f"/find/{imdb_id}",
            params={"api_key": self._api_key, "external_source": "imdb_id"},
            priority=priority,
        )
        key = "tv_results" if content_type == "series" else "movie_results"
        results = payload.get(key) if isinstance(payload, dict) else None
        if not results:
            return None
        tmdb_id = next(
            (str(item["id"]) for item in results if isinstance(item, dict) and item.get("id") is not None),
            None,
        )
        if tmdb_id is None:
            return None
        self._id_cache.set(cache_key, tmdb_id)
        return tmdb_id

    async def fetch_details(
        self, tmdb_id: str, content_type: str, *, priority: bool = False
    ) -> dict[str, Any] | None:
        media = "tv" if content_type == "series" else "movie"
        append = "credits,content_ratings,images" if media == "tv" else "credits,images"
        payload = await self._get_json(
            f"/{media}/{tmdb_id}",
            params={
                "api_key": self._api_key,
                "language": self._language,
                "append_to_response": append,
                "include_image_language": f"{self._language},en,null",
            },
            priority=priority,
        )
        if not isinstance(payload, dict):
            return None
        return self.normalize(payload, content_type, language=self._language)

    async def fetch_alternative_titles(
        self, tmdb_id: str, content_type: str, *, priority: bool = False
    ) -> list[dict[str, Any]]:
        media = "tv" if content_type == "series" else "movie"
        try:
            payload = await self._get_json(
                f"/{media}/{tmdb_id}/alternative_titles",
                params={"api_key": self._api_key},
                priority=priority,
            )
        except ProviderError as exc:
            logger.debug("TMDB alternative titles unavailable for %s: %s", tmdb_id, exc)
            return []
        if not isinstance(payload, dict):
            return []
        entries = payload.get("titles") or payload.get("results") or []
        titles: list[dict[str, Any]] = []
        for entry in entries:
            if isinstance(entry, dict) and entry.get("title"):
                titles.append({"title": entry["title"], "country": entry.get("iso_3166_1")})
        return titles

    async def fetch_by_imdb_id(
        self, imdb_id: str, content_type: str, *, priority: bool = False
    ) -> dict[str, Any] | None:
        """Return a partial record built from TMDB details and alternative titles."""

        tmdb_id = await self.find_tmdb_id(imdb_id, content_type, priority=priority)
        if not tmdb_id:
            return None
        details, alt_titles = await asyncio.gather(
            self.fetch_details(tmdb_id, content_type, priority=priority),
            self.fetch_alternative_titles(tmdb_id, content_type, priority=priority),
        )
        if details is None:
            return None
        details["tmdb"] = tmdb_id
        details["imdb"] = imdb_id
        if alt_titles:
            details["alt_titles"] = alt_titles
        return details

    @staticmethod
    def _cast(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [
            {
                "name": person.get("name"),
                "character": person.get("character"),
                "image": _image_url(person.get("profile_path"), PROFILE_SIZE),
            }
            for person in entries[:MAX_CAST]
            if person.get("name")
        ]

    @staticmethod
    def _directors(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
        directors = [person for person in entries if person.get("job") == "Director"]
        return [
            {"name": person.get("name"), "image": _image_url(person.get("profile_path"), PROFILE_SIZE)}
            for person in directors[:MAX_DIRECTORS]
            if person.get("name")
        ]

    @staticmethod
    def _studio(companies: list[dict[str, Any]] | None) -> dict[str, Any] | None:
        if not companies:
            return None
        company = next((entry for entry in companies if entry.get("logo_path")), companies[0])
        return {
            "name": company.get("name"),
            "logo": _image_url(company.get("logo_path"), COMPANY_LOGO_SIZE),
        }

    @staticmethod
    def _logo(images: dict[str, Any] | None, language: str) -> str | None:
        logos = [logo for logo in (images or {}).get("logos") or [] if logo.get("file_path")]
        if not logos:
            return None

        def score(logo: dict[str, Any]) -> float:
            value = 0.0
            if str(logo["file_path"]).endswith(".svg"):
                value += 100
            lang = logo.get("iso_639_1")
            if lang == language:
                value += 50
            elif lang == "en":
                value += 25
            return value + float(logo.get("vote_average") or 0)

        best = max(logos, key=score)
        return _image_url(best["file_path"], "original")

    @classmethod
    def normalize(cls, data: dict[str, Any], content_type: str, *, language: str = "en") -> dict[str, Any]:
        credits = data.get("credits") or {}
        is_series = content_type == "series"
        network = None
        networks = data.get("networks") or []
        if is_series and len(networks) == 1 and networks[0].get("name"):
            network = {
                "name": networks[0]["name"],
                "logo": _image_url(networks[0].get("logo_path"), PROFILE_SIZE),
            }
        return {
            "title": (data.get("name") if is_series else data.get("title")) or None,
            "original_title": (
                data.get("original_name") if is_series else data.get("original_title")
            )
            or None,
            "plot": data.get("overview") or None,
            "tagline": data.get("tagline") or None,
            "stars": cls._cast(credits.get("cast") or []),
            "directors": cls._directors(credits.get("crew") or []),
            "poster": _image_url(data.get("poster_path"), POSTER_SIZE),
            "background": _image_url(data.get("backdrop_path"), BACKDROP_SIZE),
            "logo": cls._logo(data.get("images"), language),
            "network": network,
            "studio": cls._studio(data.get("production_companies")),
            "meta_source_private": "tmdb",
        }
