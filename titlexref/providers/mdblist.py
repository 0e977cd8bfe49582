"""Client for the MDBList ratings aggregation API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import InvalidArgumentError
from .http import JsonProvider

logger = logging.getLogger(__name__)

_SOURCE_ALIASES = {"myanimelist": "mal", "tomatoes": "rottentomatoes"}


def normalize_ratings(entries: list[dict[str, Any]]) -> dict[str, dict[str, Any]]:
    """Convert MDBList's rating array into a provider keyed mapping."""

    ratings: dict[str, dict[str, Any]] = {}
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        source = str(entry.get("source") or "").lower()
        if not source:
            continue
        source = _SOURCE_ALIASES.get(source, source)
        if source == "rottentomatoes":
            audience = entry.get("type") == "audience" or "audience" in str(entry.get("name") or "").lower()
            source = "rottentomatoes_audience" if audience else "rottentomatoes"
        ratings[source] = {"score": entry.get("value"), "votes": entry.get("votes") or 0}
    return ratings


class MDBListClient(JsonProvider):
    """Fetch ratings, certification and cross ids from MDBList."""

    name = "mdblist"

    def __init__(self, http_client: httpx.AsyncClient, *, api_key: str | None, **kwargs: Any) -> None:
        if not api_key:
            raise InvalidArgumentError("MDBList API key is required when initialising MDBListClient")
        super().__init__(http_client, **kwargs)
        self._api_key = api_key

    @staticmethod
    def _media(content_type: str) -> str:
        return "show" if content_type == "series" else "movie"

    async def fetch_by_imdb_id(
        self, imdb_id: str, content_type: str = "movie", *, priority: bool = False
    ) -> dict[str, Any] | None:
        payload = await self._get_json(
            f"/imdb/{self._media(content_type)}/{imdb_id}",
            params={"apikey": self._api_key},
            priority=priority,
        )
        if not isinstance(payload, dict) or not payload.get("title"):
            logger.info("MDBList returned no media for %s", imdb_id)
            return None
        return self.normalize(payload)

    async def fetch_batch(
        self, imdb_ids: list[str], content_type: str = "movie"
    ) -> dict[str, dict[str, Any]]:
        """Return normalised payloads keyed by IMDb id for a batch of titles."""

        if not imdb_ids:
            return {}
        payload = await self._post_json(
            f"/imdb/{self._media(content_type)}",
            {"ids": list(imdb_ids)},
            params={"apikey": self._api_key},
        )
        results: dict[str, dict[str, Any]] = {}
        for item in payload if isinstance(payload, list) else []:
            if not isinstance(item, dict):
                continue
            imdb_id = (item.get("ids") or {}).get("imdb")
            if imdb_id:
                results[imdb_id] = self.normalize(item)
        logger.info(
            "MDBList batch resolved %d/%d %ss", len(results), len(imdb_ids), self._media(content_type)
        )
        return results

    @staticmethod
    def normalize(data: dict[str, Any]) -> dict[str, Any]:
        ratings = normalize_ratings(data.get("ratings") or [])
        if data.get("score") is not None:
            ratings["mdblist"] = {"score": data["score"], "votes": None}
        ids = data.get("ids") or {}
        tmdb_id = data.get("tmdb_id") or ids.get("tmdb")
        tvdb_id = data.get("tvdb_id") or ids.get("tvdb")
        return {
            "plot": data.get("description") or None,
            "poster": data.get("poster") or None,
            "background": data.get("backdrop") or None,
            "trailer": data.get("trailer") or None,
            "content_rating": data.get("certification") or None,
            "ratings": ratings,
            "tmdb": str(tmdb_id) if tmdb_id else None,
            "tvdb": str(tvdb_id) if tvdb_id else None,
            "meta_source_private": "mdblist",
        }
