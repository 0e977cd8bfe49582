"""Client for the public imdbapi.dev title endpoint."""

from __future__ import annotations

import logging
from typing import Any

from ..utils import format_runtime, normalize_type
from .http import JsonProvider

logger = logging.getLogger(__name__)

DEMOGRAPHIC_INTERESTS = ("Josei", "Seinen", "Shōnen", "Shōjo")


def _person(entry: Any) -> dict[str, Any] | None:
    if not isinstance(entry, dict) or not entry.get("displayName"):
        return None
    image = (entry.get("primaryImage") or {}).get("url")
    if image:
        image = image.replace("._V1_.", "._V1_UX150_.")
    return {"name": entry["displayName"], "image": image or None}


class ImdbApiClient(JsonProvider):
    """Fetch and normalise title details from imdbapi.dev."""

    name = "imdbapi"

    async def fetch(
        self, imdb_id: str, *, priority: bool = False, episodes: int = 1
    ) -> dict[str, Any] | None:
        payload = await self._get_json(f"/titles/{imdb_id}", priority=priority)
        if not isinstance(payload, dict) or payload.get("id") != imdb_id:
            logger.warning(
                "imdbapi returned %r when asked for %s",
                payload.get("id") if isinstance(payload, dict) else None,
                imdb_id,
            )
            return None
        return self.normalize(payload, episodes=episodes)

    @staticmethod
    def normalize(data: dict[str, Any], *, episodes: int = 1) -> dict[str, Any]:
        names = [
            interest.get("name")
            for interest in data.get("interests") or []
            if isinstance(interest, dict) and interest.get("name")
        ]
        demographics = [name for name in names if name in DEMOGRAPHIC_INTERESTS]
        interests = [name for name in names if name not in DEMOGRAPHIC_INTERESTS]
        content_type = normalize_type(data.get("type"))

        ratings: dict[str, Any] = {}
        rating = data.get("rating") or {}
        if rating.get("aggregateRating"):
            ratings["imdb"] = {
                "score": float(rating["aggregateRating"]),
                "votes": rating.get("voteCount"),
            }
        metacritic = data.get("metacritic") or {}
        if metacritic.get("score"):
            ratings["metacritic"] = {"score": metacritic["score"], "votes": None}

        runtime_seconds = data.get("runtimeSeconds")
        countries = data.get("originCountries") or []
        origin = countries[0].get("name") if countries and isinstance(countries[0], dict) else None

        return {
            "imdb": data.get("id"),
            "title": data.get("primaryTitle"),
            "original_title": data.get("originalTitle"),
            "type": content_type,
            "year": data.get("startYear"),
            "runtime": format_runtime(runtime_seconds // 60, content_type, episodes)
            if runtime_seconds
            else None,
            "genres": list(data.get("genres") or []),
            "interests": interests,
            "demographics": demographics[0] if demographics else None,
            "ratings": ratings,
            "plot": data.get("plot"),
            "directors": [p for p in map(_person, data.get("directors") or []) if p],
            "stars": [p for p in map(_person, data.get("stars") or []) if p],
            "origin_country": origin,
            "meta_source": "imdbapi",
        }
