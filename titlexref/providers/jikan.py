"""Client for the Jikan (MyAnimeList) API."""

from __future__ import annotations

import logging
from typing import Any

from ..utils import format_runtime, parse_runtime
from .http import JsonProvider

logger = logging.getLogger(__name__)


class JikanClient(JsonProvider):
    """Fetch MAL scores, rank and classification for anime entries."""

    name = "jikan"

    async def fetch(self, mal_id: str, *, priority: bool = False) -> dict[str, Any] | None:
        payload = await self._get_json(f"/anime/{mal_id}", priority=priority)
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            logger.warning("Jikan response missing data for MAL %s", mal_id)
            return None
        return self.normalize(data)

    @staticmethod
    def normalize(data: dict[str, Any]) -> dict[str, Any]:
        content_type = "series" if data.get("type") == "TV" else "movie"
        ratings: dict[str, Any] = {}
        if data.get("score"):
            ratings["mal"] = {"score": data["score"], "votes": data.get("scored_by")}
        demographics = [
            entry.get("name")
            for entry in data.get("demographics") or []
            if isinstance(entry, dict) and entry.get("name")
        ]
        return {
            "mal": [str(data["mal_id"])] if data.get("mal_id") else [],
            "ratings": ratings,
            "rank_mal": data.get("rank"),
            "mal_url": data.get("url"),
            "genres": [g["name"] for g in data.get("genres") or [] if isinstance(g, dict) and g.get("name")],
            "interests": [t["name"] for t in data.get("themes") or [] if isinstance(t, dict) and t.get("name")],
            "demographics": demographics[0] if demographics else None,
            "runtime": format_runtime(
                parse_runtime(data.get("duration")), content_type, data.get("episodes") or 1
            ),
            "status": data.get("status"),
            "meta_source": "jikan",
        }
