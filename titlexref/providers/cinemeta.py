"""Client for the public Cinemeta metadata add-on."""

from __future__ import annotations

import logging
from typing import Any

from ..merge import MAX_DIRECTORS, MAX_STARS, merge_credits
from ..utils import format_runtime, normalize_type, parse_runtime, parse_year
from .http import JsonProvider

logger = logging.getLogger(__name__)

PROFILE_BASE_URL = "https://image.tmdb.org/t/p/w185"
METAHUB_BASE_URL = "https://images.metahub.space"


def _people(entries: Any, limit: int) -> list[dict[str, Any]]:
    people: list[dict[str, Any]] = []
    for person in entries or []:
        if not isinstance(person, dict) or not person.get("name"):
            continue
        path = person.get("profile_path")
        people.append(
            {
                "name": person["name"],
                "character": person.get("character"),
                "image": f"{PROFILE_BASE_URL}{path}" if path else None,
            }
        )
    return merge_credits(people, [], limit)


def _series_counts(videos: Any) -> tuple[int, int]:
    seasons = 0
    episodes = 0
    for video in videos or []:
        if not isinstance(video, dict):
            continue
        season = video.get("season")
        if not isinstance(season, int):
            continue
        seasons = max(seasons, season)
        # Season 0 holds specials.
        if season != 0:
            episodes += 1
    return seasons, episodes


class CinemetaClient(JsonProvider):
    """Fetch and normalise Cinemeta meta objects."""

    name = "cinemeta"

    async def fetch(self, imdb_id: str, content_type: str, *, priority: bool = False) -> dict[str, Any] | None:
        payload = await self._get_json(f"/{content_type}/{imdb_id}.json", priority=priority)
        meta = payload.get("meta") if isinstance(payload, dict) else None
        if not isinstance(meta, dict):
            logger.warning("Cinemeta response missing meta for %s", imdb_id)
            return None
        return self.normalize(meta)

    @staticmethod
    def normalize(meta: dict[str, Any]) -> dict[str, Any]:
        imdb_id = meta.get("imdb_id") or meta.get("id")
        content_type = normalize_type(meta.get("type"))
        seasons, episodes = _series_counts(meta.get("videos"))
        crew = [
            member
            for member in meta.get("credits_crew") or []
            if isinstance(member, dict) and member.get("job") == "Director"
        ]

        ratings: dict[str, Any] = {}
        try:
            if meta.get("imdbRating"):
                ratings["imdb"] = {"score": float(meta["imdbRating"]), "votes": None}
        except (TypeError, ValueError):
            logger.debug("Ignoring malformed Cinemeta rating %r", meta.get("imdbRating"))

        awards = meta.get("awards")
        status = meta.get("status")
        data: dict[str, Any] = {
            "imdb": imdb_id,
            "title": meta.get("name"),
            "type": content_type,
            "year": parse_year(meta.get("releaseInfo") or meta.get("year")),
            "status": "Ongoing" if status == "Continuing" else status,
            "runtime": format_runtime(
                parse_runtime(meta.get("runtime")), content_type, episodes or 1
            ),
            "genres": list(meta.get("genres") or meta.get("genre") or []),
            "ratings": ratings,
            "plot": meta.get("description"),
            "awards": "Oscar Winner" if awards and "oscar" in str(awards).lower() else None,
            "stars": _people(meta.get("credits_cast"), MAX_STARS),
            "directors": _people(crew, MAX_DIRECTORS),
            "tmdb": str(meta["moviedb_id"]) if meta.get("moviedb_id") else None,
            "tvdb": str(meta["tvdb_id"]) if meta.get("tvdb_id") else None,
            "meta_source": "cinemeta",
        }
        if seasons > 0:
            data["seasons"] = seasons
        if episodes > 0:
            data["episodes"] = episodes
        if imdb_id:
            data["poster"] = f"{METAHUB_BASE_URL}/poster/small/{imdb_id}/img"
            data["background"] = f"{METAHUB_BASE_URL}/background/large/{imdb_id}/img"
            data["logo"] = f"{METAHUB_BASE_URL}/logo/large/{imdb_id}/img"
        return data
