"""Client for the anime relations mapping API (arm.haglund.dev)."""

from __future__ import annotations

import logging
from typing import Any

from ..models import IdMapping
from ..utils import coerce_id
from .http import JsonProvider

logger = logging.getLogger(__name__)

INCLUDE_PARAMS = "imdb,kitsu,anilist,myanimelist,thetvdb,themoviedb"

# Namespaces used by this service mapped to the API's source names.
SOURCE_MAP = {"mal": "myanimelist", "anilist": "anilist", "kitsu": "kitsu"}

# API response keys mapped to record fields.
RESPONSE_KEYS = {
    "imdb": "imdb",
    "kitsu": "kitsu",
    "anilist": "anilist",
    "myanimelist": "mal",
    "thetvdb": "tvdb",
    "themoviedb": "tmdb",
}


def _unique(values: list[Any]) -> list[str]:
    result: list[str] = []
    for value in values:
        text = coerce_id(value)
        if text and text not in result:
            result.append(text)
    return result


class MappingClient(JsonProvider):
    """Convert identifiers between anime trackers, IMDb, TMDB and TVDB."""

    name = "mapping"

    async def ids(self, identifier: str, source: str, *, priority: bool = False) -> IdMapping | None:
        """Return every known identifier for ``source:identifier``.

        ``None`` means the API answered without a payload.
        """

        params = {
            "source": SOURCE_MAP.get(source, source),
            "id": identifier,
            "include": INCLUDE_PARAMS,
        }
        payload = await self._get_json("/ids", params=params, priority=priority)
        if not isinstance(payload, dict):
            logger.warning("No mapping payload for %s:%s", source, identifier)
            return None
        return self.normalize(payload)

    async def reverse(self, imdb_id: str, *, priority: bool = False) -> IdMapping | None:
        """Return identifiers of every anime entry mapped onto an IMDb id."""

        params = {"id": imdb_id, "include": INCLUDE_PARAMS}
        payload = await self._get_json("/imdb", params=params, priority=priority)
        if not isinstance(payload, list) or not payload:
            return None
        entries = [entry for entry in payload if isinstance(entry, dict)]
        if not entries:
            return None
        first = entries[0]
        mapping = IdMapping(
            imdb=imdb_id,
            tmdb=coerce_id(first.get("themoviedb")),
            tvdb=coerce_id(first.get("thetvdb")),
            mal=_unique([entry.get("myanimelist") for entry in entries]),
            anilist=_unique([entry.get("anilist") for entry in entries]),
            kitsu=_unique([entry.get("kitsu") for entry in entries]),
        )
        logger.debug(
            "Reverse lookup for %s: mal=%d anilist=%d kitsu=%d",
            imdb_id,
            len(mapping.mal),
            len(mapping.anilist),
            len(mapping.kitsu),
        )
        return mapping

    @staticmethod
    def normalize(payload: dict[str, Any]) -> IdMapping:
        values: dict[str, Any] = {}
        for api_key, field_name in RESPONSE_KEYS.items():
            text = coerce_id(payload.get(api_key))
            if not text:
                continue
            values[field_name] = [text] if field_name in {"mal", "anilist", "kitsu"} else text
        return IdMapping(**values)
