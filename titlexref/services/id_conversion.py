"""Identifier resolver with a TTL/LRU cache and request coalescing."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping

from ..cache import MISSING, SingleFlight, TTLCache
from ..errors import InvalidArgumentError, NotFoundError, ProviderError
from ..models import ID_NAMESPACES, MULTI_VALUE_NAMESPACES, IdMapping
from ..providers.mapping import MappingClient, SOURCE_MAP
from ..utils import coerce_id_list

logger = logging.getLogger(__name__)

ANIME_SOURCES: frozenset[str] = frozenset(
    {
        "myanimelist",
        "anilist",
        "anidb",
        "anime-planet",
        "anisearch",
        "kitsu",
        "livechart",
        "notify-moe",
    }
)
ANIME_ID_PRIORITY: tuple[str, ...] = ("mal", "anilist", "kitsu")


class IdConversionService:
    """Convert identifiers between namespaces through the mapping provider.

    Results are cached for ``ttl_seconds`` in an LRU bounded to
    ``max_entries``; concurrent requests for the same key share one call.
    Only provider-confirmed absence is cached as ``None``.
    """

    def __init__(
        self,
        mapping_client: MappingClient,
        *,
        max_entries: int = 10_000,
        ttl_seconds: float = 86_400,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = mapping_client
        self._cache = TTLCache(max_entries, ttl_seconds, clock=clock)
        self._pending: SingleFlight[IdMapping | None] = SingleFlight()

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    async def convert_to_imdb(
        self, identifier: str, source: str, *, priority: bool = False
    ) -> IdMapping | None:
        """Return identifiers in every namespace for ``source:identifier``."""

        if not isinstance(identifier, str) or not identifier.strip():
            raise InvalidArgumentError("Invalid ID: must be a non-empty string")
        if not isinstance(source, str) or not source.strip():
            raise InvalidArgumentError("Invalid source: must be a non-empty string")
        identifier = identifier.strip()
        source = source.strip()

        cache_key = (source, identifier)
        cached = self._cache.get(cache_key)
        if cached is not MISSING:
            return cached

        return await self._pending.run(
            cache_key,
            lambda: self._execute_conversion(identifier, source, cache_key, priority),
        )

    async def _execute_conversion(
        self, identifier: str, source: str, cache_key: tuple[str, str], priority: bool
    ) -> IdMapping | None:
        try:
            result = await self._client.ids(identifier, source, priority=priority)
        except NotFoundError:
            logger.debug("No mapping exists for %s:%s", source, identifier)
            self._cache.set(cache_key, None)
            return None
        except ProviderError as exc:
            logger.warning("Conversion failed for %s:%s: %s", source, identifier, exc)
            return None

        if result is None:
            return None
        self._cache.set(cache_key, result)
        return result

    async def convert_from_imdb(
        self, imdb_id: str, *, priority: bool = False
    ) -> IdMapping | None:
        """Return anime tracker identifiers mapped onto an IMDb id."""

        if not isinstance(imdb_id, str) or not imdb_id.strip():
            raise InvalidArgumentError("Invalid IMDb id: must be a non-empty string")
        imdb_id = imdb_id.strip()
        if not imdb_id.startswith("tt"):
            return None

        cache_key = ("reverse", imdb_id)
        cached = self._cache.get(cache_key)
        if cached is not MISSING:
            return cached

        return await self._pending.run(
            cache_key,
            lambda: self._execute_reverse_conversion(imdb_id, cache_key, priority),
        )

    async def _execute_reverse_conversion(
        self, imdb_id: str, cache_key: tuple[str, str], priority: bool
    ) -> IdMapping | None:
        try:
            result = await self._client.reverse(imdb_id, priority=priority)
        except NotFoundError:
            self._cache.set(cache_key, None)
            return None
        except ProviderError as exc:
            logger.warning("Reverse lookup failed for %s: %s", imdb_id, exc)
            return None

        # An empty list is the provider saying nothing maps onto this id.
        self._cache.set(cache_key, result)
        return result

    @staticmethod
    def is_anime_source(source: str | None) -> bool:
        if not source or not isinstance(source, str):
            return False
        return source in ANIME_SOURCES or SOURCE_MAP.get(source) in ANIME_SOURCES

    @staticmethod
    def find_primary_anime_id(record: Mapping[str, Any]) -> tuple[str, str] | None:
        """Return ``(namespace, id)`` of the preferred anime identifier."""

        for namespace in ANIME_ID_PRIORITY:
            values = coerce_id_list(record.get(namespace))
            if values:
                return namespace, values[0]
        return None

    async def enrich_with_all_ids(
        self, record: Mapping[str, Any], *, priority: bool = False
    ) -> dict[str, Any]:
        """Fill missing identifiers of ``record`` from its primary anime id."""

        merged = dict(record)
        primary = self.find_primary_anime_id(record)
        if primary is None:
            return merged
        if all(record.get(namespace) for namespace in ("imdb", *ANIME_ID_PRIORITY)):
            return merged

        namespace, identifier = primary
        mapping = await self.convert_to_imdb(identifier, namespace, priority=priority)
        if mapping is None:
            return merged
        return self.merge_ids(merged, mapping)

    @staticmethod
    def merge_ids(record: Mapping[str, Any], mapping: IdMapping) -> dict[str, Any]:
        """Copy identifiers from ``mapping`` into namespaces ``record`` lacks."""

        merged = dict(record)
        for namespace in ID_NAMESPACES:
            value = getattr(mapping, namespace)
            if not value or merged.get(namespace):
                continue
            merged[namespace] = list(value) if namespace in MULTI_VALUE_NAMESPACES else value
        return merged

    def get_cache_stats(self) -> dict[str, Any]:
        return self._cache.stats().as_dict()

    def cleanup_expired(self) -> int:
        removed = self._cache.cleanup_expired()
        if removed:
            logger.debug("Removed %d expired conversion cache entries", removed)
        return removed

    def clear_cache(self) -> None:
        self._cache.clear()
