"""Orchestrate private and lazy metadata enrichment."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable, Mapping

from ..anime import detect_anime
from ..cache import SingleFlight
from ..errors import InvalidArgumentError, ProviderError
from ..models import TitleRecord
from ..providers.jikan import JikanClient
from ..providers.mdblist import MDBListClient
from ..providers.tmdb import TMDBClient
from .id_conversion import IdConversionService
from .rate_limits import RateLimitRegistry
from .storage import TitleStore

logger = logging.getLogger(__name__)

PRIVATE_PROVIDERS: tuple[str, ...] = ("tmdb", "mdblist")


def _discard_late_result(task: asyncio.Future[Any]) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug("Abandoned provider call failed late: %s", task.exception())


class EnrichmentOrchestrator:
    """Fan out to private providers and schedule lazy backfills.

    Every provider call runs under its own timeout; a failure or timeout
    only removes that provider's contribution.
    """

    def __init__(
        self,
        store: TitleStore,
        *,
        registry: RateLimitRegistry,
        id_conversion: IdConversionService | None = None,
        tmdb: TMDBClient | None = None,
        mdblist: MDBListClient | None = None,
        jikan: JikanClient | None = None,
        tmdb_timeout: float = 8.0,
        mdblist_timeout: float = 5.0,
        private_ttl_seconds: float = 7 * 86_400,
    ) -> None:
        self._store = store
        self._registry = registry
        self._conversion = id_conversion
        self._tmdb = tmdb
        self._mdblist = mdblist
        self._jikan = jikan
        self._tmdb_timeout = tmdb_timeout
        self._mdblist_timeout = mdblist_timeout
        self._private_ttl = timedelta(seconds=private_ttl_seconds)
        self._jikan_pending: SingleFlight[TitleRecord | None] = SingleFlight()
        self._private_pending: SingleFlight[TitleRecord | None] = SingleFlight()

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------
    def _client(self, provider: str) -> Any:
        return {"tmdb": self._tmdb, "mdblist": self._mdblist}.get(provider)

    def is_provider_available(self, provider: str) -> bool:
        return self._client(provider) is not None and not self._registry.is_rate_limited(provider)

    def has_private_api_available(self) -> bool:
        return any(self.is_provider_available(provider) for provider in PRIVATE_PROVIDERS)

    def get_api_status(self) -> dict[str, dict[str, bool]]:
        status: dict[str, dict[str, bool]] = {}
        for provider in PRIVATE_PROVIDERS:
            status[provider] = {
                "has_key": self._client(provider) is not None or self._registry.has_key(provider),
                "is_available": self.is_provider_available(provider),
                "is_rate_limited": self._registry.is_rate_limited(provider),
            }
        return status

    def needs_private_enrichment(
        self, record: TitleRecord | None, *, now: datetime | None = None
    ) -> bool:
        if record is None or not record.imdb:
            return False
        if record.last_enriched_private is None:
            return True
        current = now or datetime.utcnow()
        return current - record.last_enriched_private > self._private_ttl

    # ------------------------------------------------------------------
    # Private providers
    # ------------------------------------------------------------------
    async def _call_with_timeout(
        self,
        provider: str,
        factory: Callable[[], Awaitable[dict[str, Any] | None]],
        timeout: float,
        imdb_id: str,
    ) -> dict[str, Any] | None:
        task = asyncio.ensure_future(factory())
        try:
            # The shielded call keeps running after a timeout; its result is dropped.
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.warning("%s timed out after %.1fs for %s", provider, timeout, imdb_id)
            task.add_done_callback(_discard_late_result)
            return None
        except ProviderError as exc:
            logger.warning("%s enrichment failed for %s: %s", provider, imdb_id, exc)
            return None
        except Exception:
            logger.exception("%s returned an unusable response for %s", provider, imdb_id)
            return None

    @staticmethod
    def merge_results(
        *,
        tmdb: Mapping[str, Any] | None,
        mdblist: Mapping[str, Any] | None,
        content_type: str | None,
    ) -> dict[str, Any]:
        """Combine provider payloads by field priority, keeping only real values.

        TMDB wins for text, artwork, credits, network and studio; MDBList
        supplies ratings, certification and trailer.
        """

        tmdb = tmdb or {}
        mdblist = mdblist or {}
        result: dict[str, Any] = {}
        if content_type:
            result["type"] = content_type
        if tmdb:
            result["meta_source_private"] = "tmdb"
        elif mdblist:
            result["meta_source_private"] = "mdblist"

        for key in ("title", "original_title", "plot", "poster", "background", "logo"):
            value = tmdb.get(key) or mdblist.get(key)
            if value:
                result[key] = value
        for key in ("tagline", "stars", "directors", "studio", "alt_titles"):
            if tmdb.get(key):
                result[key] = tmdb[key]
        if content_type == "series" and tmdb.get("network"):
            result["network"] = tmdb["network"]
        for key in ("content_rating", "trailer", "ratings"):
            if mdblist.get(key):
                result[key] = mdblist[key]
        for key in ("tmdb", "tvdb"):
            value = mdblist.get(key) or tmdb.get(key)
            if value:
                result[key] = value
        return result

    async def get_enriched_metadata(
        self, imdb_id: str, content_type: str | None, *, priority: bool = False
    ) -> dict[str, Any]:
        """Query every available private provider in parallel and merge the results."""

        if not imdb_id:
            raise InvalidArgumentError("IMDb id is required for enrichment")
        content_type = content_type or "movie"

        calls: dict[str, Awaitable[dict[str, Any] | None]] = {}
        if self.is_provider_available("tmdb"):
            calls["tmdb"] = self._call_with_timeout(
                "tmdb",
                lambda: self._tmdb.fetch_by_imdb_id(imdb_id, content_type, priority=priority),
                self._tmdb_timeout,
                imdb_id,
            )
        if self.is_provider_available("mdblist"):
            calls["mdblist"] = self._call_with_timeout(
                "mdblist",
                lambda: self._mdblist.fetch_by_imdb_id(imdb_id, content_type, priority=priority),
                self._mdblist_timeout,
                imdb_id,
            )
        if not calls:
            return {}

        gathered = await asyncio.gather(*calls.values(), return_exceptions=True)
        results: dict[str, dict[str, Any] | None] = {}
        for name, value in zip(calls, gathered):
            if isinstance(value, BaseException):
                logger.warning("%s enrichment failed for %s: %s", name, imdb_id, value)
                value = None
            results[name] = value
        contributed = [name for name, value in results.items() if value]
        logger.info(
            "Private enrichment for %s: %s", imdb_id, ", ".join(contributed) or "no sources"
        )
        return self.merge_results(
            tmdb=results.get("tmdb"),
            mdblist=results.get("mdblist"),
            content_type=content_type,
        )

    # ------------------------------------------------------------------
    # Lazy enrichment
    # ------------------------------------------------------------------
    async def trigger_lazy_private_enrichment(
        self, record: TitleRecord | None, *, priority: bool = False
    ) -> TitleRecord | None:
        """Enrich ``record`` from private providers unless it was enriched recently."""

        if record is None or not record.imdb:
            return None
        if not self.needs_private_enrichment(record):
            return None
        if not self.has_private_api_available():
            return None
        return await self._private_pending.run(
            record.imdb, lambda: self._enrich_private(record, priority)
        )

    async def _enrich_private(self, record: TitleRecord, priority: bool) -> TitleRecord | None:
        data = await self.get_enriched_metadata(record.imdb, record.type, priority=priority)
        if not data.get("meta_source_private"):
            return None
        data.update(imdb=record.imdb, last_enriched_private=datetime.utcnow())
        if record.type:
            data["type"] = record.type
        updated = await self._store.save_title(data, source="enrichment")
        logger.info("Private enrichment stored for %s", record.imdb)
        return updated

    async def trigger_lazy_jikan(
        self, record: TitleRecord | None, *, priority: bool = False
    ) -> TitleRecord | None:
        """Backfill MyAnimeList data for an anime record lacking a MAL score."""

        if record is None or self._jikan is None:
            return None
        mal_rating = record.ratings.get("mal")
        if mal_rating is not None and mal_rating.score is not None:
            return None

        mal_id = record.mal[0] if record.mal else None
        if not mal_id:
            mal_id = await self._discover_mal_id(record, priority=priority)
        if not mal_id:
            return None
        return await self._jikan_pending.run(
            mal_id, lambda: self._fetch_jikan(record, mal_id, priority)
        )

    async def _discover_mal_id(self, record: TitleRecord, *, priority: bool) -> str | None:
        if not record.imdb or self._conversion is None:
            return None
        is_anime, _reason = detect_anime(record.model_dump())
        if not is_anime:
            return None
        mapping = await self._conversion.convert_from_imdb(record.imdb, priority=priority)
        if mapping is None or not mapping.mal:
            logger.debug("Reverse lookup found no MAL id for %s", record.imdb)
            return None
        ids = mapping.as_partial()
        ids.pop("imdb", None)
        await self._store.enrich_title_ids(record.imdb, ids)
        return mapping.mal[0]

    async def _fetch_jikan(
        self, record: TitleRecord, mal_id: str, priority: bool
    ) -> TitleRecord | None:
        try:
            data = await self._jikan.fetch(mal_id, priority=priority)
        except ProviderError as exc:
            logger.warning("Jikan lookup failed for MAL %s: %s", mal_id, exc)
            return None
        except Exception:
            logger.exception("Jikan returned an unusable response for MAL %s", mal_id)
            return None
        if not data:
            return None
        # Runtime and status from the public providers take precedence.
        for key in ("runtime", "status"):
            if getattr(record, key):
                data.pop(key, None)
        if record.imdb:
            data["imdb"] = record.imdb
        if record.type:
            data["type"] = record.type
        data["mal"] = [*record.mal, *data.get("mal", [])] or [mal_id]
        return await self._store.save_title(data, replaces=record.id, source="enrichment")

    # ------------------------------------------------------------------
    # Batch enrichment
    # ------------------------------------------------------------------
    async def _mdblist_batch(self, imdb_ids: list[str], content_type: str) -> dict[str, dict[str, Any]]:
        if not imdb_ids:
            return {}
        try:
            return await self._mdblist.fetch_batch(imdb_ids, content_type)
        except ProviderError as exc:
            logger.warning("MDBList batch for %d %ss failed: %s", len(imdb_ids), content_type, exc)
            return {}
        except Exception:
            logger.exception(
                "MDBList batch for %d %ss returned an unusable response", len(imdb_ids), content_type
            )
            return {}

    async def enrich_batch(self, items: Iterable[TitleRecord | Mapping[str, Any]]) -> int:
        """Enrich many titles at once and return how many were stored.

        MDBList is queried with one batch call per content type, TMDB once per
        title in parallel.
        """

        if not self.has_private_api_available():
            logger.debug("Batch enrichment skipped: no private provider available")
            return 0

        targets: dict[str, str] = {}
        for item in items:
            data = item.model_dump() if isinstance(item, TitleRecord) else dict(item)
            if data.get("imdb"):
                targets[data["imdb"]] = data.get("type") or "movie"
        if not targets:
            return 0

        mdblist_data: dict[str, dict[str, Any]] = {}
        if self.is_provider_available("mdblist"):
            movies, series = await asyncio.gather(
                self._mdblist_batch([i for i, t in targets.items() if t == "movie"], "movie"),
                self._mdblist_batch([i for i, t in targets.items() if t == "series"], "series"),
            )
            mdblist_data = {**movies, **series}

        async def _enrich_one(imdb_id: str, content_type: str) -> bool:
            tmdb_data = None
            if self.is_provider_available("tmdb"):
                tmdb_data = await self._call_with_timeout(
                    "tmdb",
                    lambda: self._tmdb.fetch_by_imdb_id(imdb_id, content_type),
                    self._tmdb_timeout,
                    imdb_id,
                )
            merged = self.merge_results(
                tmdb=tmdb_data, mdblist=mdblist_data.get(imdb_id), content_type=content_type
            )
            if not merged.get("meta_source_private"):
                return False
            merged.update(imdb=imdb_id, last_enriched_private=datetime.utcnow())
            await self._store.save_title(merged, source="enrichment")
            return True

        stored = await asyncio.gather(
            *(_enrich_one(imdb_id, content_type) for imdb_id, content_type in targets.items()),
            return_exceptions=True,
        )
        for imdb_id, outcome in zip(targets, stored):
            if isinstance(outcome, BaseException):
                logger.warning("Batch enrichment failed for %s: %s", imdb_id, outcome)
        count = sum(1 for ok in stored if ok is True)
        logger.info("Batch enrichment stored %d/%d titles", count, len(targets))
        return count
