"""Progressive enrichment from the public metadata providers."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping

from ..errors import ProviderError
from ..merge import (
    MAX_DIRECTORS,
    MAX_STARS,
    META_SOURCE_COMPLETE,
    merge_credits,
    merge_ratings,
    smart_merge,
)
from ..models import TitleRecord
from ..providers.cinemeta import CinemetaClient
from ..providers.imdbapi import ImdbApiClient

if TYPE_CHECKING:
    from .enrichment import EnrichmentOrchestrator

logger = logging.getLogger(__name__)


def _overlay(data: dict[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
    merged = smart_merge(data, incoming)
    if "ratings" in incoming or data.get("ratings"):
        merged["ratings"] = merge_ratings(data.get("ratings"), incoming.get("ratings"))
    return merged


class MetadataFetcher:
    """Walk a record through ``dom`` -> ``cinemeta``/``imdbapi`` -> ``complete``.

    Cinemeta and the IMDb API each fill what the other lacks; credits are
    combined photo-first. Once a public source contributed, the private
    providers are queried through the enrichment orchestrator when any of
    them is usable.
    """

    def __init__(
        self,
        cinemeta: CinemetaClient | None,
        imdbapi: ImdbApiClient | None,
        *,
        orchestrator: "EnrichmentOrchestrator | None" = None,
    ) -> None:
        self._cinemeta = cinemeta
        self._imdbapi = imdbapi
        self._orchestrator = orchestrator

    async def fetch_cinemeta(
        self, imdb_id: str, content_type: str, *, priority: bool = False
    ) -> dict[str, Any] | None:
        if self._cinemeta is None:
            return None
        try:
            return await self._cinemeta.fetch(imdb_id, content_type, priority=priority)
        except ProviderError as exc:
            logger.warning("Cinemeta lookup failed for %s: %s", imdb_id, exc)
            return None

    async def fetch_imdb(
        self, imdb_id: str, *, priority: bool = False, episodes: int = 1
    ) -> dict[str, Any] | None:
        if self._imdbapi is None:
            return None
        try:
            return await self._imdbapi.fetch(imdb_id, priority=priority, episodes=episodes)
        except ProviderError as exc:
            logger.warning("imdbapi lookup failed for %s: %s", imdb_id, exc)
            return None

    async def enrich_title_progressively(
        self, record: TitleRecord | Mapping[str, Any], *, priority: bool = False
    ) -> dict[str, Any] | None:
        """Return an enriched working copy of ``record`` ready to be saved.

        Nothing is written here; the caller hands the result to the store.
        ``None`` means the record has no IMDb id to enrich by.
        """

        data = record.to_partial() if isinstance(record, TitleRecord) else dict(record)
        imdb_id = data.get("imdb")
        if not imdb_id:
            return None
        content_type = data.get("type")
        meta_source = data.get("meta_source") or "dom"
        has_cinemeta = meta_source in {"cinemeta", META_SOURCE_COMPLETE}
        has_imdb = meta_source in {"imdbapi", META_SOURCE_COMPLETE}

        # Without a type Cinemeta cannot be queried; the IMDb API supplies it.
        if not content_type and not has_cinemeta:
            imdb_data = await self.fetch_imdb(
                imdb_id, priority=priority, episodes=data.get("episodes") or 1
            )
            if imdb_data:
                content_type = imdb_data.get("type")
                data.update(_overlay(data, imdb_data), meta_source="imdbapi")
                has_imdb = True

        if not has_cinemeta and content_type:
            cinemeta = await self.fetch_cinemeta(imdb_id, content_type, priority=priority)
            if cinemeta:
                has_cinemeta = True
                merged = _overlay(data, cinemeta)
                if has_imdb:
                    merged.update(
                        plot=cinemeta.get("plot") or data.get("plot"),
                        stars=merge_credits(cinemeta.get("stars"), data.get("stars"), MAX_STARS),
                        directors=merge_credits(
                            cinemeta.get("directors"), data.get("directors"), MAX_DIRECTORS
                        ),
                        meta_source=META_SOURCE_COMPLETE,
                    )
                else:
                    merged["meta_source"] = "cinemeta"
                data.update(merged)

        if not has_imdb and (content_type or has_cinemeta):
            imdb_data = await self.fetch_imdb(
                imdb_id, priority=priority, episodes=data.get("episodes") or 1
            )
            if imdb_data:
                merged = _overlay(data, imdb_data)
                merged.update(
                    plot=data.get("plot") or imdb_data.get("plot"),
                    stars=merge_credits(data.get("stars"), imdb_data.get("stars"), MAX_STARS),
                    directors=merge_credits(
                        data.get("directors"), imdb_data.get("directors"), MAX_DIRECTORS
                    ),
                    meta_source=META_SOURCE_COMPLETE if has_cinemeta else "imdbapi",
                )
                data.update(merged)
                has_imdb = True

        orchestrator = self._orchestrator
        if (has_cinemeta or has_imdb) and orchestrator and orchestrator.has_private_api_available():
            private = await orchestrator.get_enriched_metadata(
                imdb_id, content_type or data.get("type"), priority=priority
            )
            if private.get("meta_source_private"):
                data.update(_overlay(data, private))
                data["last_enriched_private"] = datetime.utcnow()

        logger.debug("Progressive enrichment of %s reached %s", imdb_id, data.get("meta_source"))
        return data

    async def refresh(self, record: TitleRecord) -> dict[str, Any] | None:
        """Background refresher hook for :class:`TitleStore`."""

        return await self.enrich_title_progressively(record)
