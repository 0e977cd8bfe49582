"""End-to-end handling of a title sighted by an extractor."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, Awaitable, Mapping

from ..errors import InvalidArgumentError
from ..merge import META_SOURCE_COMPLETE
from ..models import ID_NAMESPACES, ExtractedTitle, IdMapping, TitleRecord
from .enrichment import EnrichmentOrchestrator
from .id_conversion import IdConversionService
from .id_lookup import CrossReferenceLookup
from .metadata_fetcher import MetadataFetcher
from .storage import TitleStore

logger = logging.getLogger(__name__)


class TitlePipeline:
    """Find or create a record, complete its identifiers, then enrich it."""

    def __init__(
        self,
        store: TitleStore,
        lookup: CrossReferenceLookup,
        id_conversion: IdConversionService,
        fetcher: MetadataFetcher,
        orchestrator: EnrichmentOrchestrator | None = None,
        *,
        retry_delay_seconds: float = 3.0,
    ) -> None:
        self._store = store
        self._lookup = lookup
        self._conversion = id_conversion
        self._fetcher = fetcher
        self._orchestrator = orchestrator
        self._retry_delay = retry_delay_seconds
        self._background: set[asyncio.Task[None]] = set()

    def _spawn(self, awaitable: Awaitable[Any], description: str) -> None:
        async def _runner() -> None:
            try:
                await awaitable
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("%s failed: %s", description, exc)

        task = asyncio.create_task(_runner())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def find_or_create(self, extracted: ExtractedTitle) -> TitleRecord:
        partial = extracted.to_partial()
        existing = await self._lookup.find_existing_title(
            extracted.candidate_ids(),
            extracted.title,
            extracted.type,
            year=extracted.year,
            original_title=extracted.original_title,
            priority=extracted.priority,
        )
        if existing is not None:
            return await self._store.merge_processed_data(existing, partial)
        return await self._store.save_title(partial)

    async def enrich_with_cross_reference_ids(
        self, record: TitleRecord, *, priority: bool = False
    ) -> TitleRecord:
        enriched = await self._conversion.enrich_with_all_ids(record.model_dump(), priority=priority)
        discovered = {
            namespace: enriched[namespace]
            for namespace in ID_NAMESPACES
            if enriched.get(namespace) and not getattr(record, namespace)
        }
        if not discovered:
            return record
        return await self._store.update_entry_with_conversion_results(
            record, IdMapping(**discovered)
        )

    async def resolve_imdb_id(self, record: TitleRecord, *, priority: bool = False) -> TitleRecord:
        if record.imdb:
            return record
        return await self._lookup.try_resolve_imdb_id(record, priority=priority)

    async def _retry_incomplete(self, imdb_id: str) -> None:
        await asyncio.sleep(self._retry_delay)
        await self._store.process_background_updates_for_title(imdb_id)

    async def enrich_from_apis(self, record: TitleRecord, *, priority: bool = False) -> TitleRecord:
        if not record.imdb:
            return record

        # MAL data may be missing even from complete records.
        if priority and self._orchestrator is not None:
            self._spawn(
                self._orchestrator.trigger_lazy_jikan(record, priority=True),
                f"Lazy Jikan enrichment of {record.imdb}",
            )

        if record.meta_source == META_SOURCE_COMPLETE:
            return record

        enriched = await self._fetcher.enrich_title_progressively(record, priority=priority)
        if not enriched:
            return record
        saved = await self._store.save_title(enriched, source="enrichment")
        logger.info("Enriched %s (%s)", saved.title, saved.meta_source)

        if saved.meta_source == "imdbapi":
            self._spawn(self._retry_incomplete(saved.imdb), f"Enrichment retry of {saved.imdb}")
        return saved

    async def process(self, extracted: ExtractedTitle | Mapping[str, Any]) -> TitleRecord:
        """Run the full flow for one sighted title and return the stored record."""

        if not isinstance(extracted, ExtractedTitle):
            extracted = ExtractedTitle.model_validate(extracted)
        if not extracted.candidate_ids() and not extracted.title:
            raise InvalidArgumentError("An identifier or a title is required")

        priority = extracted.priority
        record = await self.find_or_create(extracted)
        record = await self.enrich_with_cross_reference_ids(record, priority=priority)
        record = await self.resolve_imdb_id(record, priority=priority)
        return await self.enrich_from_apis(record, priority=priority)

    @property
    def pending_tasks(self) -> int:
        return len(self._background)

    async def drain(self) -> None:
        """Wait for spawned background work, including store refreshes."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        await self._store.drain()

    async def close(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._background.clear()
