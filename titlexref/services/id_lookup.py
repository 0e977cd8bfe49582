"""Locate stored titles from whatever identifiers a page exposes."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping

from ..errors import InvalidArgumentError
from ..models import ID_NAMESPACES, MULTI_VALUE_NAMESPACES, IdMapping, TitleRecord
from ..providers.title_search import TitleSearchClient
from ..utils import coerce_id_list
from .id_conversion import ANIME_ID_PRIORITY, IdConversionService
from .storage import TitleStore

logger = logging.getLogger(__name__)


def _missing_ids(record: TitleRecord, mapping: IdMapping) -> dict[str, Any]:
    """Return the identifiers in ``mapping`` that ``record`` does not hold yet."""

    missing: dict[str, Any] = {}
    for namespace, value in mapping.as_partial().items():
        current = getattr(record, namespace)
        if namespace in MULTI_VALUE_NAMESPACES:
            extra = [item for item in value if item not in current]
            if extra:
                missing[namespace] = extra
        elif not current:
            missing[namespace] = value
    return missing


class CrossReferenceLookup:
    """Find existing records, escalating from local lookups to providers.

    Local identifier lookups run first, then the ``(type, title)`` key, then
    identifier conversion for anime-sourced ids and finally a title search.
    """

    def __init__(
        self,
        store: TitleStore,
        id_conversion: IdConversionService,
        title_search: TitleSearchClient | None = None,
    ) -> None:
        self._store = store
        self._conversion = id_conversion
        self._title_search = title_search

    async def _find_locally(self, candidates: Mapping[str, Any]) -> TitleRecord | None:
        lookups: list[tuple[str, str]] = []
        for namespace in ID_NAMESPACES:
            for value in coerce_id_list(candidates.get(namespace)):
                lookups.append((namespace, value))
        if not lookups:
            return None
        results = await asyncio.gather(
            *(self._store.find_by_namespace(namespace, value) for namespace, value in lookups)
        )
        return next((record for record in results if record is not None), None)

    async def _attach_mapping(
        self, record: TitleRecord, mapping: IdMapping
    ) -> TitleRecord:
        missing = _missing_ids(record, mapping)
        if not missing:
            return record
        logger.debug("Adding converted identifiers %s to title %s", sorted(missing), record.id)
        return await self._store.update_entry_with_conversion_results(
            record, IdMapping(**missing)
        )

    async def _find_by_mapping(self, mapping: IdMapping) -> TitleRecord | None:
        record = await self._find_locally(mapping.as_partial())
        if record is None:
            return None
        return await self._attach_mapping(record, mapping)

    async def _convert_candidates(
        self, candidates: Mapping[str, Any], *, priority: bool
    ) -> TitleRecord | None:
        sources = [
            (namespace, value)
            for namespace, raw in candidates.items()
            if IdConversionService.is_anime_source(namespace) or namespace in ANIME_ID_PRIORITY
            for value in coerce_id_list(raw)
        ]
        for namespace, value in sources:
            mapping = await self._conversion.convert_to_imdb(value, namespace, priority=priority)
            if mapping is None:
                continue
            record = await self._find_by_mapping(mapping)
            if record is not None:
                return record
        return None

    async def _search_title(
        self,
        title: str,
        year: int | None,
        *,
        original_title: str | None,
        priority: bool,
    ) -> str | None:
        if self._title_search is None or not title:
            return None
        return await self._title_search.search_imdb_id(
            title, year, priority=priority, alternate_title=original_title
        )

    async def find_existing_title(
        self,
        candidate_ids: Mapping[str, Any],
        title: str | None = None,
        content_type: str | None = None,
        *,
        year: int | None = None,
        original_title: str | None = None,
        priority: bool = False,
    ) -> TitleRecord | None:
        """Return the stored record matching any candidate, or ``None``."""

        candidates = {key: value for key, value in candidate_ids.items() if value}

        record = await self._find_locally(candidates)
        if record is not None:
            return record

        if title and content_type:
            record = await self._store.find_by_type_title(content_type, title)
            if record is not None:
                return record

        record = await self._convert_candidates(candidates, priority=priority)
        if record is not None:
            return record

        if title:
            imdb_id = await self._search_title(
                title, year, original_title=original_title, priority=priority
            )
            if imdb_id:
                return await self._store.find_by_namespace("imdb", imdb_id)
        return None

    async def find_by_any_id(
        self,
        identifier: str,
        namespace: str,
        context: Mapping[str, Any] | None = None,
        *,
        priority: bool = False,
    ) -> TitleRecord | None:
        """Look up one identifier, converting anime-sourced ids when needed.

        ``context`` may carry ``title``, ``type``, ``year`` and
        ``original_title`` for the title-search fallback.
        """

        if not isinstance(identifier, str) or not identifier.strip():
            raise InvalidArgumentError("Invalid ID: must be a non-empty string")
        if not isinstance(namespace, str) or not namespace.strip():
            raise InvalidArgumentError("Invalid namespace: must be a non-empty string")
        identifier = identifier.strip()
        namespace = namespace.strip()
        context = context or {}

        if namespace == "imdb":
            record = await self._store.get_title(identifier)
            if record is not None:
                self._store.schedule_background_update(record)
                return record
        elif namespace in ID_NAMESPACES:
            record = await self._store.find_by_namespace(namespace, identifier)
            if record is not None:
                return record

        if IdConversionService.is_anime_source(namespace) or namespace in ANIME_ID_PRIORITY:
            record = await self._convert_candidates({namespace: identifier}, priority=priority)
            if record is not None:
                return record

        title = context.get("title")
        if title:
            imdb_id = await self._search_title(
                title,
                context.get("year"),
                original_title=context.get("original_title"),
                priority=priority,
            )
            if imdb_id:
                return await self._store.find_by_namespace("imdb", imdb_id)
        return None

    async def try_resolve_imdb_id(
        self, record: TitleRecord, *, priority: bool = False
    ) -> TitleRecord:
        """Give a record lacking an IMDb id one, keeping ids found on the way."""

        if record.imdb:
            return record

        primary = IdConversionService.find_primary_anime_id(record.model_dump())
        if primary is not None:
            namespace, identifier = primary
            mapping = await self._conversion.convert_to_imdb(
                identifier, namespace, priority=priority
            )
            if mapping is not None and mapping.has_any():
                record = await self._store.update_entry_with_conversion_results(record, mapping)
                if record.imdb:
                    return record

        if not record.title:
            return record
        imdb_id = await self._search_title(
            record.title,
            record.year,
            original_title=record.original_title,
            priority=priority,
        )
        if not imdb_id:
            logger.debug("No IMDb id found for %r", record.title)
            return record
        return await self._store.update_entry_with_conversion_results(
            record, IdMapping(imdb=imdb_id)
        )
