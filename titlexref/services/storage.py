"""Persistent, merge-safe title store."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy import delete, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..anime import detect_anime
from ..db_models import TitleExternalId, TitleRow
from ..errors import InvalidArgumentError, UnresolvedConflictError
from ..events import EventBus, TitleUpdated
from ..merge import (
    META_SOURCE_COMPLETE,
    NO_GENRE_FILTER,
    GenreFilter,
    build_new_record,
    changed_fields,
    is_empty,
    merge_records,
    normalize_partial,
)
from ..models import (
    MULTI_VALUE_NAMESPACES,
    SINGLE_VALUE_NAMESPACES,
    IdMapping,
    StoreStats,
    TitleRecord,
)

logger = logging.getLogger(__name__)

Refresher = Callable[[TitleRecord], Awaitable[Mapping[str, Any] | None]]

_ROW_COLUMNS: tuple[str, ...] = tuple(
    column.key for column in TitleRow.__table__.columns if column.key != "id"
)
_BACKFILL_PROTECTED = frozenset({"title", "type", "year", "meta_source"})


def _row_to_record(row: TitleRow) -> TitleRecord:
    data: dict[str, Any] = {column: getattr(row, column) for column in _ROW_COLUMNS}
    data["id"] = row.id
    for namespace in MULTI_VALUE_NAMESPACES:
        data[namespace] = [
            entry.value for entry in row.external_ids if entry.namespace == namespace
        ]
    return TitleRecord.model_validate(data)


def _record_fields(record: TitleRecord) -> dict[str, Any]:
    """Return the mergeable view of a stored record, keeping empty lists."""

    data = record.model_dump(exclude={"id", "last_updated", "is_anime", "anime_reason"})
    return {key: value for key, value in data.items() if value is not None}


class TitleStore:
    """Store one record per real-world title and merge every write into it.

    Records are located by IMDb id first, then by any alternate identifier,
    then by ``(type, title)``. Accepted data is never discarded: lists only
    grow, ratings are only added or upgraded and ``None`` never overwrites a
    value. Unique-key races are resolved by re-reading the conflicting record
    and merging into it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        event_bus: EventBus | None = None,
        genre_filter: GenreFilter = NO_GENRE_FILTER,
        stale_threshold_seconds: float = 86_400,
        refresh_delay_seconds: float = 0.1,
        conflict_retry_limit: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._events = event_bus or EventBus()
        self._genre_filter = genre_filter
        self._stale_threshold = stale_threshold_seconds
        self._refresh_delay = refresh_delay_seconds
        self._conflict_retry_limit = max(1, conflict_retry_limit)
        self._refresher: Refresher | None = None
        self._refresh_jobs: dict[str, asyncio.Task[None]] = {}

    @property
    def events(self) -> EventBus:
        return self._events

    @property
    def stale_threshold_seconds(self) -> float:
        return self._stale_threshold

    def set_refresher(self, refresher: Refresher | None) -> None:
        """Register the callable that re-fetches stale records in the background."""

        self._refresher = refresher

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    async def _find_by_imdb(self, session: AsyncSession, imdb_id: str) -> TitleRow | None:
        result = await session.execute(select(TitleRow).where(TitleRow.imdb == imdb_id))
        return result.scalars().first()

    async def _find_by_namespace(
        self, session: AsyncSession, namespace: str, values: list[str]
    ) -> TitleRow | None:
        if not values:
            return None
        if namespace in SINGLE_VALUE_NAMESPACES:
            column = getattr(TitleRow, namespace)
            stmt = select(TitleRow).where(column.in_(values)).order_by(TitleRow.id)
        else:
            stmt = (
                select(TitleRow)
                .join(TitleExternalId, TitleExternalId.title_id == TitleRow.id)
                .where(
                    TitleExternalId.namespace == namespace,
                    TitleExternalId.value.in_(values),
                )
                .order_by(TitleRow.id)
            )
        result = await session.execute(stmt)
        return result.scalars().first()

    async def _find_by_type_title(
        self, session: AsyncSession, content_type: str, title: str
    ) -> TitleRow | None:
        result = await session.execute(
            select(TitleRow)
            .where(TitleRow.type == content_type, TitleRow.title == title)
            .order_by(TitleRow.id)
        )
        return result.scalars().first()

    async def _lookup_chain(
        self, session: AsyncSession, data: Mapping[str, Any]
    ) -> TitleRow | None:
        imdb_id = data.get("imdb")
        if imdb_id:
            row = await self._find_by_imdb(session, imdb_id)
            if row is not None:
                return row
        for namespace in (*SINGLE_VALUE_NAMESPACES, *MULTI_VALUE_NAMESPACES):
            value = data.get(namespace)
            values = value if isinstance(value, list) else [value] if value else []
            row = await self._find_by_namespace(session, namespace, values)
            if row is not None:
                return row
        if data.get("type") and data.get("title"):
            return await self._find_by_type_title(session, data["type"], data["title"])
        return None

    async def _resolve_existing(
        self, session: AsyncSession, data: Mapping[str, Any]
    ) -> TitleRow | None:
        """Locate the record a write should merge into."""

        return await self._lookup_chain(session, data)

    async def _find_conflicting(
        self, session: AsyncSession, data: Mapping[str, Any]
    ) -> TitleRow | None:
        """Locate the record that won a unique-key race against ``data``."""

        return await self._lookup_chain(session, data)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    @staticmethod
    def _next_timestamp(previous: datetime | None) -> datetime:
        now = datetime.utcnow()
        if previous is not None and now <= previous:
            return previous + timedelta(microseconds=1)
        return now

    def _apply(self, row: TitleRow, data: Mapping[str, Any]) -> None:
        for column in _ROW_COLUMNS:
            if column in {"last_updated", "is_anime", "anime_reason"}:
                continue
            if column in data:
                setattr(row, column, data[column])

        known = {(entry.namespace, entry.value) for entry in row.external_ids}
        for namespace in MULTI_VALUE_NAMESPACES:
            for value in data.get(namespace) or []:
                if (namespace, value) in known:
                    continue
                known.add((namespace, value))
                row.external_ids.append(TitleExternalId(namespace=namespace, value=value))

        is_anime, reason = detect_anime(data)
        row.is_anime = is_anime
        row.anime_reason = reason
        row.last_updated = self._next_timestamp(row.last_updated)

    async def _delete_orphan(
        self, session: AsyncSession, orphan_id: int | None, keep_id: int | None
    ) -> None:
        if orphan_id is None or orphan_id == keep_id:
            return
        orphan = await session.get(TitleRow, orphan_id)
        if orphan is not None:
            logger.info("Removing duplicate title record %s merged into %s", orphan_id, keep_id)
            await session.delete(orphan)

    async def _merge_into(
        self,
        session: AsyncSession,
        row: TitleRow,
        data: Mapping[str, Any],
        replaces: int | None,
    ) -> TitleRecord:
        current = _record_fields(_row_to_record(row))
        merged = merge_records(current, data, genre_filter=self._genre_filter)
        self._apply(row, merged)
        await self._delete_orphan(session, replaces, row.id)
        await session.commit()
        return _row_to_record(row)

    async def _save_once(
        self, data: Mapping[str, Any], replaces: int | None
    ) -> tuple[TitleRecord, str]:
        async with self._session_factory() as session:
            row = await self._resolve_existing(session, data)
            if row is not None:
                return await self._merge_into(session, row, data, replaces), "merge"

            row = TitleRow(external_ids=[])
            self._apply(row, build_new_record(data, genre_filter=self._genre_filter))
            session.add(row)
            await session.flush()
            await self._delete_orphan(session, replaces, row.id)
            await session.commit()
            return _row_to_record(row), "storage"

    async def _resolve_conflict(
        self, data: Mapping[str, Any], replaces: int | None
    ) -> TitleRecord | None:
        async with self._session_factory() as session:
            row = await self._find_conflicting(session, data)
            if row is None:
                return None
            return await self._merge_into(session, row, data, replaces)

    async def save_title(
        self,
        partial: Mapping[str, Any],
        *,
        replaces: int | None = None,
        source: str | None = None,
    ) -> TitleRecord:
        """Create or merge a title and return the stored record.

        ``replaces`` names the internal key of a temporary record that is
        deleted once its data lands on a different record. A partial carrying
        an ``id`` is treated the same way.
        """

        if not isinstance(partial, Mapping):
            raise InvalidArgumentError("Title data must be a mapping")
        if replaces is None and isinstance(partial.get("id"), int):
            replaces = partial["id"]
        data = normalize_partial(partial)
        if not data:
            raise InvalidArgumentError("Title data carries no storable fields")

        for attempt in range(1, self._conflict_retry_limit + 1):
            try:
                record, action = await self._save_once(data, replaces)
            except IntegrityError as exc:
                logger.warning(
                    "Unique key conflict saving %s (attempt %d/%d): %s",
                    data.get("imdb") or data.get("title"),
                    attempt,
                    self._conflict_retry_limit,
                    exc.orig,
                )
            else:
                await self._publish(record, source or action)
                return record

            try:
                record = await self._resolve_conflict(data, replaces)
            except IntegrityError as exc:
                logger.warning("Conflict resolution raced again: %s", exc.orig)
                continue
            if record is not None:
                logger.info("Merged conflicting write into title %s", record.id)
                await self._publish(record, source or "conflict")
                return record

        raise UnresolvedConflictError(
            f"Could not store {data.get('imdb') or data.get('title')!r} after "
            f"{self._conflict_retry_limit} attempts"
        )

    async def _publish(self, record: TitleRecord, source: str) -> None:
        await self._events.publish(
            TitleUpdated(imdb=record.imdb, id=record.id, type=record.type, source=source)
        )

    async def _update_by_id(
        self, record_id: int, data: Mapping[str, Any], source: str
    ) -> TitleRecord | None:
        data = normalize_partial(data)
        try:
            async with self._session_factory() as session:
                row = await session.get(TitleRow, record_id)
                if row is None:
                    return None
                record = await self._merge_into(session, row, data, None)
        except IntegrityError:
            logger.info("Identifier conflict updating title %s, merging instead", record_id)
            return await self.save_title(data, replaces=record_id, source=source)
        await self._publish(record, source)
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_title(self, imdb_id: str | None) -> TitleRecord | None:
        """Return the stored record, scheduling a refresh when it is stale."""

        if not imdb_id:
            return None
        async with self._session_factory() as session:
            row = await self._find_by_imdb(session, imdb_id)
            record = _row_to_record(row) if row is not None else None
        if record is not None and record.is_stale(self._stale_threshold):
            self._schedule_refresh(record)
        return record

    async def get_by_id(self, record_id: int) -> TitleRecord | None:
        async with self._session_factory() as session:
            row = await session.get(TitleRow, record_id)
            return _row_to_record(row) if row is not None else None

    async def has_title(self, imdb_id: str | None) -> bool:
        if not imdb_id:
            return False
        async with self._session_factory() as session:
            result = await session.execute(
                select(TitleRow.id).where(TitleRow.imdb == imdb_id)
            )
            return result.first() is not None

    async def find_by_namespace(self, namespace: str, value: str) -> TitleRecord | None:
        """Return the record holding ``value`` in ``namespace``, if any."""

        if not value:
            return None
        async with self._session_factory() as session:
            if namespace == "imdb":
                row = await self._find_by_imdb(session, value)
            elif namespace in (*SINGLE_VALUE_NAMESPACES, *MULTI_VALUE_NAMESPACES):
                row = await self._find_by_namespace(session, namespace, [value])
            else:
                raise InvalidArgumentError(f"Unknown identifier namespace: {namespace}")
            return _row_to_record(row) if row is not None else None

    async def find_by_type_title(self, content_type: str, title: str) -> TitleRecord | None:
        async with self._session_factory() as session:
            row = await self._find_by_type_title(session, content_type, title)
            return _row_to_record(row) if row is not None else None

    # ------------------------------------------------------------------
    # Targeted updates
    # ------------------------------------------------------------------
    async def enrich_title_ids(
        self, imdb_id: str, additional: Mapping[str, Any]
    ) -> TitleRecord | None:
        """Merge lazily fetched data into an existing record.

        Interests are added without repeating genres and a demographic
        marker is only filled in when none is stored yet.
        """

        existing = await self.find_by_namespace("imdb", imdb_id)
        if existing is None:
            return None
        data = normalize_partial(additional)
        data.pop("imdb", None)
        if existing.demographics:
            data.pop("demographics", None)
        if not data:
            return existing
        return await self._update_by_id(existing.id, data, "enrichment")

    async def update_entry_with_conversion_results(
        self, record: TitleRecord, mapping: IdMapping | None
    ) -> TitleRecord:
        """Attach converted identifiers to ``record``.

        When the new identifiers point at an already stored title the two
        records are merged and ``record`` is removed.
        """

        if mapping is None or not mapping.has_any():
            return record
        data = record.to_partial()
        for namespace, value in mapping.as_partial().items():
            if namespace in MULTI_VALUE_NAMESPACES:
                data[namespace] = [*data.get(namespace, []), *value]
            elif not data.get(namespace):
                data[namespace] = value
        if record.id is None:
            return await self.save_title(data, source="conversion")
        if not record.imdb and data.get("imdb"):
            owner = await self.find_by_namespace("imdb", data["imdb"])
            if owner is not None and owner.id != record.id:
                return await self.save_title(data, replaces=record.id, source="conversion")
        return await self._update_by_id(record.id, data, "conversion") or record

    async def merge_processed_data(
        self, record: TitleRecord, processed: Mapping[str, Any]
    ) -> TitleRecord:
        """Backfill fields ``record`` lacks from freshly processed data.

        Identifiers already present are kept and the record is only written
        when something actually changes.
        """

        data = normalize_partial(processed)
        backfill: dict[str, Any] = {}
        for key, value in data.items():
            if key in _BACKFILL_PROTECTED:
                continue
            current = getattr(record, key, None)
            if key in MULTI_VALUE_NAMESPACES or key == "ratings":
                backfill[key] = value
            elif is_empty(current):
                backfill[key] = value

        before = _record_fields(record)
        after = merge_records(before, backfill, genre_filter=self._genre_filter)
        if not changed_fields(before, after):
            logger.debug("No new data for title %s", record.id)
            return record
        return await self._update_by_id(record.id, backfill, "merge") or record

    async def process_background_updates_for_title(self, imdb_id: str) -> TitleRecord | None:
        """Re-run progressive enrichment for a stored, incomplete record."""

        existing = await self.find_by_namespace("imdb", imdb_id)
        if existing is None or self._refresher is None:
            return existing
        if existing.meta_source == META_SOURCE_COMPLETE:
            return existing
        partial = await self._refresher(existing)
        if not partial:
            return existing
        return await self.save_title(partial, source="refresh")

    # ------------------------------------------------------------------
    # Background refresh
    # ------------------------------------------------------------------
    def _spawn(
        self, key: str, job: Callable[[], Awaitable[None]], label: str
    ) -> None:
        existing = self._refresh_jobs.get(key)
        if existing and not existing.done():
            return

        async def _runner() -> None:
            try:
                await asyncio.sleep(self._refresh_delay)
                await job()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("%s for %s failed: %s", label, key, exc)
            finally:
                self._refresh_jobs.pop(key, None)

        self._refresh_jobs[key] = asyncio.create_task(_runner())

    def _schedule_refresh(self, record: TitleRecord) -> None:
        if self._refresher is None or not record.imdb:
            return
        key = record.imdb
        refresher = self._refresher

        async def _refresh() -> None:
            partial = await refresher(record)
            if partial:
                await self.save_title(partial, source="refresh")
                logger.info("Refreshed stale title %s", key)

        self._spawn(key, _refresh, "Background refresh")

    def schedule_background_update(self, record: TitleRecord) -> None:
        """Complete an incomplete record without blocking the caller."""

        if self._refresher is None or not record.imdb:
            return
        if record.meta_source == META_SOURCE_COMPLETE:
            return
        key = record.imdb

        async def _update() -> None:
            await self.process_background_updates_for_title(key)

        self._spawn(key, _update, "Background enrichment")

    @property
    def pending_refreshes(self) -> int:
        return len(self._refresh_jobs)

    async def drain(self) -> None:
        """Wait for every scheduled background refresh to finish."""

        while self._refresh_jobs:
            await asyncio.gather(*list(self._refresh_jobs.values()), return_exceptions=True)

    async def close(self) -> None:
        """Cancel outstanding background refreshes."""

        jobs = list(self._refresh_jobs.values())
        for job in jobs:
            job.cancel()
        for job in jobs:
            with suppress(asyncio.CancelledError):
                await job
        self._refresh_jobs.clear()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    async def get_stats(self) -> StoreStats:
        cutoff = datetime.utcnow() - timedelta(seconds=self._stale_threshold)
        async with self._session_factory() as session:
            total = await session.scalar(select(func.count()).select_from(TitleRow))
            stale = await session.scalar(
                select(func.count())
                .select_from(TitleRow)
                .where(or_(TitleRow.last_updated < cutoff, TitleRow.last_updated.is_(None)))
            )
        return StoreStats(total_titles=total or 0, need_refresh=stale or 0)

    async def clear(self) -> None:
        """Remove every stored title."""

        async with self._session_factory() as session:
            await session.execute(delete(TitleExternalId))
            await session.execute(delete(TitleRow))
            await session.commit()
        logger.info("Title store cleared")
