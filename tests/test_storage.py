"""Tests for the persistent title store."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import update

from titlexref.database import Database
from titlexref.db_models import TitleRow
from titlexref.errors import InvalidArgumentError, UnresolvedConflictError
from titlexref.events import TitleUpdated
from titlexref.models import IdMapping, TitleRecord
from titlexref.services.storage import TitleStore


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


async def _database(tmp_path: Path, name: str = "titles.db") -> Database:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / name}")
    await database.create_all()
    return database


async def _age_record(database: Database, imdb_id: str, days: int) -> None:
    async with database.session_factory() as session:
        await session.execute(
            update(TitleRow)
            .where(TitleRow.imdb == imdb_id)
            .values(last_updated=datetime.utcnow() - timedelta(days=days))
        )
        await session.commit()


class BlindStore(TitleStore):
    """Store whose first lookups miss, simulating a concurrent insert."""

    def __init__(self, *args: Any, blind_lookups: int = 1, blind_conflicts: bool = False, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.blind_lookups = blind_lookups
        self.blind_conflicts = blind_conflicts

    async def _resolve_existing(self, session, data):
        if self.blind_lookups > 0:
            self.blind_lookups -= 1
            return None
        return await super()._resolve_existing(session, data)

    async def _find_conflicting(self, session, data):
        if self.blind_conflicts:
            return None
        return await super()._find_conflicting(session, data)


@pytest.mark.anyio("asyncio")
async def test_new_record_without_anime_ids_is_created(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        created = await store.save_title(
            {"imdb": "tt0903747", "type": "series", "title": "Breaking Bad", "genres": ["Crime & Drama"]}
        )
        rated = await store.save_title(
            {"imdb": "tt0903747", "ratings": {"imdb": {"score": 9.5, "votes": 2_000_000}}}
        )
        untitled = await store.save_title({"title": "Heat", "type": "movie", "year": 1995})
    finally:
        await database.dispose()

    assert (created.mal, created.anilist, created.kitsu) == ([], [], [])
    assert rated.id == created.id
    assert rated.title == "Breaking Bad"
    assert rated.genres == ["Crime", "Drama"]
    assert rated.ratings["imdb"].score == 9.5
    assert untitled.imdb is None and untitled.id != created.id


@pytest.mark.anyio("asyncio")
async def test_merge_keeps_accepted_data(tmp_path: Path) -> None:
    """A later partial adds ids and genres but never erases a rating."""

    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        first = await store.save_title(
            {
                "imdb": "tt0903747",
                "title": "Breaking Bad",
                "type": "series",
                "genres": ["Crime & Drama"],
                "ratings": {"imdb": {"score": 9.5, "votes": 2_000_000}},
            }
        )
        second = await store.save_title(
            {
                "imdb": "tt0903747",
                "tmdb": 1396,
                "genres": ["Thriller"],
                "ratings": {"imdb": {"score": None, "votes": 1}},
                "plot": None,
            }
        )
        stats = await store.get_stats()
    finally:
        await database.dispose()

    assert second.id == first.id
    assert second.tmdb == "1396"
    assert second.genres == ["Crime", "Drama", "Thriller"]
    assert second.ratings["imdb"].score == 9.5
    assert second.ratings["imdb"].votes == 2_000_000
    assert second.last_updated > first.last_updated
    assert stats.total_titles == 1


@pytest.mark.anyio("asyncio")
async def test_alternate_ids_locate_and_union(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        created = await store.save_title(
            {"title": "Fullmetal Alchemist: Brotherhood", "type": "series", "mal": "5114"}
        )
        merged = await store.save_title({"mal": ["999", "5114"], "anilist": [5114]})
        by_anilist = await store.find_by_namespace("anilist", "5114")
        by_mal = await store.find_by_namespace("mal", "999")
    finally:
        await database.dispose()

    assert merged.id == created.id
    assert merged.mal == ["5114", "999"]
    assert merged.is_anime is True
    assert merged.anime_reason == "DB: MAL 5114"
    assert by_anilist is not None and by_anilist.id == created.id
    assert by_mal is not None and by_mal.id == created.id


@pytest.mark.anyio("asyncio")
async def test_compound_key_matches_titles_without_ids(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        created = await store.save_title({"title": "Dark", "type": "series", "year": 2017})
        merged = await store.save_title({"title": "Dark", "type": "series", "imdb": "tt5753856"})
        movie = await store.save_title({"title": "Dark", "type": "movie"})
    finally:
        await database.dispose()

    assert merged.id == created.id
    assert merged.imdb == "tt5753856"
    assert merged.year == 2017
    assert movie.id != created.id


@pytest.mark.anyio("asyncio")
async def test_merge_order_does_not_change_the_union(tmp_path: Path) -> None:
    first = {
        "imdb": "tt2560140",
        "title": "Attack on Titan",
        "type": "series",
        "genres": ["Action"],
        "mal": ["16498"],
        "ratings": {"imdb": {"score": 9.1, "votes": 500}},
    }
    second = {
        "imdb": "tt2560140",
        "genres": ["Animation & Action"],
        "mal": ["25777"],
        "kitsu": ["7442"],
        "ratings": {"mal": {"score": 8.5, "votes": 300}},
    }

    results: list[TitleRecord] = []
    for name, order in (("ab.db", (first, second)), ("ba.db", (second, first))):
        database = await _database(tmp_path, name)
        store = TitleStore(database.session_factory)
        try:
            for partial in order:
                record = await store.save_title(partial)
            results.append(record)
        finally:
            await database.dispose()

    forward, backward = results
    assert set(forward.genres) == set(backward.genres) == {"Action", "Animation"}
    assert set(forward.mal) == set(backward.mal) == {"16498", "25777"}
    assert forward.kitsu == backward.kitsu == ["7442"]
    assert forward.ratings == backward.ratings


@pytest.mark.anyio("asyncio")
async def test_insert_conflict_merges_into_existing_record(tmp_path: Path) -> None:
    """A write that lost the insert race lands on the winning record."""

    database = await _database(tmp_path)
    events: list[TitleUpdated] = []
    store = BlindStore(database.session_factory, blind_lookups=0)
    store.events.subscribe(events.append)
    try:
        winner = await store.save_title(
            {"imdb": "tt1375666", "title": "Inception", "type": "movie", "genres": ["Action"]}
        )
        store.blind_lookups = 1
        loser = await store.save_title(
            {"imdb": "tt1375666", "genres": ["Sci-Fi"], "ratings": {"imdb": {"score": 8.8, "votes": 10}}}
        )
        stats = await store.get_stats()
    finally:
        await database.dispose()

    assert loser.id == winner.id
    assert loser.genres == ["Action", "Sci-Fi"]
    assert loser.ratings["imdb"].score == 8.8
    assert stats.total_titles == 1
    assert [event.source for event in events] == ["storage", "conflict"]


@pytest.mark.anyio("asyncio")
async def test_concurrent_inserts_produce_one_record(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        records = await asyncio.gather(
            store.save_title({"imdb": "tt0111161", "title": "The Shawshank Redemption", "genres": ["Drama"]}),
            store.save_title({"imdb": "tt0111161", "genres": ["Crime"], "year": 1994}),
        )
        stored = await store.get_title("tt0111161")
        stats = await store.get_stats()
    finally:
        await database.dispose()

    assert records[0].id == records[1].id
    assert stats.total_titles == 1
    assert stored is not None
    assert set(stored.genres) == {"Drama", "Crime"}
    assert stored.year == 1994


@pytest.mark.anyio("asyncio")
async def test_unlocatable_conflict_is_reported(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = BlindStore(database.session_factory, blind_lookups=0, conflict_retry_limit=2)
    try:
        await store.save_title({"imdb": "tt0068646", "title": "The Godfather"})
        store.blind_lookups = 10
        store.blind_conflicts = True
        with pytest.raises(UnresolvedConflictError):
            await store.save_title({"imdb": "tt0068646", "title": "Il padrino"})
    finally:
        await database.dispose()


@pytest.mark.anyio("asyncio")
async def test_conversion_results_replace_temporary_record(tmp_path: Path) -> None:
    """A temporary record whose converted IMDb id already exists is folded into it."""

    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        temporary = await store.save_title({"title": "Frieren", "type": "series", "mal": ["52991"]})
        existing = await store.save_title(
            {"imdb": "tt22248376", "title": "Frieren: Beyond Journey's End", "type": "series", "plot": "An elf mage."}
        )
        merged = await store.update_entry_with_conversion_results(
            temporary, IdMapping(imdb="tt22248376", mal=["52991"], anilist=["154587"])
        )
        stats = await store.get_stats()
        leftover = await store.get_by_id(temporary.id)
    finally:
        await database.dispose()

    assert merged.id == existing.id
    assert merged.mal == ["52991"]
    assert merged.anilist == ["154587"]
    assert merged.plot == "An elf mage."
    assert stats.total_titles == 1
    assert leftover is None


@pytest.mark.anyio("asyncio")
async def test_conversion_results_update_record_in_place(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        temporary = await store.save_title({"title": "Mushishi", "type": "series", "anilist": ["457"]})
        updated = await store.update_entry_with_conversion_results(
            temporary, IdMapping(imdb="tt0807832", mal=["457"])
        )
        unchanged = await store.update_entry_with_conversion_results(updated, None)
    finally:
        await database.dispose()

    assert updated.id == temporary.id
    assert updated.imdb == "tt0807832"
    assert updated.mal == ["457"]
    assert unchanged is updated


@pytest.mark.anyio("asyncio")
async def test_stale_read_schedules_background_refresh(tmp_path: Path) -> None:
    """Stale records are returned immediately and refreshed afterwards."""

    database = await _database(tmp_path)
    store = TitleStore(database.session_factory, refresh_delay_seconds=0)
    refreshed: list[str] = []

    async def refresher(record: TitleRecord) -> dict[str, Any]:
        refreshed.append(record.imdb)
        return {"imdb": record.imdb, "plot": "Fresh plot"}

    store.set_refresher(refresher)
    try:
        await store.save_title({"imdb": "tt0944947", "title": "Game of Thrones", "type": "series"})
        await _age_record(database, "tt0944947", days=2)

        stale = await store.get_title("tt0944947")
        assert stale is not None
        assert stale.plot is None
        await store.drain()

        fresh = await store.get_title("tt0944947")
        await store.drain()
    finally:
        await database.dispose()

    assert refreshed == ["tt0944947"]
    assert fresh is not None
    assert fresh.plot == "Fresh plot"
    assert not fresh.is_stale(store.stale_threshold_seconds)


@pytest.mark.anyio("asyncio")
async def test_refresh_failures_are_contained(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory, refresh_delay_seconds=0)

    async def refresher(record: TitleRecord) -> dict[str, Any]:
        raise RuntimeError("provider exploded")

    store.set_refresher(refresher)
    try:
        await store.save_title({"imdb": "tt0108778", "title": "Friends"})
        await _age_record(database, "tt0108778", days=3)
        record = await store.get_title("tt0108778")
        await store.drain()
    finally:
        await database.dispose()

    assert record is not None
    assert store.pending_refreshes == 0


@pytest.mark.anyio("asyncio")
async def test_stats_and_clear(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        await store.save_title({"imdb": "tt0000001", "title": "Carmencita"})
        await store.save_title({"imdb": "tt0000002", "title": "Le clown et ses chiens"})
        await _age_record(database, "tt0000001", days=5)

        stats = await store.get_stats()
        await store.clear()
        cleared = await store.get_stats()
        missing = await store.has_title("tt0000002")
    finally:
        await database.dispose()

    assert (stats.total_titles, stats.need_refresh) == (2, 1)
    assert (cleared.total_titles, cleared.need_refresh) == (0, 0)
    assert missing is False


@pytest.mark.anyio("asyncio")
async def test_update_events_and_failing_subscribers(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    received: list[dict[str, Any]] = []

    def broken(event: TitleUpdated) -> None:
        raise ValueError("subscriber bug")

    async def collect(event: TitleUpdated) -> None:
        received.append(event.as_dict())

    store.events.subscribe(broken)
    subscription = store.events.subscribe(collect)
    try:
        created = await store.save_title({"imdb": "tt0386676", "title": "The Office", "type": "series"})
        await store.save_title({"imdb": "tt0386676", "year": 2005})
        await store.enrich_title_ids("tt0386676", {"tvdb": "73244"})
        store.events.unsubscribe(subscription)
        await store.save_title({"imdb": "tt0386676", "seasons": 9})
    finally:
        await database.dispose()

    assert [event["source"] for event in received] == ["storage", "merge", "enrichment"]
    assert all(event["imdb"] == "tt0386676" for event in received)
    assert received[0]["id"] == created.id
    assert received[0]["type"] == "series"


@pytest.mark.anyio("asyncio")
async def test_enrich_title_ids_respects_existing_markers(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        await store.save_title(
            {
                "imdb": "tt0388629",
                "title": "One Piece",
                "type": "series",
                "genres": ["Adventure"],
                "demographics": "Shounen",
            }
        )
        enriched = await store.enrich_title_ids(
            "tt0388629",
            {"demographics": "Seinen", "interests": ["Adventure", "Pirates"], "mal": ["21"]},
        )
        unknown = await store.enrich_title_ids("tt9999999", {"mal": ["1"]})
    finally:
        await database.dispose()

    assert enriched is not None
    assert enriched.demographics == "Shounen"
    assert enriched.interests == ["Pirates"]
    assert enriched.mal == ["21"]
    assert enriched.anime_reason == "Demographics: Shounen"
    assert unknown is None


@pytest.mark.anyio("asyncio")
async def test_merge_processed_data_only_backfills(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        record = await store.save_title(
            {"imdb": "tt0133093", "title": "The Matrix", "type": "movie", "plot": "Neo wakes up."}
        )
        unchanged = await store.merge_processed_data(
            record, {"imdb": "tt0133093", "title": "Matrix", "plot": "Other plot"}
        )
        backfilled = await store.merge_processed_data(
            record, {"title": "Matrix", "runtime": "2h 16min", "plot": "Other plot"}
        )
    finally:
        await database.dispose()

    assert unchanged.last_updated == record.last_updated
    assert backfilled.title == "The Matrix"
    assert backfilled.plot == "Neo wakes up."
    assert backfilled.runtime == "2h 16min"


@pytest.mark.anyio("asyncio")
async def test_invalid_partials_fail_fast(tmp_path: Path) -> None:
    database = await _database(tmp_path)
    store = TitleStore(database.session_factory)
    try:
        with pytest.raises(InvalidArgumentError):
            await store.save_title({"unknown": "value"})
        assert await store.get_title("") is None
    finally:
        await database.dispose()
