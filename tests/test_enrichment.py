from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from titlexref.database import Database
from titlexref.errors import InvalidArgumentError, NetworkError
from titlexref.models import IdMapping, TitleRecord
from titlexref.services.enrichment import EnrichmentOrchestrator
from titlexref.services.rate_limits import RateLimitRegistry
from titlexref.services.storage import TitleStore


@pytest.fixture
def anyio_backend() -> str:
    """Force AnyIO tests to run on asyncio without requiring trio."""

    return "asyncio"


class StubProvider:
    """Private provider double answering from a dict keyed by IMDb id."""

    def __init__(
        self,
        payloads: dict[str, dict[str, Any]] | None = None,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.payloads = payloads or {}
        self.delay = delay
        self.error = error
        self.calls: list[tuple[str, str]] = []
        self.batches: list[tuple[list[str], str]] = []
        self.finished = 0

    async def fetch_by_imdb_id(
        self, imdb_id: str, content_type: str, *, priority: bool = False
    ) -> dict[str, Any] | None:
        self.calls.append((imdb_id, content_type))
        if self.delay:
            await asyncio.sleep(self.delay)
        self.finished += 1
        if self.error is not None:
            raise self.error
        payload = self.payloads.get(imdb_id)
        return dict(payload) if payload else None

    async def fetch_batch(self, imdb_ids: list[str], content_type: str) -> dict[str, dict[str, Any]]:
        self.batches.append((list(imdb_ids), content_type))
        return {imdb_id: dict(self.payloads[imdb_id]) for imdb_id in imdb_ids if imdb_id in self.payloads}


class StubJikan:
    def __init__(self, payload: dict[str, Any]) -> None:
        self.payload = payload
        self.calls: list[str] = []

    async def fetch(self, mal_id: str, *, priority: bool = False) -> dict[str, Any]:
        self.calls.append(mal_id)
        await asyncio.sleep(0.01)
        return {key: value for key, value in self.payload.items()}


class StubConversion:
    def __init__(self, mapping: IdMapping | None) -> None:
        self.mapping = mapping
        self.calls: list[str] = []

    async def convert_from_imdb(self, imdb_id: str, *, priority: bool = False) -> IdMapping | None:
        self.calls.append(imdb_id)
        return self.mapping


def registry_with_keys() -> RateLimitRegistry:
    return RateLimitRegistry(api_keys={"tmdb": "tmdb-key", "mdblist": "mdblist-key"})


async def build_store(tmp_path: Path) -> tuple[TitleStore, Database]:
    database = Database(f"sqlite+aiosqlite:///{tmp_path / 'enrichment.db'}")
    await database.create_all()
    return TitleStore(database.session_factory), database


def test_merge_results_prefers_each_provider_for_its_fields() -> None:
    merged = EnrichmentOrchestrator.merge_results(
        tmdb={
            "title": "Inception",
            "plot": "A thief who steals corporate secrets.",
            "poster": "https://image.tmdb.org/poster.jpg",
            "tagline": "Your mind is the scene of the crime.",
            "network": {"name": "Warner"},
            "tmdb": "27205",
            "ratings": {"tmdb": {"score": 8.4, "votes": 35000}},
        },
        mdblist={
            "title": "Inception (2010)",
            "plot": "",
            "logo": "https://mdblist.example/logo.png",
            "content_rating": "PG-13",
            "trailer": "https://youtube.com/watch?v=YoHD9XEInc0",
            "ratings": {"imdb": {"score": 8.8, "votes": 2400000}},
            "tmdb": "27205",
            "tvdb": "11111",
        },
        content_type="movie",
    )

    assert merged["meta_source_private"] == "tmdb"
    assert merged["type"] == "movie"
    assert merged["title"] == "Inception"
    assert merged["plot"] == "A thief who steals corporate secrets."
    assert merged["logo"] == "https://mdblist.example/logo.png"
    assert merged["tagline"] == "Your mind is the scene of the crime."
    assert "network" not in merged
    assert merged["content_rating"] == "PG-13"
    assert merged["ratings"] == {"imdb": {"score": 8.8, "votes": 2400000}}
    assert merged["tvdb"] == "11111"


def test_merge_results_without_payloads_is_empty() -> None:
    assert EnrichmentOrchestrator.merge_results(tmdb=None, mdblist={}, content_type=None) == {}


@pytest.mark.anyio("asyncio")
async def test_slow_provider_is_dropped_after_timeout(tmp_path: Path) -> None:
    store, database = await build_store(tmp_path)
    tmdb = StubProvider({"tt1375666": {"title": "Inception", "plot": "Late plot"}}, delay=0.3)
    mdblist = StubProvider({"tt1375666": {"content_rating": "PG-13", "plot": "MDBList plot"}})
    orchestrator = EnrichmentOrchestrator(
        store, registry=registry_with_keys(), tmdb=tmdb, mdblist=mdblist, tmdb_timeout=0.05
    )
    try:
        result = await orchestrator.get_enriched_metadata("tt1375666", "movie")
        while not tmdb.finished:
            await asyncio.sleep(0.02)
    finally:
        await database.dispose()

    assert result["meta_source_private"] == "mdblist"
    assert result["plot"] == "MDBList plot"
    assert result["content_rating"] == "PG-13"
    assert "title" not in result


@pytest.mark.anyio("asyncio")
async def test_failing_provider_only_loses_its_contribution(tmp_path: Path) -> None:
    store, database = await build_store(tmp_path)
    tmdb = StubProvider({"tt0133093": {"title": "The Matrix", "poster": "poster.jpg"}})
    mdblist = StubProvider(error=NetworkError("mdblist", "HTTP 502"))
    orchestrator = EnrichmentOrchestrator(store, registry=registry_with_keys(), tmdb=tmdb, mdblist=mdblist)
    try:
        result = await orchestrator.get_enriched_metadata("tt0133093", "movie")
    finally:
        await database.dispose()

    assert result == {
        "type": "movie",
        "meta_source_private": "tmdb",
        "title": "The Matrix",
        "poster": "poster.jpg",
    }


@pytest.mark.anyio("asyncio")
async def test_malformed_provider_payload_keeps_other_contributions(tmp_path: Path) -> None:
    store, database = await build_store(tmp_path)
    tmdb = StubProvider(error=KeyError("id"))
    mdblist = StubProvider({"tt0133093": {"ratings": {"imdb": {"score": 8.7, "votes": 2100000}}}})
    orchestrator = EnrichmentOrchestrator(store, registry=registry_with_keys(), tmdb=tmdb, mdblist=mdblist)
    try:
        result = await orchestrator.get_enriched_metadata("tt0133093", "movie")
    finally:
        await database.dispose()

    assert tmdb.calls == [("tt0133093", "movie")]
    assert result["meta_source_private"] == "mdblist"
    assert result["ratings"] == {"imdb": {"score": 8.7, "votes": 2100000}}


@pytest.mark.anyio("asyncio")
async def test_rate_limited_providers_are_skipped(tmp_path: Path) -> None:
    store, database = await build_store(tmp_path)
    registry = registry_with_keys()
    tmdb = StubProvider({"tt0133093": {"title": "The Matrix"}})
    orchestrator = EnrichmentOrchestrator(store, registry=registry, tmdb=tmdb, mdblist=None)
    try:
        await registry.mark_rate_limited("tmdb")
        status = orchestrator.get_api_status()
        result = await orchestrator.get_enriched_metadata("tt0133093", "movie")
        with pytest.raises(InvalidArgumentError):
            await orchestrator.get_enriched_metadata("", "movie")
    finally:
        await database.dispose()

    assert result == {}
    assert tmdb.calls == []
    assert orchestrator.has_private_api_available() is False
    assert status["tmdb"] == {"has_key": True, "is_available": False, "is_rate_limited": True}
    assert status["mdblist"] == {"has_key": True, "is_available": False, "is_rate_limited": False}


def test_private_enrichment_ttl() -> None:
    orchestrator = EnrichmentOrchestrator(
        store=None, registry=RateLimitRegistry(), private_ttl_seconds=3600  # type: ignore[arg-type]
    )
    now = datetime(2024, 5, 1, 12, 0, 0)

    assert orchestrator.needs_private_enrichment(None) is False
    assert orchestrator.needs_private_enrichment(TitleRecord(title="No imdb")) is False
    assert orchestrator.needs_private_enrichment(TitleRecord(imdb="tt1")) is True
    recent = TitleRecord(imdb="tt1", last_enriched_private=now - timedelta(minutes=30))
    old = TitleRecord(imdb="tt1", last_enriched_private=now - timedelta(hours=2))
    assert orchestrator.needs_private_enrichment(recent, now=now) is False
    assert orchestrator.needs_private_enrichment(old, now=now) is True


@pytest.mark.anyio("asyncio")
async def test_lazy_private_enrichment_runs_once_per_ttl(tmp_path: Path) -> None:
    store, database = await build_store(tmp_path)
    tmdb = StubProvider({"tt1375666": {"plot": "A thief who steals secrets.", "tmdb": "27205"}})
    orchestrator = EnrichmentOrchestrator(store, registry=registry_with_keys(), tmdb=tmdb)
    try:
        record = await store.save_title({"imdb": "tt1375666", "title": "Inception", "type": "movie"})
        updated = await orchestrator.trigger_lazy_private_enrichment(record)
        assert updated is not None
        repeated = await orchestrator.trigger_lazy_private_enrichment(updated)
    finally:
        await database.dispose()

    assert updated.plot == "A thief who steals secrets."
    assert updated.tmdb == "27205"
    assert updated.meta_source_private == "tmdb"
    assert updated.last_enriched_private is not None
    assert repeated is None
    assert tmdb.calls == [("tt1375666", "movie")]


@pytest.mark.anyio("asyncio")
async def test_lazy_jikan_is_deduplicated_and_keeps_public_fields(tmp_path: Path) -> None:
    store, database = await build_store(tmp_path)
    jikan = StubJikan(
        {
            "ratings": {"mal": {"score": 9.1, "votes": 2_100_000}},
            "runtime": "24 min",
            "status": "Finished Airing",
            "rank_mal": 1,
            "mal": ["5114"],
        }
    )
    orchestrator = EnrichmentOrchestrator(store, registry=RateLimitRegistry(), jikan=jikan)
    try:
        record = await store.save_title(
            {
                "imdb": "tt1355642",
                "title": "Fullmetal Alchemist: Brotherhood",
                "type": "series",
                "runtime": "1h",
                "mal": ["5114"],
            }
        )
        first, second = await asyncio.gather(
            orchestrator.trigger_lazy_jikan(record),
            orchestrator.trigger_lazy_jikan(record),
        )
        assert first is not None
        skipped = await orchestrator.trigger_lazy_jikan(first)
    finally:
        await database.dispose()

    assert jikan.calls == ["5114"]
    assert second is not None and second.id == first.id == record.id
    assert first.ratings["mal"].score == 9.1
    assert first.rank_mal == 1
    assert first.runtime == "1h"
    assert first.status == "Finished Airing"
    assert skipped is None


@pytest.mark.anyio("asyncio")
async def test_lazy_jikan_discovers_mal_id_by_reverse_lookup(tmp_path: Path) -> None:
    store, database = await build_store(tmp_path)
    jikan = StubJikan({"ratings": {"mal": {"score": 8.7, "votes": 1_500_000}}})
    conversion = StubConversion(IdMapping(imdb="tt0388629", mal=["21"], anilist=["21"]))
    orchestrator = EnrichmentOrchestrator(
        store, registry=RateLimitRegistry(), id_conversion=conversion, jikan=jikan
    )
    try:
        record = await store.save_title(
            {"imdb": "tt0388629", "title": "One Piece", "type": "series", "demographics": "Shounen"}
        )
        updated = await orchestrator.trigger_lazy_jikan(record)
        plain = await store.save_title({"imdb": "tt0944947", "title": "Game of Thrones", "type": "series"})
        not_anime = await orchestrator.trigger_lazy_jikan(plain)
    finally:
        await database.dispose()

    assert conversion.calls == ["tt0388629"]
    assert jikan.calls == ["21"]
    assert updated is not None
    assert updated.mal == ["21"]
    assert updated.anilist == ["21"]
    assert updated.ratings["mal"].score == 8.7
    assert not_anime is None


@pytest.mark.anyio("asyncio")
async def test_enrich_batch_uses_one_mdblist_call_per_type(tmp_path: Path) -> None:
    store, database = await build_store(tmp_path)
    payloads = {
        "tt0133093": {"content_rating": "R", "ratings": {"imdb": {"score": 8.7, "votes": 2000000}}},
        "tt0903747": {"content_rating": "TV-MA", "ratings": {"imdb": {"score": 9.5, "votes": 2100000}}},
    }
    mdblist = StubProvider(payloads)
    tmdb = StubProvider({"tt1375666": {"plot": "A thief who steals secrets."}})
    orchestrator = EnrichmentOrchestrator(store, registry=registry_with_keys(), tmdb=tmdb, mdblist=mdblist)
    try:
        count = await orchestrator.enrich_batch(
            [
                {"imdb": "tt0133093", "type": "movie"},
                {"imdb": "tt1375666", "type": "movie"},
                TitleRecord(imdb="tt0903747", type="series", title="Breaking Bad"),
                {"title": "No identifier"},
            ]
        )
        matrix = await store.get_title("tt0133093")
        breaking_bad = await store.get_title("tt0903747")
    finally:
        await database.dispose()

    assert count == 3
    assert sorted(mdblist.batches) == [
        (["tt0133093", "tt1375666"], "movie"),
        (["tt0903747"], "series"),
    ]
    assert len(tmdb.calls) == 3
    assert matrix is not None and matrix.content_rating == "R"
    assert breaking_bad is not None and breaking_bad.ratings["imdb"].score == 9.5
    assert breaking_bad.last_enriched_private is not None
