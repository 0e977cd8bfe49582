from __future__ import annotations

import asyncio

from sqlalchemy import create_engine, inspect, text

from titlexref.database import Database


def _initialise_legacy_schema(database_path: str) -> None:
    """Create a legacy titles table lacking the newer enrichment columns."""

    engine = create_engine(f"sqlite:///{database_path}")
    try:
        with engine.begin() as connection:
            connection.execute(
                text(
                    """
                    CREATE TABLE titles (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        imdb VARCHAR(32) UNIQUE,
                        tmdb VARCHAR(32),
                        tvdb VARCHAR(32),
                        title VARCHAR(512),
                        original_title VARCHAR(512),
                        type VARCHAR(16),
                        year INTEGER,
                        runtime VARCHAR(32),
                        plot TEXT,
                        tagline TEXT,
                        status VARCHAR(64),
                        seasons INTEGER,
                        episodes INTEGER,
                        network JSON,
                        studio JSON,
                        content_rating VARCHAR(32),
                        origin_country VARCHAR(64),
                        genres JSON,
                        interests JSON,
                        demographics VARCHAR(64),
                        ratings JSON,
                        rank_mal INTEGER,
                        mal_url VARCHAR(512),
                        awards TEXT,
                        stars JSON,
                        directors JSON,
                        poster VARCHAR(1024),
                        background VARCHAR(1024),
                        logo VARCHAR(1024),
                        trailer VARCHAR(1024),
                        meta_source VARCHAR(32),
                        meta_source_private VARCHAR(32),
                        last_updated DATETIME,
                        is_anime BOOLEAN NOT NULL DEFAULT 0
                    )
                    """
                )
            )
            connection.execute(
                text("INSERT INTO titles (imdb, title, type) VALUES ('tt0903747', 'Breaking Bad', 'series')")
            )
    finally:
        engine.dispose()


def test_create_all_adds_enrichment_columns(tmp_path) -> None:
    """Schema migrations should add columns introduced after the first release."""

    database_path = tmp_path / "legacy.db"
    _initialise_legacy_schema(str(database_path))

    database = Database(f"sqlite+aiosqlite:///{database_path}")
    asyncio.run(database.create_all())
    asyncio.run(database.dispose())

    inspector_engine = create_engine(f"sqlite:///{database_path}")
    try:
        inspector = inspect(inspector_engine)
        columns = {column["name"] for column in inspector.get_columns("titles")}
        tables = set(inspector.get_table_names())
        with inspector_engine.connect() as connection:
            alt_titles = connection.execute(text("SELECT alt_titles FROM titles")).scalar_one()
    finally:
        inspector_engine.dispose()

    assert {"last_enriched_private", "alt_titles", "anime_reason"} <= columns
    assert {"title_external_ids", "provider_cooldowns"} <= tables
    assert alt_titles == "[]"


def test_session_scope_persists_external_ids(tmp_path) -> None:
    from sqlalchemy import select

    from titlexref.db_models import TitleExternalId, TitleRow

    async def runner():
        database = Database(f"sqlite+aiosqlite:///{tmp_path / 'scope.db'}")
        await database.create_all()
        try:
            async with database.session() as session:
                row = TitleRow(imdb="tt1355642", title="Fullmetal Alchemist: Brotherhood", type="series")
                row.external_ids.append(TitleExternalId(namespace="mal", value="5114"))
                session.add(row)
                await session.commit()

            async with database.session() as session:
                result = await session.execute(
                    select(TitleRow.imdb)
                    .join(TitleExternalId)
                    .where(TitleExternalId.namespace == "mal", TitleExternalId.value == "5114")
                )
                return result.scalar_one()
        finally:
            await database.dispose()

    assert asyncio.run(runner()) == "tt1355642"
