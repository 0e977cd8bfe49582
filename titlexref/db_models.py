"""SQLAlchemy ORM models backing the persistent title store."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base


class TitleRow(Base):
    """One persisted record per real-world title."""

    __tablename__ = "titles"
    __table_args__ = (Index("ix_titles_type_title", "type", "title"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    imdb: Mapped[str | None] = mapped_column(String(32), unique=True, nullable=True)
    tmdb: Mapped[str | None] = mapped_column(String(32), index=True, nullable=True)
    tvdb: Mapped[str | None] = mapped_column(String(32), index=True, nullable=True)

    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    original_title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    runtime: Mapped[str | None] = mapped_column(String(32), nullable=True)
    plot: Mapped[str | None] = mapped_column(Text, nullable=True)
    tagline: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    seasons: Mapped[int | None] = mapped_column(Integer, nullable=True)
    episodes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    network: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    studio: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    content_rating: Mapped[str | None] = mapped_column(String(32), nullable=True)
    origin_country: Mapped[str | None] = mapped_column(String(64), nullable=True)

    genres: Mapped[list[str]] = mapped_column(JSON, default=list)
    interests: Mapped[list[str]] = mapped_column(JSON, default=list)
    demographics: Mapped[str | None] = mapped_column(String(64), nullable=True)

    ratings: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    rank_mal: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mal_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    awards: Mapped[str | None] = mapped_column(Text, nullable=True)
    stars: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    directors: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    alt_titles: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list)
    poster: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    background: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    logo: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    trailer: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    meta_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    meta_source_private: Mapped[str | None] = mapped_column(String(32), nullable=True)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, index=True
    )
    last_enriched_private: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    is_anime: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    anime_reason: Mapped[str | None] = mapped_column(String(120), nullable=True)

    external_ids: Mapped[list["TitleExternalId"]] = relationship(
        back_populates="title_row",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="TitleExternalId.id",
    )


class TitleExternalId(Base):
    """Multi-valued alternate identifiers (mal, anilist, kitsu) of a title."""

    __tablename__ = "title_external_ids"
    __table_args__ = (
        UniqueConstraint(
            "title_id", "namespace", "value", name="uq_title_external_id"
        ),
        Index("ix_title_external_ids_lookup", "namespace", "value"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("titles.id", ondelete="CASCADE")
    )
    namespace: Mapped[str] = mapped_column(String(16))
    value: Mapped[str] = mapped_column(String(64))

    title_row: Mapped[TitleRow] = relationship(back_populates="external_ids")


class ProviderCooldown(Base):
    """Durable rate-limit state for a provider."""

    __tablename__ = "provider_cooldowns"

    provider: Mapped[str] = mapped_column(String(32), primary_key=True)
    limited_until: Mapped[datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
    )
