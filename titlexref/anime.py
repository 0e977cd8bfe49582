"""Anime classification for stored title records."""

from __future__ import annotations

from typing import Any, Mapping

ANIMATION_TERMS = ("animation", "anime")


def _is_japanese_animation(record: Mapping[str, Any]) -> bool:
    origin = (record.get("origin_country") or "").strip().lower()
    if origin != "japan":
        return False
    terms = [
        str(term).lower()
        for term in [*(record.get("genres") or []), *(record.get("interests") or [])]
    ]
    return any(marker in term for term in terms for marker in ANIMATION_TERMS)


def detect_anime(record: Mapping[str, Any] | None) -> tuple[bool, str | None]:
    """Return ``(is_anime, reason)`` for a record.

    Signals are checked from the most to the least reliable: a demographic
    marker (Shounen, Seinen, ...), Japanese origin combined with an animation
    genre, and finally the presence of an anime tracker identifier.
    """

    if not record:
        return False, None

    demographics = record.get("demographics")
    if demographics:
        return True, f"Demographics: {demographics}"

    if _is_japanese_animation(record):
        return True, "Japan + Animation"

    mal_ids = record.get("mal") or []
    if mal_ids or record.get("anilist") or record.get("kitsu"):
        if mal_ids:
            return True, f"DB: MAL {mal_ids[0]}"
        return True, "DB: Anime IDs"

    return False, None
