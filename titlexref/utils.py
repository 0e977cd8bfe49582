"""Utility helpers for the cross-reference service."""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Iterable


IMDB_ID_RE = re.compile(r"^tt\d+$")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_WHITESPACE_RE = re.compile(r"\s+")


def fold_text(value: str) -> str:
    """Return a lower-cased, accent-free, alphanumeric-only rendition."""

    value = unicodedata.normalize("NFD", value)
    value = "".join(char for char in value if not unicodedata.combining(char))
    value = _NON_ALNUM_RE.sub(" ", value.lower())
    return _WHITESPACE_RE.sub(" ", value).strip()


def person_key(name: str) -> str:
    """Key used to deduplicate cast and crew entries across providers."""

    return fold_text(name).replace(" ", "")


def is_imdb_id(value: object) -> bool:
    return isinstance(value, str) and bool(IMDB_ID_RE.match(value))


def coerce_id(value: Any) -> str | None:
    """Normalise provider identifiers to non-empty strings."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def coerce_id_list(value: Any) -> list[str]:
    """Normalise a single identifier or a collection of them to a unique list."""

    if value is None:
        return []
    items: Iterable[Any]
    if isinstance(value, (list, tuple, set)):
        items = value
    else:
        items = [value]
    result: list[str] = []
    for item in items:
        text = coerce_id(item)
        if text and text not in result:
            result.append(text)
    return result


def normalize_base_url(value: object | None) -> str | None:
    """Return a base URL without trailing slashes."""

    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text.rstrip("/")


def parse_year(value: Any) -> int | None:
    """Extract a four digit year from provider payloads."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if 1800 <= value <= 2200 else None
    match = re.search(r"(\d{4})", str(value))
    if not match:
        return None
    return int(match.group(1))


_MOVIE_TYPES = frozenset({"movie", "tvmovie", "short", "tvshort", "video"})


def normalize_type(value: Any) -> str:
    """Collapse provider title types onto ``movie`` or ``series``."""

    if not value:
        return "movie"
    return "movie" if str(value).lower() in _MOVIE_TYPES else "series"


def parse_runtime(value: Any) -> int | None:
    """Return the first integer found in a runtime string such as ``"47 min"``."""

    if not value:
        return None
    match = re.search(r"(\d+)", str(value))
    return int(match.group(1)) if match else None


def format_runtime(total_minutes: int | None, content_type: str = "movie", episodes: int = 1) -> str | None:
    """Render minutes as ``"2h 15min"`` or ``"45 min"``.

    Series runtimes above three hours spread over several episodes are
    treated as season totals and divided per episode.
    """

    if not total_minutes or total_minutes <= 0:
        return None
    minutes = total_minutes
    if content_type == "series" and minutes > 180 and episodes > 1:
        minutes = round(minutes / episodes)
    hours, remainder = divmod(minutes, 60)
    if hours and minutes > 60:
        return f"{hours}h {remainder}min" if remainder else f"{hours}h"
    return f"{minutes} min"
