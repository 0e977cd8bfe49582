"""Fallback IMDb id discovery through a free-text title search provider."""

from __future__ import annotations

import logging
import re
import time
import unicodedata
from typing import Any, Callable

from ..cache import MISSING, TTLCache
from ..errors import (
    InvalidArgumentError,
    NetworkError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
)
from .http import JsonProvider

logger = logging.getLogger(__name__)

MAX_RESULTS = 3
SIMILARITY_THRESHOLD = 0.85
LENGTH_RATIO_FLOOR = 0.8
LENGTH_PENALTY = 0.3
YEAR_BONUS = 0.25

_CLEANUP_PATTERNS = [
    re.compile(r"\s*\d+(?:st|nd|rd|th)\s+season", re.IGNORECASE),
    re.compile(r"\s+season\s+\d+", re.IGNORECASE),
    re.compile(r"\s+season\s+\w+", re.IGNORECASE),
    re.compile(r"\s+(?:final|last|complete|current)\s+season", re.IGNORECASE),
    re.compile(r"\s+part\s+\d+", re.IGNORECASE),
    re.compile(r"\s+chapter\s+\d+", re.IGNORECASE),
    re.compile(
        r"\s+(?:director'?s?\s+cut|extended\s+edition|special\s+edition|remastered|uncensored|uncut)",
        re.IGNORECASE,
    ),
    re.compile(r"\s*\(\d{4}\)"),
]
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

_DOUBLE_VOWELS = {
    "ā": "aa", "â": "aa", "Ā": "aa", "Â": "aa",
    "ī": "ii", "î": "ii", "Ī": "ii", "Î": "ii",
    "ū": "uu", "û": "uu", "Ū": "uu", "Û": "uu",
    "ē": "ee", "ê": "ee", "Ē": "ee", "Ê": "ee",
    "ō": "oo", "ô": "oo", "Ō": "oo", "Ô": "oo",
}
_OU_VOWELS = {**_DOUBLE_VOWELS, "ō": "ou", "ô": "ou", "Ō": "ou", "Ô": "ou"}


def clean_title_for_search(title: str) -> str:
    """Strip season, part, edition and year decorations and title-case the rest."""

    cleaned = str(title)
    for pattern in _CLEANUP_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = cleaned.strip()
    return " ".join(word[:1].upper() + word[1:].lower() for word in cleaned.split())


def romanization_variants(title: str) -> list[str]:
    """Return ``title`` plus spellings with long vowels expanded (ō to oo and ou)."""

    if not title:
        return []
    title = unicodedata.normalize("NFC", title)
    variants = [title]
    for table in (_DOUBLE_VOWELS, _OU_VOWELS):
        expanded = "".join(table.get(char, char) for char in title)
        if expanded not in variants:
            variants.append(expanded)
    return variants


def _fold(value: str) -> str:
    value = unicodedata.normalize("NFD", value)
    value = "".join(char for char in value if not unicodedata.combining(char))
    return _NON_ALNUM_RE.sub("", value.lower())


def _trigrams(value: str) -> set[str]:
    padded = f"__{value}__"
    return {padded[index : index + 3] for index in range(len(padded) - 2)}


def dice_similarity(first: str, second: str) -> float:
    """Sørensen-Dice coefficient over padded character trigrams."""

    if not first or not second:
        return 0.0
    left, right = _fold(first), _fold(second)
    if left == right:
        return 1.0
    if len(left) < 2 or len(right) < 2:
        return 0.0
    left_grams, right_grams = _trigrams(left), _trigrams(right)
    overlap = len(left_grams & right_grams)
    return (2.0 * overlap) / (len(left_grams) + len(right_grams))


def select_best_match(
    results: list[dict[str, Any]],
    target_title: str,
    year: int | None = None,
    alternate_title: str | None = None,
) -> str | None:
    """Return the IMDb id of the best scoring search hit above the threshold."""

    cleaned_alt = clean_title_for_search(alternate_title) if alternate_title else None
    best_id: str | None = None
    best_score = 0.0

    for result in results:
        result_title = result.get("#TITLE")
        imdb_id = result.get("#IMDB_ID")
        if not result_title or not imdb_id:
            continue

        score = 0.0
        source_length = len(target_title)
        for candidate in romanization_variants(str(result_title)):
            main_score = dice_similarity(target_title, candidate)
            if main_score > score:
                score = main_score
                source_length = len(target_title)
            if cleaned_alt:
                alt_score = dice_similarity(cleaned_alt, candidate)
                if alt_score > score:
                    score = alt_score
                    source_length = len(cleaned_alt)

        result_length = len(str(result_title))
        longest = max(source_length, result_length) or 1
        if min(source_length, result_length) / longest < LENGTH_RATIO_FLOOR:
            score -= LENGTH_PENALTY

        result_year = result.get("#YEAR")
        if year and result_year:
            try:
                if abs(int(year) - int(result_year)) <= 1:
                    score += YEAR_BONUS
            except (TypeError, ValueError):
                pass

        logger.debug("Title search candidate %r (%s) scored %.2f", result_title, result_year, score)
        if score > best_score:
            best_score = score
            best_id = str(imdb_id)

    if best_score >= SIMILARITY_THRESHOLD:
        return best_id
    logger.info("No title search match above %.2f for %r", SIMILARITY_THRESHOLD, target_title)
    return None


class TitleSearchClient(JsonProvider):
    """Search titles by name and pick the IMDb id that best matches."""

    name = "title_search"

    def __init__(
        self,
        *args: Any,
        max_entries: int = 5_000,
        ttl_seconds: float = 86_400,
        clock: Callable[[], float] = time.monotonic,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        self._cache = TTLCache(max_entries, ttl_seconds, clock=clock)

    def get_cache_stats(self) -> dict[str, Any]:
        return self._cache.stats().as_dict()

    async def search_imdb_id(
        self,
        title: str,
        year: int | None = None,
        *,
        priority: bool = False,
        alternate_title: str | None = None,
    ) -> str | None:
        """Return the IMDb id matching ``title`` or ``None``."""

        if not isinstance(title, str) or not title.strip():
            raise InvalidArgumentError("Invalid title: must be a non-empty string")

        cleaned = clean_title_for_search(title)
        if not cleaned:
            return None
        cache_key = f"{cleaned}_{year}" if year else cleaned
        cached = self._cache.get(cache_key)
        if cached is not MISSING:
            return cached

        try:
            payload = await self._get_json("/search", params={"q": cleaned}, priority=priority)
        except (RateLimitedError, ProviderTimeoutError, NetworkError) as exc:
            logger.warning("Title search skipped for %r: %s", title, exc)
            return None
        except ProviderError as exc:
            logger.warning("Title search failed for %r: %s", title, exc)
            self._cache.set(cache_key, None)
            return None

        results = payload.get("description") if isinstance(payload, dict) else None
        if not isinstance(payload, dict) or not payload.get("ok") or not isinstance(results, list):
            logger.warning("Invalid title search response for %r", cleaned)
            self._cache.set(cache_key, None)
            return None
        if not results:
            self._cache.set(cache_key, None)
            return None

        entries = [entry for entry in results[:MAX_RESULTS] if isinstance(entry, dict)]
        best = select_best_match(entries, cleaned, year, alternate_title)
        self._cache.set(cache_key, best)
        return best
