"""Non-destructive merge rules shared by the store and the enrichment layer."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from .models import MULTI_VALUE_NAMESPACES, SINGLE_VALUE_NAMESPACES, TitleRecord
from .utils import coerce_id, coerce_id_list, normalize_type, parse_year, person_key

DEMOGRAPHIC_TERMS = frozenset(
    {"josei", "seinen", "shōnen", "shōjo", "shounen", "shoujo"}
)

META_SOURCE_COMPLETE = "complete"
_META_SOURCE_RANK = {
    "dom": 0,
    "cinemeta": 1,
    "imdbapi": 1,
    "jikan": 0,
    META_SOURCE_COMPLETE: 2,
}

MAX_STARS = 50
MAX_DIRECTORS = 2

_GENRE_SPLIT_RE = re.compile(r"\s+&\s+")
_COMPUTED_FIELDS = frozenset({"id", "last_updated", "is_anime", "anime_reason"})
MERGEABLE_FIELDS = frozenset(TitleRecord.model_fields) - _COMPUTED_FIELDS


@dataclass(frozen=True, slots=True)
class GenreFilter:
    """Configurable genre exclusions (exact terms and substrings)."""

    exact: frozenset[str] = field(default_factory=frozenset)
    contains: tuple[str, ...] = ()

    @classmethod
    def from_settings(cls, settings: Any) -> "GenreFilter":
        return cls(
            exact=frozenset(settings.excluded_genre_terms),
            contains=tuple(settings.excluded_genre_substrings),
        )

    def excludes(self, lowered: str) -> bool:
        if lowered in self.exact:
            return True
        return any(term in lowered for term in self.contains)


NO_GENRE_FILTER = GenreFilter()


def is_empty(value: Any) -> bool:
    """Return ``True`` for values that carry no information."""

    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def normalize_genres(
    existing: Iterable[Any] | None,
    incoming: Iterable[Any] | None,
    genre_filter: GenreFilter = NO_GENRE_FILTER,
) -> list[str]:
    """Union genre lists, splitting compound entries such as ``"Crime & Drama"``.

    Existing genres are already normalised and are always kept; incoming
    entries are split, trimmed, filtered and deduplicated case-insensitively.
    """

    seen: set[str] = set()
    result: list[str] = []
    for genre in existing or []:
        if not isinstance(genre, str):
            continue
        lowered = genre.strip().lower()
        if lowered and lowered not in seen:
            seen.add(lowered)
            result.append(genre.strip())

    for genre in incoming or []:
        if not isinstance(genre, str):
            continue
        for part in _GENRE_SPLIT_RE.split(genre):
            trimmed = part.strip()
            lowered = trimmed.lower()
            if not trimmed or lowered in seen or genre_filter.excludes(lowered):
                continue
            seen.add(lowered)
            result.append(trimmed)
    return result


def merge_unique(
    existing: Iterable[Any] | None,
    incoming: Iterable[Any] | None,
    *,
    exclude: Iterable[str] = (),
    genre_filter: GenreFilter = NO_GENRE_FILTER,
) -> list[str]:
    """Case-insensitive union of string lists; exclusions only apply to new items."""

    excluded = {term.lower() for term in exclude if isinstance(term, str)}
    seen: set[str] = set()
    result: list[str] = []
    for item in existing or []:
        if isinstance(item, str) and item and item.lower() not in seen:
            seen.add(item.lower())
            result.append(item)
    for item in incoming or []:
        if not isinstance(item, str) or not item:
            continue
        lowered = item.lower()
        if lowered in seen or lowered in excluded or genre_filter.excludes(lowered):
            continue
        seen.add(lowered)
        result.append(item)
    return result


def merge_ratings(
    existing: Mapping[str, Any] | None, incoming: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Add or upgrade provider ratings; a missing score never removes one."""

    merged = dict(existing or {})
    for source, data in (incoming or {}).items():
        if isinstance(data, Mapping) and data.get("score") is not None:
            merged[source] = {"score": data.get("score"), "votes": data.get("votes")}
    return merged


def merge_id_lists(existing: Any, incoming: Any) -> list[str]:
    result = coerce_id_list(existing)
    for value in coerce_id_list(incoming):
        if value not in result:
            result.append(value)
    return result


def merge_people(
    existing: Iterable[Mapping[str, Any]] | None,
    incoming: Iterable[Mapping[str, Any]] | None,
) -> list[dict[str, Any]]:
    """Union cast or crew lists by folded name, letting new photos fill gaps."""

    result: list[dict[str, Any]] = []
    index: dict[str, int] = {}
    for person in [*(existing or []), *(incoming or [])]:
        if not isinstance(person, Mapping) or not person.get("name"):
            continue
        key = person_key(str(person["name"]))
        if key in index:
            current = result[index[key]]
            for attribute, value in person.items():
                if not is_empty(value) and is_empty(current.get(attribute)):
                    current[attribute] = value
            continue
        index[key] = len(result)
        result.append(dict(person))
    return result


def merge_credits(
    primary: Iterable[Mapping[str, Any]] | None,
    fallback: Iterable[Mapping[str, Any]] | None,
    max_count: int,
) -> list[dict[str, Any]]:
    """Combine two credit lists, people with an image first, capped at ``max_count``."""

    if max_count <= 0:
        return []
    sources = [list(primary or []), list(fallback or [])]
    result: list[dict[str, Any]] = []
    added: set[str] = set()
    for with_image in (True, False):
        for credits in sources:
            for credit in credits:
                if len(result) >= max_count:
                    return result
                if not isinstance(credit, Mapping) or not credit.get("name"):
                    continue
                if bool(credit.get("image")) != with_image:
                    continue
                key = person_key(str(credit["name"]))
                if key in added:
                    continue
                added.add(key)
                result.append(dict(credit))
    return result


def _merge_generic_list(existing: Any, incoming: list[Any]) -> list[Any]:
    result = list(existing or [])
    for item in incoming:
        if item not in result:
            result.append(item)
    return result


def _normalize_ratings(value: Any) -> dict[str, dict[str, Any]]:
    if not isinstance(value, Mapping):
        return {}
    ratings: dict[str, dict[str, Any]] = {}
    for source, data in value.items():
        if hasattr(data, "model_dump"):
            data = data.model_dump()
        if not isinstance(data, Mapping):
            continue
        score = data.get("score")
        votes = data.get("votes")
        try:
            score = float(score) if score is not None else None
        except (TypeError, ValueError):
            score = None
        try:
            votes = int(votes) if votes is not None else None
        except (TypeError, ValueError):
            votes = None
        ratings[str(source)] = {"score": score, "votes": votes}
    return ratings


def normalize_partial(data: Mapping[str, Any]) -> dict[str, Any]:
    """Return a cleaned partial record ready for merging.

    Unknown keys are dropped, identifiers become strings, set-valued
    namespaces become lists, and ``None`` values are removed.
    """

    partial: dict[str, Any] = {}
    for key, value in data.items():
        if key not in MERGEABLE_FIELDS or value is None:
            continue
        if key == "imdb" or key in SINGLE_VALUE_NAMESPACES:
            value = coerce_id(value)
        elif key in MULTI_VALUE_NAMESPACES:
            value = coerce_id_list(value)
        elif key == "year":
            value = parse_year(value)
        elif key == "type":
            value = normalize_type(value)
        elif key == "ratings":
            value = _normalize_ratings(value)
        elif key in {"genres", "interests"}:
            if not isinstance(value, list):
                continue
            value = [item for item in value if isinstance(item, str)]
        if value is None:
            continue
        partial[key] = value
    return partial


def _meta_source_wins(existing: Any, incoming: Any) -> bool:
    if is_empty(existing):
        return True
    if existing == META_SOURCE_COMPLETE:
        return False
    return _META_SOURCE_RANK.get(incoming, 1) >= _META_SOURCE_RANK.get(existing, 1)


def merge_records(
    existing: Mapping[str, Any],
    incoming: Mapping[str, Any],
    *,
    genre_filter: GenreFilter = NO_GENRE_FILTER,
) -> dict[str, Any]:
    """Merge ``incoming`` into ``existing`` without ever discarding accepted data.

    ``title`` is the single field that is always replaced by a non-empty
    incoming value so that localised titles can overwrite earlier ones.
    """

    merged = dict(existing)
    for key, value in incoming.items():
        if is_empty(value):
            continue
        current = merged.get(key)

        if key == "ratings":
            merged["ratings"] = merge_ratings(current, value)
        elif key == "network":
            if isinstance(value, Mapping) and value.get("name"):
                merged["network"] = dict(value)
        elif key in MULTI_VALUE_NAMESPACES:
            merged[key] = merge_id_lists(current, value)
        elif key == "imdb":
            if is_empty(current):
                merged["imdb"] = value
        elif key == "genres":
            merged["genres"] = normalize_genres(current, value, genre_filter)
        elif key == "interests":
            continue
        elif key in {"stars", "directors"}:
            merged[key] = merge_people(current, value)
        elif key == "title":
            merged["title"] = value
        elif key == "meta_source":
            if _meta_source_wins(current, value):
                merged["meta_source"] = value
        elif key == "last_enriched_private":
            if current is None or (isinstance(value, datetime) and value > current):
                merged[key] = value
        elif isinstance(value, list):
            merged[key] = _merge_generic_list(current, value)
        elif value or is_empty(current):
            merged[key] = value

    if not is_empty(incoming.get("interests")):
        exclude = [*DEMOGRAPHIC_TERMS, *(merged.get("genres") or [])]
        merged["interests"] = merge_unique(
            merged.get("interests"),
            incoming["interests"],
            exclude=exclude,
            genre_filter=genre_filter,
        )
    return merged


def build_new_record(
    incoming: Mapping[str, Any], *, genre_filter: GenreFilter = NO_GENRE_FILTER
) -> dict[str, Any]:
    """Create the initial field set for a title that is not stored yet."""

    base = {key: value for key, value in incoming.items() if key != "interests"}
    record = merge_records({}, base, genre_filter=genre_filter)
    if incoming.get("interests"):
        record["interests"] = merge_unique(
            [],
            incoming["interests"],
            exclude=[*DEMOGRAPHIC_TERMS, *(record.get("genres") or [])],
            genre_filter=genre_filter,
        )
    for namespace in MULTI_VALUE_NAMESPACES:
        record[namespace] = coerce_id_list(record.get(namespace))
    return record


def changed_fields(before: Mapping[str, Any], after: Mapping[str, Any]) -> set[str]:
    """Return the keys whose values differ between two record snapshots."""

    keys = set(before) | set(after)
    return {key for key in keys if before.get(key) != after.get(key)}


def smart_merge(existing: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay provider data onto a working copy during progressive enrichment.

    An existing runtime and demographic marker win, present values are never
    replaced by ``None``, and genres and interests accumulate.
    """

    result = dict(incoming)
    if existing.get("runtime"):
        result["runtime"] = existing["runtime"]
    if existing.get("demographics") and not incoming.get("demographics"):
        result["demographics"] = existing["demographics"]
    for key, value in incoming.items():
        if not isinstance(value, list) and value is None and existing.get(key) is not None:
            result[key] = existing[key]
    for key in ("genres", "interests"):
        if isinstance(existing.get(key), list):
            result[key] = merge_unique(existing[key], incoming.get(key) or [])
    return result
