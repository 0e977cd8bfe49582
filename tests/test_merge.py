"""Tests for the non-destructive merge rules."""

from __future__ import annotations

from datetime import datetime

from titlexref.merge import (
    GenreFilter,
    build_new_record,
    changed_fields,
    merge_credits,
    merge_records,
    normalize_genres,
    normalize_partial,
    smart_merge,
)


def test_compound_genres_are_split_and_deduplicated() -> None:
    genres = normalize_genres(["Drama"], ["Crime & Drama", "crime", "Thriller"])

    assert genres == ["Drama", "Crime", "Thriller"]


def test_genre_filter_only_applies_to_incoming_entries() -> None:
    genre_filter = GenreFilter(exact=frozenset({"talk-show"}), contains=("news",))

    genres = normalize_genres(["Talk-Show"], ["Talk-Show", "News & Politics", "Comedy"], genre_filter)

    assert genres == ["Talk-Show", "Politics", "Comedy"]


def test_null_score_never_replaces_an_accepted_rating() -> None:
    existing = {"ratings": {"imdb": {"score": 8.1, "votes": 100}}}

    merged = merge_records(existing, {"ratings": {"imdb": {"score": None, "votes": 5}}})

    assert merged["ratings"]["imdb"] == {"score": 8.1, "votes": 100}


def test_accepted_rating_replaces_score_and_votes_together() -> None:
    existing = {"ratings": {"imdb": {"score": 8.1, "votes": 100}}}

    merged = merge_records(
        existing,
        {"ratings": {"imdb": {"score": 8.4, "votes": None}, "mal": {"score": 7.9, "votes": 12}}},
    )

    assert merged["ratings"]["imdb"] == {"score": 8.4, "votes": None}
    assert merged["ratings"]["mal"] == {"score": 7.9, "votes": 12}


def test_lists_only_grow_and_alternate_ids_union() -> None:
    existing = {"mal": ["1"], "genres": ["Drama"], "interests": ["Heist"], "plot": "Old plot"}

    merged = merge_records(
        existing,
        {"mal": ["2", "1"], "genres": ["Action"], "interests": ["Drama", "Seinen", "Prison"], "plot": None},
    )

    assert merged["mal"] == ["1", "2"]
    assert merged["genres"] == ["Drama", "Action"]
    assert merged["interests"] == ["Heist", "Prison"]
    assert merged["plot"] == "Old plot"


def test_title_is_always_overwritten_but_imdb_is_not() -> None:
    merged = merge_records(
        {"title": "Shingeki no Kyojin", "imdb": "tt2560140"},
        {"title": "Attack on Titan", "imdb": "tt9999999"},
    )

    assert merged["title"] == "Attack on Titan"
    assert merged["imdb"] == "tt2560140"


def test_scalars_prefer_truthy_incoming_values() -> None:
    merged = merge_records(
        {"runtime": "47 min", "seasons": 5, "tagline": ""},
        {"runtime": "", "seasons": 0, "tagline": "Remember my name"},
    )

    assert merged["runtime"] == "47 min"
    assert merged["seasons"] == 5
    assert merged["tagline"] == "Remember my name"


def test_meta_source_never_moves_backwards() -> None:
    complete = merge_records({"meta_source": "complete"}, {"meta_source": "cinemeta"})
    upgraded = merge_records({"meta_source": "dom"}, {"meta_source": "imdbapi"})
    jikan = merge_records({"meta_source": "cinemeta"}, {"meta_source": "jikan"})

    assert complete["meta_source"] == "complete"
    assert upgraded["meta_source"] == "imdbapi"
    assert jikan["meta_source"] == "cinemeta"


def test_private_enrichment_timestamp_keeps_latest() -> None:
    earlier = datetime(2024, 1, 1)
    later = datetime(2024, 2, 1)

    merged = merge_records({"last_enriched_private": later}, {"last_enriched_private": earlier})

    assert merged["last_enriched_private"] == later


def test_people_are_merged_by_folded_name() -> None:
    merged = merge_records(
        {"stars": [{"name": "Zoë Kravitz", "image": None}]},
        {"stars": [{"name": "Zoe Kravitz", "image": "https://img/zoe.jpg"}, {"name": "Paul Dano"}]},
    )

    assert merged["stars"] == [
        {"name": "Zoë Kravitz", "image": "https://img/zoe.jpg"},
        {"name": "Paul Dano"},
    ]


def test_normalize_partial_coerces_identifiers() -> None:
    partial = normalize_partial(
        {"imdb": "tt0903747", "tmdb": 1396, "mal": 5114, "year": "2008-2013", "type": "tvSeries", "unknown": 1, "plot": None}
    )

    assert partial == {"imdb": "tt0903747", "tmdb": "1396", "mal": ["5114"], "year": 2008, "type": "series"}


def test_build_new_record_keeps_multi_value_ids_as_lists() -> None:
    record = build_new_record({"title": "Frieren", "anilist": ["154587"], "interests": ["Fantasy"], "genres": ["Fantasy"]})

    assert record["anilist"] == ["154587"]
    assert record["mal"] == []
    assert "interests" not in record or record["interests"] == []


def test_changed_fields_reports_differences() -> None:
    assert changed_fields({"a": 1, "b": [1]}, {"a": 1, "b": [1, 2], "c": "x"}) == {"b", "c"}


def test_merge_credits_prefers_people_with_images() -> None:
    merged = merge_credits(
        [{"name": "A"}, {"name": "B", "image": "b.jpg"}],
        [{"name": "C", "image": "c.jpg"}, {"name": "a", "image": "a.jpg"}],
        3,
    )

    assert [person["name"] for person in merged] == ["B", "C", "a"]


def test_smart_merge_keeps_existing_runtime_and_values() -> None:
    merged = smart_merge(
        {"runtime": "2h 15min", "plot": "Kept", "genres": ["Drama"]},
        {"runtime": "135 min", "plot": None, "genres": ["Crime"]},
    )

    assert merged["runtime"] == "2h 15min"
    assert merged["plot"] == "Kept"
    assert merged["genres"] == ["Drama", "Crime"]
