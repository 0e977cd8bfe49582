"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from titlexref.config import Settings
from titlexref.merge import GenreFilter


def test_defaults_match_documented_values() -> None:
    """Cache sizes, TTLs and the staleness threshold should have sane defaults."""

    settings = Settings(_env_file=None)

    assert settings.conversion_cache_size == 10_000
    assert settings.conversion_cache_ttl_seconds == 86_400
    assert settings.stale_threshold_seconds == 86_400
    assert settings.private_enrichment_ttl_seconds == 7 * 86_400
    assert settings.database_url.startswith("sqlite+aiosqlite://")
    assert settings.tmdb_api_key is None


def test_genre_exclusions_are_parsed_from_comma_separated_values() -> None:
    """Exclusion lists should be trimmed, lower-cased and deduplicated."""

    settings = Settings(
        _env_file=None,
        EXCLUDED_GENRE_TERMS=" Talk-Show, News ,news,",
        EXCLUDED_GENRE_SUBSTRINGS=["Reality"],
    )

    assert settings.excluded_genre_terms == ("talk-show", "news")
    assert settings.excluded_genre_substrings == ("reality",)

    genre_filter = GenreFilter.from_settings(settings)
    assert genre_filter.excludes("news")
    assert genre_filter.excludes("reality-tv")
    assert not genre_filter.excludes("drama")


def test_blank_api_keys_are_treated_as_missing() -> None:
    """Whitespace-only keys should not count as configured."""

    settings = Settings(_env_file=None, TMDB_API_KEY="   ", MDBLIST_API_KEY=" key ")

    assert settings.tmdb_api_key is None
    assert settings.mdblist_api_key == "key"


def test_conflict_retry_limit_is_bounded() -> None:
    """Out of range retry limits should fail validation."""

    with pytest.raises(ValidationError):
        Settings(_env_file=None, CONFLICT_RETRY_LIMIT=0)
