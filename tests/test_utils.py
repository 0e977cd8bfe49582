from titlexref.utils import (
    coerce_id,
    coerce_id_list,
    fold_text,
    format_runtime,
    is_imdb_id,
    normalize_type,
    parse_runtime,
    parse_year,
    person_key,
)


def test_fold_text_and_person_key():
    assert fold_text("  Amélie  Poulain! ") == "amelie poulain"
    assert person_key("Tetsurô Araki") == person_key("tetsuro araki")


def test_is_imdb_id():
    assert is_imdb_id("tt0903747")
    assert not is_imdb_id("0903747")
    assert not is_imdb_id(903747)


def test_coerce_ids():
    assert coerce_id(1396.0) == "1396"
    assert coerce_id(" 42 ") == "42"
    assert coerce_id(True) is None
    assert coerce_id_list(["1", 1, None, "2"]) == ["1", "2"]


def test_parse_year_and_type():
    assert parse_year("2008–2013") == 2008
    assert parse_year(1700) is None
    assert parse_year("unknown") is None
    assert normalize_type("tvMiniSeries") == "series"
    assert normalize_type("tvMovie") == "movie"
    assert normalize_type(None) == "movie"


def test_runtime_formatting():
    assert parse_runtime("47 min") == 47
    assert parse_runtime("") is None
    assert format_runtime(135) == "2h 15min"
    assert format_runtime(120) == "2h"
    assert format_runtime(60) == "60 min"
    assert format_runtime(540, "series", 10) == "54 min"
    assert format_runtime(0) is None
