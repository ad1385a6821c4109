from __future__ import annotations

import re

import pytest

from app.errors import ValidationError
from app.routes_shared import pagination_meta
from app.utils import parse_int_list, parse_string_or_array, public_id_hint, reading_time, word_count


@pytest.mark.parametrize("value,expected", [
    (None, []),
    ("", []),
    ('["fantasy", " epic ", ""]', ["fantasy", "epic"]),
    ("fantasy, epic,,", ["fantasy", "epic"]),
    (["fantasy", "epic, saga"], ["fantasy", "epic", "saga"]),
    ("[not json", ["[not json"]),
])
def test_parse_string_or_array(value, expected):
    assert parse_string_or_array(value) == expected


def test_parse_int_list():
    assert parse_int_list("[1, 2]", "sub_category_ids") == [1, 2]
    assert parse_int_list("3,4", "sub_category_ids") == [3, 4]
    with pytest.raises(ValidationError) as exc:
        parse_int_list("1,x", "sub_category_ids")
    assert exc.value.errors[0]["field"] == "sub_category_ids"


def test_word_count_ignores_markup():
    assert word_count("<p>One <b>two</b> three</p>") == 3
    assert word_count(None) == 0


def test_reading_time_rounds_up():
    assert reading_time(0) == 0
    assert reading_time(1) == 1
    assert reading_time(200) == 1
    assert reading_time(201) == 2


def test_public_id_hint():
    hint = public_id_hint("My Song (live).MP3")
    assert re.fullmatch(r"my_song_live-\d+-\d+", hint)
    assert public_id_hint(None).startswith("file-")


def test_pagination_meta():
    assert pagination_meta(2, 10, 25) == {
        "currentPage": 2,
        "totalPages": 3,
        "totalCount": 25,
        "hasNextPage": True,
        "hasPrevPage": True,
        "limit": 10,
    }
    assert pagination_meta(1, 10, 0)["totalPages"] == 0
