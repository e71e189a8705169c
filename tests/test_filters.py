"""Shared list helpers."""

from __future__ import annotations

import pytest

import filters


@pytest.mark.parametrize("value, unset", [
    (None, True), ("", True), ("all", True), ("ALL", True), ("notes", False), (0, False),
])
def test_is_unset(value, unset):
    assert filters.is_unset(value) is unset


def test_as_list_accepts_bare_and_wrapped_lists():
    assert filters.as_list([1]) == [1]
    assert filters.as_list({"exams": [2]}, "exams") == [2]
    assert filters.as_list({"items": [3]}, "exams") == [3]
    assert filters.as_list({"count": 0}) == []
    assert filters.as_list(None) == []


def test_split_csv():
    assert filters.split_csv(" a, b,,c ") == ["a", "b", "c"]
    assert filters.split_csv(["x ", " "]) == ["x"]
    assert filters.split_csv(None) == []


def test_text_matches_strings_and_lists():
    assert filters.text_matches("", "anything")
    assert filters.text_matches("kangra", "District KANGRA")
    assert filters.text_matches("hpas", None, ["hppsc", "HPAS"])
    assert not filters.text_matches("mandi", "Shimla", ["kullu"])


def test_field_helpers():
    item = {"status": "active", "exam_focus": ["HPAS", "Clerk"]}
    assert filters.field_equals(item, "status", "all")
    assert not filters.field_equals(item, "status", "draft")
    assert filters.field_contains(item, "exam_focus", "Clerk")
    assert not filters.field_contains(item, "exam_focus", "JBT")


def test_parse_timestamp():
    assert filters.parse_timestamp("2024-05-01T10:00:00Z").utcoffset().total_seconds() == 0
    assert filters.parse_timestamp("not a date") is None
    assert filters.parse_timestamp("") is None


class TestPaginate:
    def test_first_page(self):
        page = filters.paginate(list(range(25)), 0, 12)
        assert page["items"] == list(range(12))
        assert page["has_more"] is True
        assert page["next_offset"] == 12
        assert page["total"] == 25

    def test_last_page(self):
        page = filters.paginate(list(range(25)), 24, 12)
        assert page["items"] == [24]
        assert page["has_more"] is False
        assert page["next_offset"] is None

    def test_offset_past_end(self):
        page = filters.paginate([1, 2], 10, 12)
        assert page["items"] == []
        assert page["has_more"] is False


def test_count_by():
    assert filters.count_by([{"t": "pdf"}, {"t": "pdf"}, {}], "t") == {"pdf": 2, "unknown": 1}


def test_as_utc_treats_naive_as_utc():
    naive = filters.parse_timestamp("2024-05-01T10:00:00")
    aware = filters.parse_timestamp("2024-05-01T15:30:00+05:30")
    assert filters.as_utc(naive) == filters.as_utc(aware)
    assert filters.as_utc(naive).utcoffset().total_seconds() == 0
