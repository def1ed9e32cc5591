"""Tests for utask.normalize: canonical form and content-derived ids."""

import hashlib

import pytest

from utask.normalize import (
    ID_LENGTH,
    CanonicalTask,
    canonical_tags,
    derive_id,
    is_full_id,
    normalize_input,
    normalize_tags,
)
from utask.types import TaskInput


class TestNormalizeTags:

    def test_lowercases_trims_and_dedupes(self):
        assert normalize_tags([" Work", "URGENT ", "work", "", "  "]) == ["work", "urgent"]

    def test_keeps_first_seen_order(self):
        assert normalize_tags(["b", "a", "B"]) == ["b", "a"]

    def test_none_is_empty(self):
        assert normalize_tags(None) == []

    def test_canonical_tags_sorted(self):
        assert canonical_tags(["ops", "Alpha", "ops"]) == ["alpha", "ops"]


class TestCanonicalJson:

    def test_field_order_and_compact_separators(self):
        c = CanonicalTask(text="Buy milk", tags=["errand"], priority=1, estimate_minutes=5)
        assert c.to_json() == (
            '{"text":"Buy milk","tags":["errand"],"priority":1,"estimate_minutes":5}'
        )

    def test_empty_tags_render_as_list(self):
        assert CanonicalTask(text="x").to_json() == (
            '{"text":"x","tags":[],"priority":0,"estimate_minutes":0}'
        )

    def test_html_characters_escaped(self):
        c = CanonicalTask(text="a<b>&c")
        assert '"a\\u003cb\\u003e\\u0026c"' in c.to_json()

    def test_line_separators_escaped(self):
        c = CanonicalTask(text="a\u2028b\u2029c")
        assert "\\u2028" in c.to_json()
        assert "\\u2029" in c.to_json()

    def test_non_ascii_kept_literal(self):
        assert '"café"' in CanonicalTask(text="café").to_json()


class TestDeriveId:

    def test_is_sha512_of_canonical_json(self):
        c = CanonicalTask(text="Buy milk", tags=["errand"])
        expected = hashlib.sha512(c.to_json().encode("utf-8")).hexdigest()
        assert derive_id(c) == expected
        assert len(derive_id(c)) == ID_LENGTH

    def test_tag_order_case_and_whitespace_do_not_matter(self):
        _, a = normalize_input(TaskInput("  Ship it \n", ["Release", "ops"]))
        _, b = normalize_input(TaskInput("Ship it", ["OPS", " release", "ops"]))
        assert a == b

    def test_text_change_changes_id(self):
        _, a = normalize_input(TaskInput("Ship it", ["ops"]))
        _, b = normalize_input(TaskInput("Ship it now", ["ops"]))
        assert a != b

    def test_tag_change_changes_id(self):
        _, a = normalize_input(TaskInput("Ship it", ["ops"]))
        _, b = normalize_input(TaskInput("Ship it", ["ops", "urgent"]))
        assert a != b

    def test_priority_and_estimate_are_part_of_identity(self):
        _, a = normalize_input(TaskInput("Ship it", priority=1))
        _, b = normalize_input(TaskInput("Ship it", priority=2))
        _, c = normalize_input(TaskInput("Ship it", priority=1, estimate_minutes=30))
        assert len({a, b, c}) == 3

    def test_inner_whitespace_is_significant(self):
        _, a = normalize_input(TaskInput("Ship  it"))
        _, b = normalize_input(TaskInput("Ship it"))
        assert a != b

    def test_canonical_result(self):
        canonical, _ = normalize_input(TaskInput(" Task ", ["B", "a"], 2, 15))
        assert canonical == CanonicalTask("Task", ["a", "b"], 2, 15)


class TestIsFullId:

    def test_accepts_128_lowercase_hex(self):
        _, id = normalize_input(TaskInput("x"))
        assert is_full_id(id)

    @pytest.mark.parametrize("value", ["", "abc", "A" * 128, "g" * 128, "a" * 127])
    def test_rejects_others(self, value):
        assert not is_full_id(value)
