from __future__ import annotations

import pytest

from fakes import email_field, make_record, text_field
from recordshift.duplicates import (
    DuplicateMatcher,
    KeepStrategy,
    apply_keep_strategy,
    build_duplicate_key,
    canonical_number,
    detect_duplicate_groups,
    normalize_match_value,
)
from recordshift.platform import Record


@pytest.mark.parametrize(
    ("value", "field_type", "expected"),
    [
        ("  John.Doe@Example.COM ", "text", "john.doe@example.com"),
        ("42.50", "number", "42.5"),
        (42.0, "number", "42"),
        ("abc", "number", ""),
        ([3, 1, 2], "category", "1,2,3"),
        ([{"value": "B@x.io"}, {"value": " a@x.io"}], "email", "a@x.io,b@x.io"),
        ({"start": "2024-01-01 00:00:00", "end": None}, "date", "2024-01-01 00:00:00"),
        ({"value": "10.00", "currency": "EUR"}, "money", "10.00"),
        (True, "text", "true"),
        (None, "text", ""),
    ],
)
def test_normalize_match_value(value: object, field_type: str, expected: str) -> None:
    assert normalize_match_value(value, field_type) == expected


@pytest.mark.parametrize(
    ("value", "field_type"),
    [
        (" Mixed Case ", "text"),
        ("007.10", "number"),
        ([5, 3, 9], "app"),
        ([{"value": "X@Y.z"}], "email"),
        ("+1 555 0100", "phone"),
    ],
)
def test_normalization_is_idempotent(value: object, field_type: str) -> None:
    once = normalize_match_value(value, field_type)
    assert normalize_match_value(once, field_type) == once


def test_list_normalization_ignores_order() -> None:
    assert normalize_match_value([9, 2, 5], "contact") == normalize_match_value([5, 9, 2], "contact")


def test_canonical_number_and_key() -> None:
    assert canonical_number("1e3") == "1000"
    assert canonical_number(float("nan")) == ""
    assert build_duplicate_key("app-1", "email", "a@x.io") == "app-1:email:a@x.io"


def test_matcher_caches_hits_and_misses() -> None:
    lookups: list[str] = []
    existing = Record(id=7)

    def lookup(normalized: str) -> Record | None:
        lookups.append(normalized)
        return existing if normalized == "known" else None

    matcher = DuplicateMatcher()
    first = matcher.check(lookup, "app", "title", " Known ", "text")
    second = matcher.check(lookup, "app", "title", "KNOWN", "text")
    miss = matcher.check(lookup, "app", "title", "other", "text")
    miss_again = matcher.check(lookup, "app", "title", "Other", "text")

    assert first.is_duplicate and not first.from_cache
    assert second.is_duplicate and second.from_cache
    assert second.existing is existing
    assert not miss.is_duplicate and not miss_again.is_duplicate
    assert miss_again.from_cache
    assert lookups == ["known", "other"]

    stats = matcher.stats()
    assert (stats.hits, stats.misses, stats.size) == (2, 2, 2)
    assert stats.hit_rate == 0.5

    matcher.clear()
    assert matcher.stats().size == 0


def test_matcher_remembers_records_written_during_run() -> None:
    matcher = DuplicateMatcher()
    matcher.remember("app", "title", "fresh", Record(id=99))
    result = matcher.check(lambda _value: None, "app", "title", "Fresh", "text")
    assert result.is_duplicate
    assert result.existing is not None and result.existing.id == 99


def test_empty_values_are_never_duplicates() -> None:
    matcher = DuplicateMatcher()
    result = matcher.check(lambda _value: Record(id=1), "app", "title", "   ", "number")
    assert result.is_duplicate is False
    assert matcher.stats().misses == 0


def test_detection_groups_by_normalized_value_and_orders_members() -> None:
    records = [
        make_record(1, "2024-03-01 10:00:00", text_field("name", "Acme")),
        make_record(2, "2024-01-01 10:00:00", text_field("name", " ACME ")),
        make_record(3, "2024-02-01 10:00:00", text_field("name", "Globex")),
        make_record(4, "not-a-date", text_field("name", "acme")),
        make_record(5, "2024-01-05 10:00:00", text_field("name", "Initech")),
        make_record(6, "2024-01-06 10:00:00", text_field("name", "initech")),
        make_record(7, "2024-01-07 10:00:00"),
    ]

    groups = detect_duplicate_groups(records, "name")

    assert [group.match_value for group in groups] == ["acme", "initech"]
    assert [item.item_id for item in groups[0].items] == [2, 1, 4]
    assert [item.item_id for item in groups[1].items] == [5, 6]


def test_keep_strategy_picks_oldest_or_newest() -> None:
    records = [
        make_record(10, "2024-01-02 00:00:00", email_field("email", "a@x.io")),
        make_record(11, "2024-01-01 00:00:00", email_field("email", "A@X.io")),
        make_record(12, "2024-01-03 00:00:00", email_field("email", "a@x.io ")),
    ]
    groups = detect_duplicate_groups(records, "email")

    oldest = apply_keep_strategy(groups, KeepStrategy.OLDEST)[0]
    newest = apply_keep_strategy(groups, "newest")[0]

    assert oldest.keep_item_id == 11
    assert oldest.delete_item_ids == [10, 12]
    assert newest.keep_item_id == 12
    assert newest.delete_item_ids == [11, 10]

    with pytest.raises(ValueError):
        apply_keep_strategy(groups, KeepStrategy.MANUAL)
