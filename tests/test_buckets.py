"""Tests for size bucket ranges and overlap validation."""

from __future__ import annotations

import pytest

from review_queue.buckets import (
    BucketOverlapError,
    RangeSyntaxError,
    SizeBucket,
    find_bucket,
    parse_range,
    validate_buckets,
)
from review_queue.effect import parse_effect


def _bucket(range_text: str, effect: str = "x1") -> SizeBucket:
    return SizeBucket.from_range(range_text, parse_effect(effect))


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("<100", (None, 100)),
        ("<=100", (None, 101)),
        (">500", (501, None)),
        (">=500", (500, None)),
        ("100-500", (100, 501)),
        ("100 - 500", (100, 501)),
        ("42", (42, 43)),
    ],
)
def test_parse_range(text: str, expected: tuple[int | None, int | None]) -> None:
    assert parse_range(text) == expected


@pytest.mark.parametrize("text", ["", "abc", "500-100", "<", "=100", "1.5"])
def test_parse_range_rejects_invalid(text: str) -> None:
    with pytest.raises(RangeSyntaxError):
        parse_range(text)


def test_contains_is_half_open() -> None:
    bucket = _bucket("100-500")
    assert not bucket.contains(99)
    assert bucket.contains(100)
    assert bucket.contains(500)
    assert not bucket.contains(501)


def test_adjacent_buckets_are_accepted() -> None:
    validate_buckets([_bucket("<100"), _bucket("100-500"), _bucket(">500")])


def test_gaps_are_allowed() -> None:
    validate_buckets([_bucket("<10"), _bucket(">1000")])


def test_overlap_names_both_buckets() -> None:
    with pytest.raises(BucketOverlapError, match="'<100' and '50-200' overlap") as exc_info:
        validate_buckets([_bucket("50-200"), _bucket("<100")])
    assert exc_info.value.bucket_a.range_text == "<100"
    assert exc_info.value.bucket_b.range_text == "50-200"


def test_inclusive_bounds_overlap_at_shared_value() -> None:
    with pytest.raises(BucketOverlapError):
        validate_buckets([_bucket("<=100"), _bucket("100-200")])


def test_two_unbounded_upper_buckets_overlap() -> None:
    with pytest.raises(BucketOverlapError):
        validate_buckets([_bucket(">100"), _bucket(">=1000")])


def test_find_bucket() -> None:
    buckets = (_bucket("<100", "x5"), _bucket("100-500"), _bucket(">600", "x0.5"))
    found = find_bucket(buckets, 50)
    assert found is not None
    assert found.range_text == "<100"
    assert find_bucket(buckets, 550) is None
    found = find_bucket(buckets, 10_000)
    assert found is not None
    assert found.effect == parse_effect("x0.5")
