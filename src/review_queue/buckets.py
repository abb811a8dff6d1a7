"""Size buckets: range parsing, non-overlap validation, lookup."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from review_queue.effect import Effect

_COMPARISON_RE = re.compile(r"^(?P<op><=|>=|<|>)\s*(?P<value>\d+)$")
_BETWEEN_RE = re.compile(r"^(?P<low>\d+)\s*-\s*(?P<high>\d+)$")
_EXACT_RE = re.compile(r"^\d+$")


class RangeSyntaxError(ValueError):
    """Raised when a bucket range expression cannot be parsed."""


class BucketOverlapError(ValueError):
    """Raised when two size buckets cover a common line count."""

    def __init__(self, bucket_a: SizeBucket, bucket_b: SizeBucket) -> None:
        self.bucket_a = bucket_a
        self.bucket_b = bucket_b
        super().__init__(
            f"size buckets {bucket_a.range_text!r} and {bucket_b.range_text!r} overlap"
        )


def parse_range(text: str) -> tuple[int | None, int | None]:
    """Parse a range expression into a half-open interval ``[lower, upper)``.

    ``None`` marks an unbounded end. Supported forms: ``<N``, ``<=N``, ``>N``,
    ``>=N``, ``N-M`` (inclusive on both ends) and ``N``.
    """
    if not isinstance(text, str):
        msg = f"range must be a string, got {type(text).__name__}"
        raise RangeSyntaxError(msg)
    s = text.strip()

    if m := _COMPARISON_RE.match(s):
        value = int(m.group("value"))
        match m.group("op"):
            case "<":
                return (None, value)
            case "<=":
                return (None, value + 1)
            case ">":
                return (value + 1, None)
            case _:
                return (value, None)

    if m := _BETWEEN_RE.match(s):
        low, high = int(m.group("low")), int(m.group("high"))
        if high < low:
            msg = f"range upper bound must be >= lower bound: {text!r}"
            raise RangeSyntaxError(msg)
        return (low, high + 1)

    if _EXACT_RE.match(s):
        value = int(s)
        return (value, value + 1)

    msg = f"invalid range {text!r} (expected <N, <=N, >N, >=N, N-M or N)"
    raise RangeSyntaxError(msg)


@dataclass(frozen=True)
class SizeBucket:
    """A line-count range and the effect applied to PRs that fall inside it."""

    range_text: str
    lower: int | None
    upper: int | None
    effect: Effect

    @classmethod
    def from_range(cls, range_text: str, effect: Effect) -> SizeBucket:
        lower, upper = parse_range(range_text)
        return cls(range_text=range_text.strip(), lower=lower, upper=upper, effect=effect)

    def contains(self, size: int) -> bool:
        if self.lower is not None and size < self.lower:
            return False
        return self.upper is None or size < self.upper


def _lower_key(bucket: SizeBucket) -> float:
    return -math.inf if bucket.lower is None else bucket.lower


def validate_buckets(buckets: Iterable[SizeBucket]) -> None:
    """Prove that no two buckets intersect.

    After sorting by lower bound, any overlap shows up between neighbours, so
    only adjacent pairs are compared. Gaps between buckets are allowed.
    """
    ordered = sorted(buckets, key=_lower_key)
    for current, following in zip(ordered, ordered[1:], strict=False):
        upper = math.inf if current.upper is None else current.upper
        if upper > _lower_key(following):
            raise BucketOverlapError(current, following)


def find_bucket(buckets: Sequence[SizeBucket], size: int) -> SizeBucket | None:
    """Return the bucket containing ``size``, or None if it falls in a gap."""
    for bucket in buckets:
        if bucket.contains(size):
            return bucket
    return None
