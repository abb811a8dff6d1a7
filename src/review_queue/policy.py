"""Scoring policies: value types, global/per-query resolution, query assignment."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Protocol

from review_queue.buckets import SizeBucket
from review_queue.effect import parse_effect

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from review_queue.effect import Effect

DEFAULT_BASE_SCORE = 100.0


@dataclass(frozen=True)
class LabelRule:
    """An effect applied when a PR carries the named label (case-insensitive)."""

    name: str
    effect: Effect

    @property
    def key(self) -> str:
        return self.name.lower()


@dataclass(frozen=True)
class SizePolicy:
    exclude: tuple[str, ...] = ()
    buckets: tuple[SizeBucket, ...] = ()


@dataclass(frozen=True)
class ScoringPolicy:
    """A fully resolved scoring configuration. ``None`` fields are skipped when scoring."""

    base_score: float = DEFAULT_BASE_SCORE
    age: Effect | None = None
    approvals: Effect | None = None
    size: SizePolicy | None = None
    labels: tuple[LabelRule, ...] = ()
    previously_reviewed: Effect | None = None


@dataclass(frozen=True)
class SizeOverride:
    exclude: tuple[str, ...] | None = None
    buckets: tuple[SizeBucket, ...] | None = None


@dataclass(frozen=True)
class PolicyOverride:
    """A partial policy from a query's ``scoring`` section. ``None`` means "inherit"."""

    base_score: float | None = None
    age: Effect | None = None
    approvals: Effect | None = None
    size: SizeOverride | None = None
    labels: tuple[LabelRule, ...] | None = None
    previously_reviewed: Effect | None = None


@dataclass(frozen=True)
class Query:
    """A saved search and the policy its PRs are scored with."""

    name: str
    query: str
    override: PolicyOverride | None = None
    policy: ScoringPolicy = field(default_factory=ScoringPolicy)


DEFAULT_POLICY = ScoringPolicy(
    base_score=DEFAULT_BASE_SCORE,
    age=parse_effect("+1 per 1h"),
    approvals=parse_effect("+10 per 1"),
    size=SizePolicy(
        buckets=(
            SizeBucket.from_range("<100", parse_effect("x5")),
            SizeBucket.from_range("100-500", parse_effect("x1")),
            SizeBucket.from_range(">500", parse_effect("x0.5")),
        ),
    ),
)


def merge_labels(
    global_labels: Sequence[LabelRule],
    override_labels: Sequence[LabelRule],
) -> tuple[LabelRule, ...]:
    """Merge label rules by lower-cased name.

    An override rule replaces the effect of the global rule with the same name
    in place; override-only names are appended in override order.
    """
    overrides = {rule.key: rule for rule in override_labels}
    merged = [
        replace(rule, effect=overrides[rule.key].effect) if rule.key in overrides else rule
        for rule in global_labels
    ]
    seen = {rule.key for rule in global_labels}
    for rule in override_labels:
        if rule.key not in seen:
            merged.append(rule)
            seen.add(rule.key)
    return tuple(merged)


def _merge_size(global_size: SizePolicy | None, override: SizeOverride | None) -> SizePolicy | None:
    if override is None:
        return global_size
    base = global_size or SizePolicy()
    return SizePolicy(
        exclude=base.exclude if override.exclude is None else override.exclude,
        # An empty override bucket list inherits the global buckets.
        buckets=override.buckets if override.buckets else base.buckets,
    )


def resolve(global_policy: ScoringPolicy, override: PolicyOverride | None = None) -> ScoringPolicy:
    """Merge a query's override into the global policy, field by field."""
    if override is None:
        return global_policy

    def pick[T](value: T | None, fallback: T) -> T:
        return fallback if value is None else value

    return ScoringPolicy(
        base_score=pick(override.base_score, global_policy.base_score),
        age=pick(override.age, global_policy.age),
        approvals=pick(override.approvals, global_policy.approvals),
        size=_merge_size(global_policy.size, override.size),
        labels=(
            global_policy.labels
            if override.labels is None
            else merge_labels(global_policy.labels, override.labels)
        ),
        previously_reviewed=pick(override.previously_reviewed, global_policy.previously_reviewed),
    )


class _HasUrl(Protocol):
    @property
    def url(self) -> str: ...


def assign_queries[T: _HasUrl](results: Iterable[tuple[str, Sequence[T]]]) -> list[tuple[str, T]]:
    """Deduplicate PRs across queries; the first query (declaration order) wins.

    ``results`` yields ``(query_name, prs)`` in declaration order. Returns
    ``(query_name, pr)`` pairs in query order, then fetch order.
    """
    seen: set[str] = set()
    assigned: list[tuple[str, T]] = []
    for name, prs in results:
        for pr in prs:
            if pr.url in seen:
                continue
            seen.add(pr.url)
            assigned.append((name, pr))
    return assigned
