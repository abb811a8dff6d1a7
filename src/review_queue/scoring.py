"""Priority scoring engine for pull requests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from review_queue.buckets import find_bucket
from review_queue.effect import Operation, apply, evaluate

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime, timedelta

    from review_queue.effect import Effect
    from review_queue.models import PullRequest
    from review_queue.policy import ScoringPolicy


@dataclass(frozen=True)
class BreakdownEntry:
    """One applied factor: what it did and the score on either side of it."""

    factor: str
    operation: Operation
    magnitude: float
    before: float
    after: float


@dataclass(frozen=True)
class ScoreBreakdown:
    base_score: float
    entries: tuple[BreakdownEntry, ...]
    final_score: float


@dataclass(frozen=True)
class ScoredPR:
    pr: PullRequest
    score: float
    breakdown: ScoreBreakdown


class _Trace:
    def __init__(self, base: float) -> None:
        self.score = base
        self.entries: list[BreakdownEntry] = []

    def step(self, factor: str, effect: Effect, units: timedelta | float | None = None) -> None:
        before = self.score
        self.score = apply(effect, before, units)
        self.entries.append(
            BreakdownEntry(
                factor=factor,
                operation=effect.operation,
                magnitude=evaluate(effect, units),
                before=before,
                after=self.score,
            )
        )


def score_one(
    pr: PullRequest,
    policy: ScoringPolicy,
    now: datetime | None = None,
) -> tuple[float, ScoreBreakdown]:
    """Compute (score, breakdown) for one PR.

    Factors apply in a fixed order: age, approvals, size, labels (each matching
    label compounds, in policy order), previously reviewed. Factors the policy
    leaves unset produce no breakdown entry.
    """
    trace = _Trace(policy.base_score)

    if policy.age is not None:
        trace.step("age", policy.age, pr.age(now))

    if policy.approvals is not None:
        trace.step("approvals", policy.approvals, pr.approvals)

    if policy.size is not None:
        bucket = find_bucket(policy.size.buckets, pr.changed_lines)
        if bucket is not None:
            trace.step(f"size {bucket.range_text}", bucket.effect)

    if policy.labels:
        pr_labels = {label.lower() for label in pr.labels}
        for rule in policy.labels:
            if rule.key in pr_labels:
                trace.step(f"label {rule.name}", rule.effect)

    if policy.previously_reviewed is not None and pr.reviewed_by_me:
        trace.step("previously reviewed", policy.previously_reviewed)

    breakdown = ScoreBreakdown(
        base_score=policy.base_score,
        entries=tuple(trace.entries),
        final_score=trace.score,
    )
    return trace.score, breakdown


def rank(scored: Iterable[ScoredPR]) -> list[ScoredPR]:
    """Sort by score descending; ties keep their input order."""
    return sorted(scored, key=lambda s: -s.score)


def display_score(score: float) -> str:
    """Format a score for list display: floored at zero, compacted above 1000."""
    score = max(score, 0.0)
    if score >= 1_000_000:
        return f"{score / 1_000_000:.1f}M"
    if score >= 1_000:
        return f"{score / 1_000:.1f}k"
    return f"{score:.0f}"
