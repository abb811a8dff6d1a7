"""Tests for plain-text and JSON rendering."""

from __future__ import annotations

import io
import json
from datetime import timedelta

import pytest
from rich.console import Console

from review_queue.effect import parse_effect
from review_queue.fetch import RefreshResult
from review_queue.output import (
    format_age,
    format_breakdown,
    format_table,
    print_table,
    result_to_json,
)
from review_queue.policy import LabelRule, ScoringPolicy
from review_queue.scoring import ScoredPR, score_one
from tests.conftest import NOW, make_pr

POLICY = ScoringPolicy(
    base_score=100,
    age=parse_effect("+1 per 1h"),
    labels=(LabelRule("urgent", parse_effect("x2")),),
)


def _scored(**overrides: object) -> ScoredPR:
    pr = make_pr(**overrides)
    score, breakdown = score_one(pr, POLICY, NOW)
    return ScoredPR(pr=pr, score=score, breakdown=breakdown)


def test_format_age() -> None:
    assert format_age(NOW - timedelta(minutes=45), NOW) == "45m"
    assert format_age(NOW - timedelta(hours=5), NOW) == "5h"
    assert format_age(NOW - timedelta(days=3), NOW) == "3d"
    assert format_age(NOW + timedelta(minutes=5), NOW) == "0m"


def test_format_table_marks_aggregate_sizes() -> None:
    lines = format_table(
        [_scored(changed_lines=42), _scored(number=2, changed_lines=7, size_incomplete=True)],
        NOW,
    )
    assert len(lines) == 4
    assert "NixOS/nixpkgs#12345" in lines[2]
    assert " 42 " in lines[2]
    assert " ~7 " in lines[3]


def test_format_breakdown_chains_scores() -> None:
    item = _scored(labels=frozenset({"urgent"}))
    lines = format_breakdown(item.breakdown)
    assert lines[0].split() == ["base", "100"]
    assert lines[1].split() == ["age", "+5", "→", "105"]
    assert lines[2].split() == ["label", "urgent", "x2", "→", "210"]
    assert lines[3].split() == ["score", "210"]


def test_result_to_json() -> None:
    result = RefreshResult(
        ranked=[_scored()],
        warnings=["Showing cached data"],
        timed_out=True,
    )
    data = json.loads(result_to_json(result))
    assert data["timed_out"] is True
    assert data["warnings"] == ["Showing cached data"]
    (pr,) = data["pull_requests"]
    assert pr["score"] == 105
    assert pr["breakdown"] == [
        {"factor": "age", "operation": "add", "magnitude": 5, "before": 100, "after": 105}
    ]


def test_print_table_colours_terminal_output(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("NO_COLOR", raising=False)
    ranked = [_scored(changed_lines=42), _scored(number=2, draft=True, size_incomplete=True)]
    out = io.StringIO()
    print_table(ranked, Console(file=out, force_terminal=True, color_system="standard"), NOW)
    text = out.getvalue()
    assert "\x1b[" in text
    assert "NixOS/nixpkgs#12345" in text
    assert "[draft]" in text


def test_print_table_is_plain_without_terminal(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FORCE_COLOR", raising=False)
    ranked = [_scored(changed_lines=42)]
    out = io.StringIO()
    print_table(ranked, Console(file=out), NOW)
    assert "\x1b[" not in out.getvalue()
    assert [line.rstrip() for line in out.getvalue().splitlines()] == [
        line.rstrip() for line in format_table(ranked, NOW)
    ]
