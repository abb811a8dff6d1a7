"""Plain-text and JSON rendering of ranked pull requests."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.text import Text

from review_queue.effect import Operation
from review_queue.scoring import display_score

if TYPE_CHECKING:
    from review_queue.fetch import RefreshResult
    from review_queue.scoring import ScoreBreakdown, ScoredPR

COL_TITLE_MAX = 48
COL_REF_MAX = 34
COL_QUERY_MAX = 20


def _truncate(text: str, width: int) -> str:
    return text if len(text) <= width else text[: width - 1] + "…"


def format_age(created_at: datetime, now: datetime | None = None) -> str:
    """Compact age such as ``45m``, ``5h`` or ``3d``."""
    now = now or datetime.now(UTC)
    minutes = max(int((now - created_at).total_seconds() // 60), 0)
    if minutes < 60:  # noqa: PLR2004
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 48:  # noqa: PLR2004
        return f"{hours}h"
    return f"{hours // 24}d"


type _Row = list[tuple[str, str]]


def _table_rows(ranked: list[ScoredPR], now: datetime | None) -> list[_Row]:
    """Header, separator and one row per PR, as (text, rich style) segments."""
    rows: list[_Row] = [
        [
            (
                f"{'Score':>7} {'PR':<{COL_REF_MAX + 2}} {'Title':<{COL_TITLE_MAX + 2}} "
                f"{'Age':>5} {'Size':>7} {'Query':<{COL_QUERY_MAX}}",
                "bold",
            )
        ],
        [("─" * (7 + COL_REF_MAX + COL_TITLE_MAX + COL_QUERY_MAX + 20), "dim")],
    ]
    for item in ranked:
        pr = item.pr
        size = f"{'~' if pr.size_incomplete else ''}{pr.changed_lines}"
        title = ("[draft] " if pr.draft else "") + pr.title
        rows.append(
            [
                (f"{display_score(item.score):>7} ", "bold green"),
                (f"{_truncate(pr.short_ref, COL_REF_MAX):<{COL_REF_MAX + 2}} ", "cyan"),
                (
                    f"{_truncate(title, COL_TITLE_MAX):<{COL_TITLE_MAX + 2}} ",
                    "dim" if pr.draft else "",
                ),
                (f"{format_age(pr.created_at, now):>5} ", ""),
                (f"{size:>7} ", "yellow" if pr.size_incomplete else ""),
                (f"{_truncate(pr.query_name, COL_QUERY_MAX):<{COL_QUERY_MAX}}", "magenta"),
            ]
        )
    return rows


def format_table(ranked: list[ScoredPR], now: datetime | None = None) -> list[str]:
    """Render the ranked list as table lines. Size marked ``~`` is an aggregate fallback."""
    return ["".join(text for text, _style in row) for row in _table_rows(ranked, now)]


def print_table(
    ranked: list[ScoredPR],
    console: Console | None = None,
    now: datetime | None = None,
) -> None:
    """Print the table, coloured when the console is a terminal and NO_COLOR is unset."""
    console = console or Console(highlight=False)
    for row in _table_rows(ranked, now):
        console.print(Text.assemble(*row), soft_wrap=True)


def _format_value(value: float) -> str:
    return f"{value:.2f}".rstrip("0").rstrip(".")


def format_breakdown(breakdown: ScoreBreakdown) -> list[str]:
    """One line per applied factor, starting from the base score."""
    lines = [f"  {'base':<28} {_format_value(breakdown.base_score):>12}"]
    for entry in breakdown.entries:
        sign = "+" if entry.operation is Operation.ADD else "x"
        change = f"{sign}{_format_value(entry.magnitude)}"
        lines.append(
            f"  {_truncate(entry.factor, 28):<28} {change:>12}  →  {_format_value(entry.after)}"
        )
    lines.append(f"  {'score':<28} {_format_value(breakdown.final_score):>12}")
    return lines


def format_detail(item: ScoredPR, now: datetime | None = None) -> list[str]:
    """Full description of one PR with its score breakdown."""
    pr = item.pr
    size = f"{pr.changed_lines} lines (+{pr.additions} -{pr.deletions})"
    if pr.size_incomplete:
        size += " [aggregate, per-file data unavailable]"
    lines = [
        f"{pr.short_ref}: {pr.title}",
        f"  URL:        {pr.url}",
        f"  Author:     {pr.author}",
        f"  Age:        {format_age(pr.created_at, now)}",
        f"  Size:       {size}",
        f"  Approvals:  {pr.approvals}",
        f"  Labels:     {', '.join(sorted(pr.labels)) or '-'}",
        f"  Query:      {pr.query_name}",
        "",
        "Score breakdown:",
    ]
    lines.extend(format_breakdown(item.breakdown))
    return lines


def _scored_to_dict(item: ScoredPR) -> dict[str, Any]:
    data = item.pr.to_dict()
    data["score"] = item.score
    data["breakdown"] = [
        {
            "factor": e.factor,
            "operation": str(e.operation),
            "magnitude": e.magnitude,
            "before": e.before,
            "after": e.after,
        }
        for e in item.breakdown.entries
    ]
    return data


def result_to_json(result: RefreshResult) -> str:
    return json.dumps(
        {
            "pull_requests": [_scored_to_dict(item) for item in result.ranked],
            "errors": result.errors,
            "warnings": result.warnings,
            "timed_out": result.timed_out,
        },
        indent=2,
    )
