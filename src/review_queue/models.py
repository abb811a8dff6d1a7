"""Pull request snapshot types shared by the fetcher, scorer and output layers."""

from __future__ import annotations

import fnmatch
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import timedelta


@dataclass(frozen=True)
class FileDiff:
    """Per-file line counts from the PR files endpoint."""

    path: str
    additions: int
    deletions: int

    @property
    def changed_lines(self) -> int:
        return self.additions + self.deletions


@dataclass(frozen=True)
class PullRequest:
    """One pull request as seen by a single refresh."""

    number: int
    repo: str  # "owner/name"
    url: str  # html URL, identity key across queries
    title: str
    author: str
    created_at: datetime
    updated_at: datetime | None = None
    additions: int = 0
    deletions: int = 0
    changed_lines: int = 0
    file_diffs: tuple[FileDiff, ...] | None = None
    labels: frozenset[str] = frozenset()
    approvals: int = 0
    reviewed_by_me: bool = False
    draft: bool = False
    query_name: str = ""
    size_incomplete: bool = False

    @property
    def short_ref(self) -> str:
        return f"{self.repo}#{self.number}"

    def age(self, now: datetime | None = None) -> timedelta:
        return (now or datetime.now(UTC)) - self.created_at

    def with_file_diffs(self, diffs: Iterable[FileDiff], exclude: Iterable[str]) -> PullRequest:
        """Return a copy sized from ``diffs``, ignoring files matching any ``exclude`` glob."""
        diffs = tuple(diffs)
        patterns = tuple(exclude)
        kept = [d for d in diffs if not is_excluded(d.path, patterns)]
        return replace(
            self,
            file_diffs=diffs,
            changed_lines=sum(d.changed_lines for d in kept),
            size_incomplete=False,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a dict suitable for JSON serialization."""
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        data["labels"] = sorted(self.labels)
        data["file_diffs"] = (
            None if self.file_diffs is None else [asdict(d) for d in self.file_diffs]
        )
        return data


def is_excluded(path: str, patterns: Iterable[str]) -> bool:
    """Match a file path against exclude globs, by full path or by basename."""
    basename = path.rsplit("/", 1)[-1]
    return any(
        fnmatch.fnmatchcase(path, pattern) or fnmatch.fnmatchcase(basename, pattern)
        for pattern in patterns
    )
