"""Shared fixtures: in-memory cache store, fake clock and network, sample API JSON."""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from review_queue.cache import FetchResponse, ResponseCache, open_memory_store
from review_queue.github import TransportError
from review_queue.models import PullRequest

if TYPE_CHECKING:
    from collections.abc import Generator

    from review_queue.cache import CacheStore

NOW = datetime(2026, 2, 9, 12, 0, tzinfo=UTC)


def make_pr(**overrides: Any) -> PullRequest:
    """Build a PullRequest with sensible defaults."""
    number = overrides.pop("number", 12345)
    repo = overrides.pop("repo", "NixOS/nixpkgs")
    fields: dict[str, Any] = {
        "number": number,
        "repo": repo,
        "url": f"https://github.com/{repo}/pull/{number}",
        "title": "python313: 3.13.1 -> 3.13.2",
        "author": "contributor",
        "created_at": NOW - timedelta(hours=5),
    }
    fields.update(overrides)
    return PullRequest(**fields)


def search_item(
    number: int,
    *,
    repo: str = "NixOS/nixpkgs",
    title: str = "python313: 3.13.1 -> 3.13.2",
    created_at: str = "2026-02-09T07:00:00Z",
    labels: tuple[str, ...] = (),
) -> dict[str, Any]:
    """One entry of a /search/issues response for a pull request."""
    return {
        "number": number,
        "title": title,
        "html_url": f"https://github.com/{repo}/pull/{number}",
        "user": {"login": "contributor"},
        "created_at": created_at,
        "updated_at": created_at,
        "labels": [{"name": name} for name in labels],
        "draft": False,
        "pull_request": {"url": f"https://api.github.com/repos/{repo}/pulls/{number}"},
    }


def search_body(*items: dict[str, Any]) -> dict[str, Any]:
    return {"total_count": len(items), "incomplete_results": False, "items": list(items)}


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = 1_770_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeClient:
    """Serves canned JSON per URL in place of GitHubClient.

    ``delays`` maps a URL to seconds slept before answering; URLs in
    ``failing`` raise TransportError.
    """

    def __init__(
        self,
        routes: dict[str, Any],
        *,
        delays: dict[str, float] | None = None,
        failing: set[str] | None = None,
    ) -> None:
        self.routes = routes
        self.delays = delays or {}
        self.failing = failing or set()
        self.requests: list[tuple[str, str | None]] = []

    async def fetch(self, url: str, etag: str | None = None) -> FetchResponse:
        self.requests.append((url, etag))
        if url in self.delays:
            await asyncio.sleep(self.delays[url])
        if url in self.failing or url not in self.routes:
            msg = f"GET {url} failed: connection refused"
            raise TransportError(msg)
        return FetchResponse(status=200, etag=None, body=json.dumps(self.routes[url]).encode())

    def urls(self) -> list[str]:
        return [url for url, _etag in self.requests]


@pytest.fixture
def store() -> Generator[CacheStore]:
    """An in-memory persisted tier."""
    s = open_memory_store()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(store: CacheStore, clock: FakeClock) -> ResponseCache:
    return ResponseCache(store, clock=clock)
