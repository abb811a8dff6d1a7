"""GitHub REST client: conditional GETs, URL builders and response parsers."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import TYPE_CHECKING, Any, Self
from urllib.parse import urlencode

import httpx

from review_queue.cache import FetchError, FetchResponse
from review_queue.models import FileDiff, PullRequest

if TYPE_CHECKING:
    from types import TracebackType

logger = logging.getLogger(__name__)

API_BASE = "https://api.github.com"
REQUEST_TIMEOUT = 15.0  # seconds per request; the whole refresh has its own deadline
PAGE_SIZE = 100
RATE_LIMIT_WARNING_THRESHOLD = 100

_PR_HTML_URL_RE = re.compile(
    r"https://(?P<host>[^/]+)/(?P<owner>[^/]+)/(?P<repo>[^/]+)/pull/(?P<number>\d+)"
)


class AuthError(Exception):
    """Raised when GitHub rejects the token (401 / bad credentials)."""


class TransportError(FetchError):
    """Raised when a request could not complete at the network level."""


class RateLimitError(FetchError):
    """Raised when GitHub API rate limit is exceeded."""


def _headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}", "Accept": "application/vnd.github+json"}


def _check_rate_limit(response: httpx.Response) -> None:
    """Log a warning if rate limit is low, raise if exceeded."""
    remaining = response.headers.get("X-RateLimit-Remaining")
    if remaining is not None:
        remaining_int = int(remaining)
        if remaining_int < RATE_LIMIT_WARNING_THRESHOLD:
            logger.warning("GitHub API rate limit low: %d remaining", remaining_int)
    if response.status_code in (httpx.codes.FORBIDDEN, httpx.codes.TOO_MANY_REQUESTS) and (
        remaining == "0" or "rate limit" in response.text.lower()
    ):
        msg = "GitHub API rate limit exceeded"
        raise RateLimitError(msg)


def _is_truncated(response: httpx.Response) -> bool:
    """Compare the body against Content-Length when the body was not re-encoded."""
    declared = response.headers.get("Content-Length")
    if declared is None or response.headers.get("Content-Encoding"):
        return False
    try:
        return len(response.content) < int(declared)
    except ValueError:
        return False


# --- URLs ---


def search_url(query: str, *, page: int = 1) -> str:
    """Issue search URL; ``is:pr`` is appended unless the query already has it."""
    q = query if re.search(r"(^|\s)(is|type):pr(\s|$)", query) else f"{query} is:pr"
    params = {"q": q, "per_page": PAGE_SIZE, "page": page}
    return f"{API_BASE}/search/issues?{urlencode(params)}"


def pull_url(repo: str, number: int) -> str:
    return f"{API_BASE}/repos/{repo}/pulls/{number}"


def reviews_url(repo: str, number: int, *, page: int = 1) -> str:
    return f"{API_BASE}/repos/{repo}/pulls/{number}/reviews?per_page={PAGE_SIZE}&page={page}"


def files_url(repo: str, number: int, *, page: int = 1) -> str:
    return f"{API_BASE}/repos/{repo}/pulls/{number}/files?per_page={PAGE_SIZE}&page={page}"


USER_URL = f"{API_BASE}/user"


# --- Parsers ---


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def parse_search_item(item: dict[str, Any], query_name: str) -> PullRequest | None:
    """Convert one search result into a PullRequest. Returns None for plain issues."""
    if "pull_request" not in item:
        return None
    html_url: str = item["html_url"]
    m = _PR_HTML_URL_RE.match(html_url)
    repo = f"{m.group('owner')}/{m.group('repo')}" if m else "unknown/unknown"
    user = item.get("user")
    return PullRequest(
        number=item["number"],
        repo=repo,
        url=html_url,
        title=item["title"],
        author=user["login"] if user else "[deleted]",
        created_at=datetime.fromisoformat(item["created_at"].replace("Z", "+00:00")),
        updated_at=_parse_time(item.get("updated_at")),
        labels=frozenset(label["name"] for label in item.get("labels", [])),
        draft=bool(item.get("draft", False)),
        query_name=query_name,
    )


def parse_search_response(body: dict[str, Any], query_name: str) -> list[PullRequest]:
    """Extract pull requests from a search response, skipping issues."""
    if body.get("incomplete_results"):
        logger.warning("GitHub search results for %r are incomplete", query_name)
    prs = [parse_search_item(item, query_name) for item in body.get("items", [])]
    return [pr for pr in prs if pr is not None]


def parse_pull_size(body: dict[str, Any]) -> tuple[int, int]:
    """Return (additions, deletions) from a pull request detail response."""
    return int(body.get("additions", 0)), int(body.get("deletions", 0))


def summarize_reviews(reviews: list[dict[str, Any]], login: str | None) -> tuple[int, bool]:
    """Return (approval count, reviewed by ``login``).

    A reviewer counts as approving when their latest non-comment review is
    APPROVED; comment-only reviews neither grant nor revoke an approval.
    """
    latest: dict[str, str] = {}
    reviewed = False
    for review in reviews:
        user = review.get("user")
        if not user:
            continue
        author = user["login"]
        if login is not None and author.lower() == login.lower():
            reviewed = True
        state = review.get("state", "")
        if state in ("APPROVED", "CHANGES_REQUESTED", "DISMISSED"):
            latest[author] = state
    approvals = sum(1 for state in latest.values() if state == "APPROVED")
    return approvals, reviewed


def parse_files(body: list[dict[str, Any]]) -> list[FileDiff]:
    return [
        FileDiff(
            path=f["filename"],
            additions=int(f.get("additions", 0)),
            deletions=int(f.get("deletions", 0)),
        )
        for f in body
    ]


# --- Client ---


class GitHubClient:
    """Thin httpx wrapper implementing conditional GETs for the response cache."""

    def __init__(self, token: str, *, timeout: float = REQUEST_TIMEOUT) -> None:
        self.token = token
        self._client = httpx.AsyncClient(headers=_headers(token), timeout=timeout)

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(self, url: str, etag: str | None = None) -> FetchResponse:
        """GET ``url``, sending If-None-Match when an etag is known.

        Raises AuthError on 401 and TransportError when the request does not
        complete. Other statuses are returned for the cache to judge.
        """
        headers = {"If-None-Match": etag} if etag else None
        try:
            response = await self._client.get(url, headers=headers)
        except httpx.TransportError as e:
            msg = f"GET {url} failed: {e}"
            raise TransportError(msg) from e

        if response.status_code == httpx.codes.UNAUTHORIZED:
            msg = "GitHub rejected the token (401). It may be expired or revoked."
            raise AuthError(msg)
        _check_rate_limit(response)

        return FetchResponse(
            status=response.status_code,
            etag=response.headers.get("ETag"),
            body=response.content,
            truncated=_is_truncated(response),
        )
