"""Refresh orchestration: search every query, enrich PRs, score and rank."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

import httpx

from review_queue.cache import FetchError
from review_queue.credentials import reprompt_token
from review_queue.github import (
    PAGE_SIZE,
    USER_URL,
    AuthError,
    GitHubClient,
    TransportError,
    files_url,
    parse_files,
    parse_pull_size,
    parse_search_response,
    pull_url,
    reviews_url,
    search_url,
    summarize_reviews,
)
from review_queue.policy import assign_queries
from review_queue.scoring import ScoredPR, rank, score_one

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from review_queue.cache import FetchResponse, ResponseCache
    from review_queue.models import PullRequest
    from review_queue.policy import Query, ScoringPolicy

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_TIMEOUT = 20.0  # seconds for the whole refresh
DEFAULT_PER_PR_TIMEOUT = 10.0  # seconds for one PR's details + diff enrichment
ENRICH_CONCURRENCY = 5
MAX_FILE_PAGES = 30  # GitHub lists at most 3000 files per PR
MAX_REVIEW_PAGES = 10
# Per-PR work must finish this long before the refresh deadline.
DEADLINE_MARGIN = 1.0
SEARCH_ATTEMPTS = 3
RETRY_BACKOFF_START = 0.1  # seconds, doubled after each failed attempt
RETRY_BACKOFF_CAP = 5.0


class EnrichmentError(Exception):
    """Raised when per-file diff statistics for a PR could not be fetched."""


@dataclass(frozen=True)
class QueryOutcome:
    """Snapshot returned by one query task."""

    name: str
    prs: tuple[PullRequest, ...] = ()
    warnings: tuple[str, ...] = ()
    error: str | None = None


@dataclass
class RefreshResult:
    """Ranked PRs plus everything the presentation layer must surface."""

    ranked: list[ScoredPR] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    timed_out: bool = False

    @property
    def complete(self) -> bool:
        return not self.timed_out and not self.errors


class _Fetcher:
    """Cache-backed JSON access for one refresh."""

    def __init__(
        self,
        client: GitHubClient,
        cache: ResponseCache,
        *,
        bypass_memory: bool,
        deadline: float,
    ) -> None:
        self.client = client
        self.cache = cache
        self.bypass_memory = bypass_memory
        self.deadline = deadline

    def _backoff(self, attempt: int, attempts: int) -> float | None:
        """Delay before the next attempt, or None when no retry fits."""
        if attempt >= attempts:
            return None
        delay = min(RETRY_BACKOFF_START * 2 ** (attempt - 1), RETRY_BACKOFF_CAP)
        if asyncio.get_running_loop().time() + delay >= self.deadline:
            return None
        return delay

    async def _fetch_with_retry(self, url: str, etag: str | None, attempts: int) -> FetchResponse:
        """GET ``url``, retrying network errors and 5xx responses with exponential backoff.

        AuthError and RateLimitError are never retried.
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                response = await self.client.fetch(url, etag)
            except TransportError as e:
                delay = self._backoff(attempt, attempts)
                if delay is None:
                    raise
                reason = str(e)
            else:
                if response.status < httpx.codes.INTERNAL_SERVER_ERROR:
                    return response
                delay = self._backoff(attempt, attempts)
                if delay is None:
                    return response
                reason = f"HTTP {response.status}"
            logger.warning(
                "GET %s failed (attempt %d/%d): %s, retrying in %.1fs",
                url,
                attempt,
                attempts,
                reason,
                delay,
            )
            await asyncio.sleep(delay)

    async def get_json(self, url: str, warnings: list[str], *, attempts: int = 1) -> Any:
        async def fetcher(etag: str | None) -> FetchResponse:
            return await self._fetch_with_retry(url, etag, attempts)

        cached = await self.cache.get_or_fetch(url, fetcher, bypass_memory=self.bypass_memory)
        if cached.stale:
            warnings.append(f"Showing cached data for {url} (GitHub unreachable)")
        return cached.json()

    async def get_pages(
        self,
        url_for_page: Callable[[int], str],
        max_pages: int,
        warnings: list[str],
    ) -> list[dict[str, Any]]:
        """Follow page numbers until a short page (fewer than PAGE_SIZE entries)."""
        items: list[dict[str, Any]] = []
        for page in range(1, max_pages + 1):
            batch = await self.get_json(url_for_page(page), warnings)
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                break
        return items


async def _fetch_login(fetcher: _Fetcher, warnings: list[str]) -> str | None:
    try:
        user = await fetcher.get_json(USER_URL, warnings)
    except FetchError as e:
        warnings.append(f"Could not determine current user: {e}")
        return None
    return user.get("login")


async def _with_details(
    fetcher: _Fetcher,
    pr: PullRequest,
    login: str | None,
    warnings: list[str],
) -> PullRequest:
    """Fill in aggregate size and review state."""
    detail = await fetcher.get_json(pull_url(pr.repo, pr.number), warnings)
    additions, deletions = parse_pull_size(detail)
    reviews = await fetcher.get_pages(
        lambda page: reviews_url(pr.repo, pr.number, page=page), MAX_REVIEW_PAGES, warnings
    )
    approvals, reviewed = summarize_reviews(reviews, login)
    return replace(
        pr,
        additions=additions,
        deletions=deletions,
        changed_lines=additions + deletions,
        approvals=approvals,
        reviewed_by_me=reviewed,
        draft=bool(detail.get("draft", pr.draft)),
    )


async def _enrich(
    fetcher: _Fetcher,
    pr: PullRequest,
    exclude: Sequence[str],
    warnings: list[str],
) -> PullRequest:
    try:
        files = await fetcher.get_pages(
            lambda page: files_url(pr.repo, pr.number, page=page), MAX_FILE_PAGES, warnings
        )
    except FetchError as e:
        msg = f"{pr.short_ref}: {e}"
        raise EnrichmentError(msg) from e
    return pr.with_file_diffs(parse_files(files), exclude)


async def _complete_pr(
    fetcher: _Fetcher,
    pr: PullRequest,
    policy: ScoringPolicy,
    login: str | None,
    *,
    sem: asyncio.Semaphore,
    per_pr_timeout: float,
    deadline: float,
    warnings: list[str],
) -> PullRequest:
    """Fetch details and, when exclusions are configured, per-file diffs for one PR.

    Never raises for network trouble: a PR whose details fail keeps its search
    data, and one whose diff enrichment fails keeps its aggregate size.
    """
    loop = asyncio.get_running_loop()
    async with sem:
        pr_deadline = min(loop.time() + per_pr_timeout, deadline)
        try:
            async with asyncio.timeout_at(pr_deadline):
                pr = await _with_details(fetcher, pr, login, warnings)
        except (FetchError, TimeoutError) as e:
            warnings.append(f"{pr.short_ref}: details unavailable ({str(e) or 'timed out'})")
            return replace(pr, size_incomplete=True)

        exclude = policy.size.exclude if policy.size else ()
        if not exclude:
            return pr
        try:
            async with asyncio.timeout_at(pr_deadline):
                return await _enrich(fetcher, pr, exclude, warnings)
        except (EnrichmentError, TimeoutError) as e:
            logger.debug("Using aggregate size for %s: %s", pr.short_ref, str(e) or "timed out")
            return replace(pr, size_incomplete=True)


async def _run_query(
    fetcher: _Fetcher,
    query: Query,
    login: str | None,
    *,
    sem: asyncio.Semaphore,
    per_pr_timeout: float,
    deadline: float,
) -> QueryOutcome:
    warnings: list[str] = []
    try:
        body = await fetcher.get_json(search_url(query.query), warnings, attempts=SEARCH_ATTEMPTS)
    except FetchError as e:
        logger.warning("Query %r failed: %s", query.name, e)
        return QueryOutcome(name=query.name, error=f"{query.name}: {e}")

    prs = parse_search_response(body, query.name)
    logger.debug("Found %d PRs for %s", len(prs), query.name)
    completed = await asyncio.gather(
        *[
            _complete_pr(
                fetcher,
                pr,
                query.policy,
                login,
                sem=sem,
                per_pr_timeout=per_pr_timeout,
                deadline=deadline,
                warnings=warnings,
            )
            for pr in prs
        ]
    )
    return QueryOutcome(name=query.name, prs=tuple(completed), warnings=tuple(warnings))


def score_and_rank(
    outcomes: Sequence[QueryOutcome],
    policies: dict[str, ScoringPolicy],
) -> list[ScoredPR]:
    """Score each PR with the policy of the first query that returned it, then rank."""
    assigned = assign_queries((o.name, o.prs) for o in outcomes)
    scored = []
    for name, pr in assigned:
        score, breakdown = score_one(pr, policies[name])
        scored.append(ScoredPR(pr=pr, score=score, breakdown=breakdown))
    return rank(scored)


async def refresh(
    client: GitHubClient,
    cache: ResponseCache,
    queries: Sequence[Query],
    *,
    bypass_memory: bool = False,
    per_pr_timeout: float = DEFAULT_PER_PR_TIMEOUT,
    timeout: float = DEFAULT_REFRESH_TIMEOUT,
) -> RefreshResult:
    """Fetch, score and rank PRs for every query, bounded by ``timeout`` seconds.

    Manual refreshes pass ``bypass_memory=True`` so every request is revalidated
    against GitHub. On timeout the queries that finished are still returned and
    ``timed_out`` is set. Raises AuthError if GitHub rejects the token, and
    FetchError if every query failed.
    """
    result = RefreshResult()
    if not queries:
        return result

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    soft_deadline = deadline - min(DEADLINE_MARGIN, timeout * 0.1)
    fetcher = _Fetcher(client, cache, bypass_memory=bypass_memory, deadline=soft_deadline)

    try:
        async with asyncio.timeout_at(soft_deadline):
            login = await _fetch_login(fetcher, result.warnings)
    except TimeoutError:
        login = None
        result.warnings.append("Could not determine current user: timed out")

    sem = asyncio.Semaphore(ENRICH_CONCURRENCY)
    tasks = [
        asyncio.create_task(
            _run_query(
                fetcher,
                query,
                login,
                sem=sem,
                per_pr_timeout=per_pr_timeout,
                deadline=soft_deadline,
            )
        )
        for query in queries
    ]
    done, pending = await asyncio.wait(
        tasks,
        timeout=max(deadline - loop.time(), 0),
        return_when=asyncio.FIRST_EXCEPTION,
    )
    for task in pending:
        task.cancel()
    await asyncio.gather(*pending, return_exceptions=True)

    failures = [exc for task in done if (exc := task.exception()) is not None]
    if failures:
        raise failures[0]

    outcomes: list[QueryOutcome] = []
    for query, task in zip(queries, tasks, strict=True):
        if task in pending:
            result.timed_out = True
            result.errors.append(f"{query.name}: timed out")
            continue
        outcome = task.result()
        if outcome.error is not None:
            result.errors.append(outcome.error)
        result.warnings.extend(outcome.warnings)
        outcomes.append(outcome)

    if not result.timed_out and all(o.error is not None for o in outcomes):
        msg = "All queries failed. Check your network connection and GitHub token."
        raise FetchError(msg)

    result.ranked = score_and_rank(outcomes, {q.name: q.policy for q in queries})
    return result


async def refresh_with_reauth(
    token: str,
    cache: ResponseCache,
    queries: Sequence[Query],
    *,
    reprompt: Callable[[], str] = reprompt_token,
    **kwargs: Any,
) -> tuple[RefreshResult, str]:
    """Run :func:`refresh`; on AuthError ask for a new token once and retry.

    Returns the result and the token that produced it.
    """
    try:
        async with GitHubClient(token) as client:
            return await refresh(client, cache, queries, **kwargs), token
    except AuthError:
        logger.warning("GitHub rejected the token; asking for a new one")
    token = await asyncio.to_thread(reprompt)
    async with GitHubClient(token) as client:
        return await refresh(client, cache, queries, **kwargs), token
