"""Two-tier HTTP response cache: in-process dict in front of a persisted sqlite store."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

RETENTION_SECONDS = 7 * 24 * 3600  # persisted entries unvalidated for longer are purged
MEMORY_TTL_SECONDS = 60.0  # memory hits within this window skip the network entirely

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS responses (
    key               TEXT PRIMARY KEY,
    etag              TEXT,
    body              BLOB NOT NULL,
    stored_at         REAL NOT NULL,
    last_validated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_responses_validated ON responses(last_validated_at);
"""


class FetchError(Exception):
    """Raised when a request fails and no cached copy can stand in for it."""


@dataclass(frozen=True)
class FetchResponse:
    """What the network layer hands back for one (possibly conditional) request."""

    status: int
    etag: str | None
    body: bytes
    truncated: bool = False


type Fetcher = Callable[[str | None], Awaitable[FetchResponse]]
"""Performs the request, sending ``If-None-Match`` when given an etag."""


@dataclass(frozen=True)
class CacheEntry:
    key: str
    etag: str | None
    body: bytes
    stored_at: float
    last_validated_at: float


@dataclass(frozen=True)
class CachedBody:
    """A response body and where it came from.

    ``stale`` is set when the origin could not be reached and a previously
    stored copy was returned instead.
    """

    body: bytes
    stale: bool = False
    from_cache: bool = False

    def json(self) -> object:
        return json.loads(self.body)


def get_cache_path() -> Path:
    """Return the path to the persisted cache, following XDG conventions."""
    xdg_cache = os.environ.get("XDG_CACHE_HOME")
    base = Path(xdg_cache) if xdg_cache else Path.home() / ".cache"
    return base / "review-queue" / "http-cache.db"


class CacheStore:
    """Persisted cache tier. One row per request key; each write is its own transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.conn.executescript(_SCHEMA)

    def read(self, key: str) -> CacheEntry | None:
        row = self.conn.execute("SELECT * FROM responses WHERE key = ?", (key,)).fetchone()
        return _row_to_entry(row) if row else None

    def write(self, entry: CacheEntry) -> None:
        with self.conn:
            self.conn.execute(
                """INSERT INTO responses (key, etag, body, stored_at, last_validated_at)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                     etag = excluded.etag,
                     body = excluded.body,
                     stored_at = excluded.stored_at,
                     last_validated_at = excluded.last_validated_at""",
                (entry.key, entry.etag, entry.body, entry.stored_at, entry.last_validated_at),
            )

    def touch(self, key: str, validated_at: float) -> None:
        """Advance last_validated_at only; body and stored_at are left alone."""
        with self.conn:
            self.conn.execute(
                "UPDATE responses SET last_validated_at = ? WHERE key = ?",
                (validated_at, key),
            )

    def list_all(self) -> list[CacheEntry]:
        rows = self.conn.execute("SELECT * FROM responses ORDER BY key").fetchall()
        return [_row_to_entry(r) for r in rows]

    def remove_all(self) -> int:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM responses")
        return cursor.rowcount

    def purge_older_than(self, cutoff: float) -> int:
        with self.conn:
            cursor = self.conn.execute(
                "DELETE FROM responses WHERE last_validated_at < ?", (cutoff,)
            )
        return cursor.rowcount

    def close(self) -> None:
        self.conn.close()


def _row_to_entry(row: sqlite3.Row) -> CacheEntry:
    return CacheEntry(
        key=row["key"],
        etag=row["etag"],
        body=bytes(row["body"]),
        stored_at=row["stored_at"],
        last_validated_at=row["last_validated_at"],
    )


def open_store(path: Path | None = None) -> CacheStore:
    """Open (creating if needed) the persisted cache store."""
    path = path or get_cache_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    # Cached bodies may include private repository data
    path.parent.chmod(0o700)
    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    return CacheStore(conn)


def open_memory_store() -> CacheStore:
    """Create a store that lives only as long as the process (tests, --no-cache)."""
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    return CacheStore(conn)


def clear_cache(path: Path | None = None) -> int:
    """Remove every persisted response. Returns the number of entries removed."""
    path = path or get_cache_path()
    if not path.exists():
        return 0
    store = open_store(path)
    try:
        return store.remove_all()
    finally:
        store.close()


def _is_complete_json(body: bytes) -> bool:
    try:
        json.loads(body)
    except ValueError:
        return False
    return True


class ResponseCache:
    """ETag-revalidating cache shared by every request of a refresh.

    The memory tier is rebuilt every process start; the persisted tier
    survives runs and is the source of etags for conditional requests.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        memory_ttl: float = MEMORY_TTL_SECONDS,
        retention: float = RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.memory_ttl = memory_ttl
        self.retention = retention
        self.clock = clock
        self._memory: dict[str, CacheEntry] = {}

    @classmethod
    def open(cls, store: CacheStore, **kwargs: Any) -> ResponseCache:
        """Create a cache and evict expired persisted entries before any fetch."""
        cache = cls(store, **kwargs)
        cache.evict_expired()
        return cache

    def evict_expired(self) -> int:
        cutoff = self.clock() - self.retention
        purged = self.store.purge_older_than(cutoff)
        if purged:
            logger.debug("Evicted %d cached responses older than %.0fs", purged, self.retention)
        return purged

    def clear(self) -> int:
        self._memory.clear()
        return self.store.remove_all()

    def clear_memory(self) -> None:
        self._memory.clear()

    def memory_entry(self, key: str) -> CacheEntry | None:
        return self._memory.get(key)

    def _known_entry(self, key: str) -> CacheEntry | None:
        return self.store.read(key) or self._memory.get(key)

    def _commit(self, entry: CacheEntry) -> None:
        self.store.write(entry)
        self._memory[entry.key] = entry

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Fetcher,
        *,
        bypass_memory: bool = False,
    ) -> CachedBody:
        """Return the body for ``key``, revalidating against the origin as needed.

        Raises FetchError only when the request fails and nothing is cached.
        Authentication errors from the fetcher propagate unchanged.
        """
        now = self.clock()
        cached = self._memory.get(key)
        if (
            not bypass_memory
            and cached is not None
            and now - cached.last_validated_at < self.memory_ttl
        ):
            logger.debug("Memory cache hit: %s", key)
            return CachedBody(cached.body, from_cache=True)

        known = self._known_entry(key)
        try:
            response = await fetcher(known.etag if known else None)
        except FetchError as e:
            return self._fallback(key, known, str(e))

        if response.status == 304 and known is not None:
            validated = replace(known, last_validated_at=self.clock())
            self.store.touch(key, validated.last_validated_at)
            self._memory[key] = validated
            return CachedBody(validated.body, from_cache=True)

        if 200 <= response.status < 300:
            if response.truncated or not _is_complete_json(response.body):
                return self._fallback(key, known, "truncated or malformed response body")
            stamp = self.clock()
            self._commit(
                CacheEntry(
                    key=key,
                    etag=response.etag,
                    body=response.body,
                    stored_at=stamp,
                    last_validated_at=stamp,
                )
            )
            return CachedBody(response.body)

        return self._fallback(key, known, f"HTTP {response.status}")

    def _fallback(self, key: str, known: CacheEntry | None, reason: str) -> CachedBody:
        if known is None:
            msg = f"{key}: {reason}"
            raise FetchError(msg)
        logger.warning("Using stale cached response for %s (%s)", key, reason)
        self._memory.setdefault(key, known)
        return CachedBody(known.body, stale=True, from_cache=True)
