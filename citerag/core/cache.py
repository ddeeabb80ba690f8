"""
Query cache: analysis and expansion results keyed by normalized query text.

Two backends share one interface (get / put with a TTL). MemoryQueryCache is
process-local; SqliteQueryCache persists to a file so that restarts and several
workers on the same host see the same entries. Entries are never reconciled
across hosts: a miss simply recomputes.
"""

import json
import logging
import re
import sqlite3
import time
from pathlib import Path
from typing import Any, Protocol

from citerag.core.config import QUERY_CACHE_BACKEND, QUERY_CACHE_PATH

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_TABLE = "query_cache"


def normalize_query(text: str) -> str:
    """Lowercase and collapse whitespace; the cache key for a query."""
    return _WHITESPACE.sub(" ", (text or "").strip().lower())


class QueryCache(Protocol):
    def get(self, key: str) -> Any | None:
        ...

    def put(self, key: str, value: Any, ttl: float) -> None:
        ...


class MemoryQueryCache:
    """Dict-backed cache with expiry checked on read."""

    def __init__(self, clock=time.time) -> None:
        self._entries: dict[str, tuple[float, Any]] = {}
        self._clock = clock

    def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return value

    def put(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = (self._clock() + ttl, value)

    def __len__(self) -> int:
        return len(self._entries)


class SqliteQueryCache:
    """
    File-backed cache. Values are stored as JSON; a connection is opened per call
    so the cache can be shared by threads and worker processes.
    """

    def __init__(self, path: str | Path, clock=time.time) -> None:
        self._path = Path(path)
        self._clock = clock
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        return sqlite3.connect(str(self._path))

    def _init_db(self) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_TABLE} (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    expires_at REAL NOT NULL
                )
                """
            )
            conn.commit()
        finally:
            conn.close()

    def get(self, key: str) -> Any | None:
        conn = self._get_conn()
        try:
            row = conn.execute(
                f"SELECT value, expires_at FROM {_TABLE} WHERE key = ?", (key,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        value, expires_at = row
        if expires_at <= self._clock():
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            logger.warning("[query_cache:get] corrupt entry key=%r", key[:80])
            return None

    def put(self, key: str, value: Any, ttl: float) -> None:
        conn = self._get_conn()
        try:
            conn.execute(
                f"INSERT OR REPLACE INTO {_TABLE} (key, value, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(value), self._clock() + ttl),
            )
            conn.commit()
        finally:
            conn.close()

    def purge_expired(self) -> int:
        """Delete expired rows. Returns how many were removed."""
        conn = self._get_conn()
        try:
            cur = conn.execute(f"DELETE FROM {_TABLE} WHERE expires_at <= ?", (self._clock(),))
            conn.commit()
            removed = cur.rowcount
        finally:
            conn.close()
        logger.info("[query_cache:purge_expired] removed=%d", removed)
        return removed


def build_query_cache() -> QueryCache:
    """Return the cache backend selected by QUERY_CACHE_BACKEND."""
    if QUERY_CACHE_BACKEND == "sqlite":
        logger.info("[query_cache] backend=sqlite path=%s", QUERY_CACHE_PATH)
        cache = SqliteQueryCache(QUERY_CACHE_PATH)
        cache.purge_expired()
        return cache
    logger.info("[query_cache] backend=memory")
    return MemoryQueryCache()
