"""
cache/store.py -- Session mirror cache.

Each live session is mirrored as ``session:<session_id> -> user_id`` with a
TTL equal to the configured session timeout. The relational store stays the
source of truth; the mirror is a best-effort accelerator and is always
written last in any mutating session operation.

Two interchangeable backends with the same four methods (set/get/delete/close):
  SessionCache       SQLite file (default, no extra service to run)
  RedisSessionCache  Redis via redis-py, selected when REDIS_URL is set

Usage:
    cache = build_session_cache(get_settings())
    cache.set("3f2c...", "9a1b...", ttl=86400)
    cache.get("3f2c...")      # "9a1b..." or None
    cache.delete("3f2c...")
"""

import sqlite3
import time
from collections.abc import Callable
from pathlib import Path
from typing import Optional, Protocol

import redis

from core.config import Settings

_DDL = """
CREATE TABLE IF NOT EXISTS session_cache (
    cache_key   TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


def _key(session_id: str) -> str:
    return f"session:{session_id}"


class SessionMirror(Protocol):
    def set(self, session_id: str, user_id: str, ttl: int) -> None: ...

    def get(self, session_id: str) -> Optional[str]: ...

    def delete(self, session_id: str) -> None: ...

    def close(self) -> None: ...


class SessionCache:
    """SQLite-backed key/value mirror with per-entry expiry.

    ":memory:" is accepted for tests; everything else is treated as a file
    path whose parent directory is created on demand.
    """

    def __init__(self, db_path: str = ":memory:", clock: Callable[[], float] = time.time) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def set(self, session_id: str, user_id: str, ttl: int) -> None:
        """Store the mirror, replacing any existing entry (last writer wins)."""
        self._conn.execute(
            "INSERT OR REPLACE INTO session_cache (cache_key, value, expires_at) VALUES (?, ?, ?)",
            (_key(session_id), user_id, self._clock() + ttl),
        )
        self._conn.commit()

    def get(self, session_id: str) -> Optional[str]:
        """Return the mirrored user ID if present and not expired."""
        row = self._conn.execute(
            "SELECT value, expires_at FROM session_cache WHERE cache_key = ?",
            (_key(session_id),),
        ).fetchone()
        if row is None:
            return None
        value, expires_at = row
        if self._clock() >= expires_at:
            self.delete(session_id)
            return None
        return value

    def delete(self, session_id: str) -> None:
        self._conn.execute("DELETE FROM session_cache WHERE cache_key = ?", (_key(session_id),))
        self._conn.commit()

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        cursor = self._conn.execute("DELETE FROM session_cache WHERE expires_at <= ?", (self._clock(),))
        self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()


class RedisSessionCache:
    """Redis-backed mirror. Expiry is delegated to Redis (SET ... EX)."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0, client: Optional[redis.Redis] = None) -> None:
        self.redis_url = redis_url
        self.client = client or redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def set(self, session_id: str, user_id: str, ttl: int) -> None:
        # Redis rejects a zero or negative EX.
        self.client.set(_key(session_id), user_id, ex=max(1, int(ttl)))

    def get(self, session_id: str) -> Optional[str]:
        return self.client.get(_key(session_id))

    def delete(self, session_id: str) -> None:
        self.client.delete(_key(session_id))

    def purge_expired(self) -> int:
        return 0

    def close(self) -> None:
        self.client.close()


def build_session_cache(settings: Settings) -> SessionCache | RedisSessionCache:
    """Pick the Redis mirror when REDIS_URL is configured, the SQLite one otherwise."""
    if settings.redis_url:
        return RedisSessionCache(settings.redis_url, socket_timeout=settings.redis_socket_timeout)
    return SessionCache(settings.cache_path)
