"""
tests/test_cache.py -- Unit tests for cache/store.py.

Covers:
  - SessionCache set/get/delete, TTL expiry against the injected clock, purge
  - RedisSessionCache key format and SET ... EX via a mocked client
  - build_session_cache backend selection
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from cache.store import RedisSessionCache, SessionCache, build_session_cache


class Ticker:
    def __init__(self) -> None:
        self.now = 1_000_000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def ticker() -> Ticker:
    return Ticker()


@pytest.fixture
def sqlite_cache(ticker):
    cache = SessionCache(":memory:", clock=ticker)
    yield cache
    cache.close()


def test_set_get_delete(sqlite_cache):
    sqlite_cache.set("s1", "u1", ttl=60)
    assert sqlite_cache.get("s1") == "u1"
    sqlite_cache.delete("s1")
    assert sqlite_cache.get("s1") is None


def test_missing_key_is_none(sqlite_cache):
    assert sqlite_cache.get("nope") is None
    sqlite_cache.delete("nope")


def test_last_writer_wins(sqlite_cache):
    sqlite_cache.set("s1", "u1", ttl=60)
    sqlite_cache.set("s1", "u2", ttl=60)
    assert sqlite_cache.get("s1") == "u2"


def test_entry_expires(sqlite_cache, ticker):
    sqlite_cache.set("s1", "u1", ttl=60)
    ticker.now += 59
    assert sqlite_cache.get("s1") == "u1"
    ticker.now += 1
    assert sqlite_cache.get("s1") is None


def test_purge_expired(sqlite_cache, ticker):
    sqlite_cache.set("old", "u1", ttl=10)
    sqlite_cache.set("new", "u2", ttl=1000)
    ticker.now += 100
    assert sqlite_cache.purge_expired() == 1
    assert sqlite_cache.get("new") == "u2"


def test_file_backed_cache_creates_directory(tmp_path):
    path = tmp_path / "nested" / "cache.db"
    cache = SessionCache(str(path))
    cache.set("s1", "u1", ttl=60)
    cache.close()
    assert path.exists()
    reopened = SessionCache(str(path))
    assert reopened.get("s1") == "u1"
    reopened.close()


def test_redis_cache_uses_prefixed_keys_and_expiry():
    client = MagicMock()
    client.get.return_value = "u1"
    cache = RedisSessionCache("redis://localhost:6379/0", client=client)

    cache.set("s1", "u1", ttl=86400)
    client.set.assert_called_once_with("session:s1", "u1", ex=86400)

    assert cache.get("s1") == "u1"
    client.get.assert_called_once_with("session:s1")

    cache.delete("s1")
    client.delete.assert_called_once_with("session:s1")

    assert cache.purge_expired() == 0
    cache.close()
    client.close.assert_called_once()


def test_redis_cache_clamps_non_positive_ttl():
    client = MagicMock()
    RedisSessionCache("redis://localhost", client=client).set("s1", "u1", ttl=0)
    client.set.assert_called_once_with("session:s1", "u1", ex=1)


def test_build_picks_sqlite_without_redis_url(settings, tmp_path):
    cache = build_session_cache(settings.model_copy(update={"redis_url": "", "cache_path": str(tmp_path / "c.db")}))
    assert isinstance(cache, SessionCache)
    cache.close()


def test_build_picks_redis_when_configured(settings):
    with patch("cache.store.redis.Redis.from_url") as from_url:
        cache = build_session_cache(
            settings.model_copy(update={"redis_url": "redis://cache:6379/1", "redis_socket_timeout": 0.5})
        )
    assert isinstance(cache, RedisSessionCache)
    from_url.assert_called_once_with(
        "redis://cache:6379/1", decode_responses=True, socket_timeout=0.5, socket_connect_timeout=0.5
    )
