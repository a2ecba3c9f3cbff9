"""
cache/store.py -- Key-value cache with TTL for permission sets and token revocation.

Two backends share one interface:
  SQLiteCache  -- local SQLite table, used when REDIS_URL is empty (single-node
                  deployments, development, tests).
  RedisCache   -- shared Redis, used when REDIS_URL is set.

Every read returns a CacheLookup whose status says what happened: HIT, MISS,
or UNAVAILABLE (backend raised, or the stored value is not valid JSON). Writes return True/False and delete_prefix
returns the number of removed keys or None when the backend is down. Nothing
in here raises on a backend failure: callers branch on the result and treat
UNAVAILABLE exactly like MISS, so a broken cache costs extra database reads
but never changes an authorization decision.

Values are JSON-encoded so both backends store the same representation.

Usage:
    cache = SQLiteCache()
    cache.set("permissions:u1:o1", ["USER_READ"], ttl_seconds=300)
    lookup = cache.get("permissions:u1:o1")
    if lookup.hit:
        perms = lookup.value
    cache.delete_prefix("permissions:")
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Protocol, Union

import redis

logger = logging.getLogger("tenantguard.cache")

_DDL = """
CREATE TABLE IF NOT EXISTS kv_cache (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


class CacheStatus(str, Enum):
    HIT = "hit"
    MISS = "miss"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class CacheLookup:
    """Outcome of a cache read."""

    status: CacheStatus
    value: Any = None

    @property
    def hit(self) -> bool:
        return self.status is CacheStatus.HIT


MISS = CacheLookup(CacheStatus.MISS)
UNAVAILABLE = CacheLookup(CacheStatus.UNAVAILABLE)


class Cache(Protocol):
    def get(self, key: str) -> CacheLookup: ...

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool: ...

    def delete(self, key: str) -> bool: ...

    def delete_prefix(self, prefix: str) -> Optional[int]: ...

    def close(self) -> None: ...


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _decode(key: str, raw: str) -> CacheLookup:
    """Turn a stored JSON string into a HIT, or UNAVAILABLE if it does not parse."""
    try:
        return CacheLookup(CacheStatus.HIT, json.loads(raw))
    except (TypeError, ValueError) as exc:
        logger.warning("Cache value for %s could not be decoded: %s", key, exc)
        return UNAVAILABLE


class SQLiteCache:
    """SQLite-backed TTL cache.

    Expired rows are dropped lazily on read and in bulk by purge_expired().
    A single connection is shared across threads, so access is serialized
    with a lock.
    """

    def __init__(self, db_path: Union[Path, str] = ":memory:") -> None:
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str) -> CacheLookup:
        """Return the live value for key, MISS if absent or expired."""
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT value, expires_at FROM kv_cache WHERE key = ?",
                    (key,),
                ).fetchone()
                if row is None:
                    return MISS
                value, expires_at = row
                if time.time() >= expires_at:
                    self._conn.execute("DELETE FROM kv_cache WHERE key = ?", (key,))
                    self._conn.commit()
                    return MISS
            return _decode(key, value)
        except sqlite3.Error as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return UNAVAILABLE

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Store value under key for ttl_seconds, replacing any existing entry."""
        if ttl_seconds <= 0:
            return False
        try:
            with self._lock:
                self._conn.execute(
                    "INSERT OR REPLACE INTO kv_cache (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, json.dumps(value), time.time() + ttl_seconds),
                )
                self._conn.commit()
            return True
        except sqlite3.Error as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)
            return False

    def delete(self, key: str) -> bool:
        try:
            with self._lock:
                self._conn.execute("DELETE FROM kv_cache WHERE key = ?", (key,))
                self._conn.commit()
            return True
        except sqlite3.Error as exc:
            logger.warning("Cache delete failed for %s: %s", key, exc)
            return False

    def delete_prefix(self, prefix: str) -> Optional[int]:
        """Delete every key starting with prefix. Returns rows removed, None on failure."""
        try:
            with self._lock:
                cursor = self._conn.execute(
                    "DELETE FROM kv_cache WHERE key LIKE ? ESCAPE '\\'",
                    (_escape_like(prefix) + "%",),
                )
                self._conn.commit()
            return cursor.rowcount
        except sqlite3.Error as exc:
            logger.warning("Cache prefix delete failed for %s: %s", prefix, exc)
            return None

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM kv_cache WHERE expires_at <= ?", (time.time(),))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()


class RedisCache:
    """Redis-backed TTL cache.

    TTLs are delegated to Redis (SET ... EX). delete_prefix walks the keyspace
    with SCAN rather than KEYS so a large namespace does not block the server.
    """

    def __init__(self, redis_url: str = "", *, client: Optional[redis.Redis] = None, socket_timeout: float = 2.0) -> None:
        self.client = client or redis.Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def get(self, key: str) -> CacheLookup:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            logger.warning("Cache read failed for %s: %s", key, exc)
            return UNAVAILABLE
        if raw is None:
            return MISS
        return _decode(key, raw)

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0:
            return False
        try:
            self.client.set(key, json.dumps(value), ex=ttl_seconds)
            return True
        except redis.RedisError as exc:
            logger.warning("Cache write failed for %s: %s", key, exc)
            return False

    def delete(self, key: str) -> bool:
        try:
            self.client.delete(key)
            return True
        except redis.RedisError as exc:
            logger.warning("Cache delete failed for %s: %s", key, exc)
            return False

    def delete_prefix(self, prefix: str) -> Optional[int]:
        try:
            keys = list(self.client.scan_iter(match=f"{prefix}*", count=500))
            if not keys:
                return 0
            return int(self.client.delete(*keys))
        except redis.RedisError as exc:
            logger.warning("Cache prefix delete failed for %s: %s", prefix, exc)
            return None

    def close(self) -> None:
        self.client.close()


def build_cache(redis_url: str, cache_db_path: Union[Path, str]) -> Cache:
    """Return RedisCache when a URL is configured, SQLiteCache otherwise."""
    if redis_url:
        logger.info("Using Redis cache")
        return RedisCache(redis_url)
    logger.info("Using SQLite cache at %s", cache_db_path)
    return SQLiteCache(cache_db_path)
