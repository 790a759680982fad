"""
Key-Value Stores for Sessions, Rate Limits and Cached Results

A small TTL-capable key-value interface with two implementations:

    InMemoryKeyValueStore  -- single process, thread-safe, for tests and dev
    PostgresKeyValueStore  -- shared across processes and restarts

Every operation touches a single key and is atomic from the caller's
point of view. Values must be JSON-serializable.
"""

import copy
import json
import time
import logging
import threading
from typing import Any, Callable, Optional
from dataclasses import dataclass

from .db import PostgresConnectionManager

logger = logging.getLogger(__name__)


@dataclass
class WindowAdmission:
    """Outcome of an atomic fixed-window check-and-increment."""
    allowed: bool
    count: int
    window_start: float


class KeyValueStore:
    """
    Interface for the externalized store.

    Subclasses implement every method; ``update`` and
    ``check_and_increment`` must be atomic per key.
    """

    def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def incr(self, key: str, ttl_seconds: Optional[float] = None) -> int:
        raise NotImplementedError

    def update(self, key: str, fn: Callable[[Optional[Any]], Any], ttl_seconds: Optional[float] = None) -> Any:
        """Atomically replace the value with ``fn(current)`` and return it."""
        raise NotImplementedError

    def check_and_increment(
        self,
        key: str,
        limit: int,
        window_seconds: float,
        now: Optional[float] = None,
    ) -> WindowAdmission:
        """Admit and count one event unless the current window already holds ``limit``."""
        raise NotImplementedError

    def ping(self) -> bool:
        return True

    @property
    def backend_name(self) -> str:
        return type(self).__name__


class InMemoryKeyValueStore(KeyValueStore):
    """
    Thread-safe dict-backed store with TTL enforced on read.

    Keys that are never read again (abandoned sessions, result entries
    orphaned by a generation bump, idle rate windows) are reclaimed by
    purge_expired(), which also runs every ``purge_interval`` writes.
    """

    def __init__(self, clock: Callable[[], float] = time.time, purge_interval: int = 256):
        self._clock = clock
        self._data: dict[str, tuple[Any, Optional[float]]] = {}
        self._windows: dict[str, tuple[int, float, float]] = {}  # count, window_start, window_seconds
        self._lock = threading.Lock()
        self._purge_interval = purge_interval
        self._writes_since_purge = 0

    @property
    def backend_name(self) -> str:
        return "memory"

    def _expires(self, ttl_seconds: Optional[float]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds is not None else None

    def _live(self, key: str) -> Optional[Any]:
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def _purge_locked(self) -> int:
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._data.items() if expires_at is not None and expires_at <= now]
        for k in expired:
            del self._data[k]
        elapsed = [k for k, (_, start, length) in self._windows.items() if now - start >= length]
        for k in elapsed:
            del self._windows[k]
        self._writes_since_purge = 0
        return len(expired) + len(elapsed)

    def _after_write(self) -> None:
        # Caller holds the lock
        self._writes_since_purge += 1
        if self._purge_interval and self._writes_since_purge >= self._purge_interval:
            removed = self._purge_locked()
            if removed:
                logger.debug(f"Reclaimed {removed} expired in-memory entries")

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return copy.deepcopy(self._live(key))

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (copy.deepcopy(value), self._expires(ttl_seconds))
            self._after_write()

    def delete(self, key: str) -> bool:
        with self._lock:
            self._windows.pop(key, None)
            return self._data.pop(key, None) is not None

    def incr(self, key: str, ttl_seconds: Optional[float] = None) -> int:
        with self._lock:
            current = self._live(key) or 0
            value = int(current) + 1
            self._data[key] = (value, self._expires(ttl_seconds))
            self._after_write()
            return value

    def update(self, key: str, fn: Callable[[Optional[Any]], Any], ttl_seconds: Optional[float] = None) -> Any:
        with self._lock:
            new_value = fn(copy.deepcopy(self._live(key)))
            self._data[key] = (copy.deepcopy(new_value), self._expires(ttl_seconds))
            self._after_write()
            return copy.deepcopy(new_value)

    def check_and_increment(
        self,
        key: str,
        limit: int,
        window_seconds: float,
        now: Optional[float] = None,
    ) -> WindowAdmission:
        now = self._clock() if now is None else now
        with self._lock:
            count, window_start, _ = self._windows.get(key, (0, now, window_seconds))
            if now - window_start >= window_seconds:
                count, window_start = 0, now
            if count >= limit:
                return WindowAdmission(allowed=False, count=count, window_start=window_start)
            count += 1
            self._windows[key] = (count, window_start, window_seconds)
            self._after_write()
            return WindowAdmission(allowed=True, count=count, window_start=window_start)

    def purge_expired(self) -> int:
        """Drop expired entries and elapsed rate windows. Returns the number removed."""
        with self._lock:
            return self._purge_locked()

    def stats(self) -> dict:
        with self._lock:
            return {"entries": len(self._data), "windows": len(self._windows)}

    def clear(self) -> None:
        with self._lock:
            self._data.clear()
            self._windows.clear()


class PostgresKeyValueStore(KeyValueStore):
    """
    Key-value store on PostgreSQL.

    Expiry is stored as epoch seconds and checked in every read, so expired
    keys behave as absent even before purge_expired() removes them.
    """

    def __init__(self, db: Optional[PostgresConnectionManager] = None, clock: Callable[[], float] = time.time):
        self._db = db or PostgresConnectionManager()
        self._clock = clock

    @property
    def backend_name(self) -> str:
        return "postgres"

    def initialize_schema(self) -> None:
        def _create(conn):
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS kv_entries (
                        key TEXT PRIMARY KEY,
                        value JSONB NOT NULL,
                        expires_at DOUBLE PRECISION
                    )
                """)
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS kv_rate_windows (
                        key TEXT PRIMARY KEY,
                        count INTEGER NOT NULL,
                        window_start DOUBLE PRECISION NOT NULL
                    )
                """)
                cur.execute(
                    "CREATE INDEX IF NOT EXISTS idx_kv_entries_expires ON kv_entries (expires_at)"
                )
            conn.commit()

        self._db.execute_with_retry(_create, label="kv_initialize_schema")
        logger.info("Key-value schema initialized")

    def _expires(self, ttl_seconds: Optional[float]) -> Optional[float]:
        return self._clock() + ttl_seconds if ttl_seconds is not None else None

    def get(self, key: str) -> Optional[Any]:
        def _get(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT value FROM kv_entries "
                    "WHERE key = %s AND (expires_at IS NULL OR expires_at > %s)",
                    (key, self._clock()),
                )
                row = cur.fetchone()
            conn.commit()
            return row["value"] if row else None

        return self._db.execute_with_retry(_get, label="kv_get")

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        def _set(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO kv_entries (key, value, expires_at)
                    VALUES (%s, %s::jsonb, %s)
                    ON CONFLICT (key) DO UPDATE
                    SET value = EXCLUDED.value, expires_at = EXCLUDED.expires_at
                    """,
                    (key, json.dumps(value), self._expires(ttl_seconds)),
                )
            conn.commit()

        self._db.execute_with_retry(_set, label="kv_set")

    def delete(self, key: str) -> bool:
        def _delete(conn):
            with conn.cursor() as cur:
                cur.execute("DELETE FROM kv_rate_windows WHERE key = %s", (key,))
                cur.execute("DELETE FROM kv_entries WHERE key = %s RETURNING key", (key,))
                deleted = cur.fetchone() is not None
            conn.commit()
            return deleted

        return self._db.execute_with_retry(_delete, label="kv_delete")

    def incr(self, key: str, ttl_seconds: Optional[float] = None) -> int:
        now = self._clock()

        def _incr(conn):
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO kv_entries (key, value, expires_at)
                    VALUES (%s, '1'::jsonb, %s)
                    ON CONFLICT (key) DO UPDATE
                    SET value = to_jsonb(
                            CASE WHEN kv_entries.expires_at IS NOT NULL AND kv_entries.expires_at <= %s
                                 THEN 0
                                 ELSE (kv_entries.value #>> '{}')::bigint
                            END + 1
                        ),
                        expires_at = EXCLUDED.expires_at
                    RETURNING value
                    """,
                    (key, self._expires(ttl_seconds), now),
                )
                row = cur.fetchone()
            conn.commit()
            return int(row["value"])

        return self._db.execute_with_retry(_incr, label="kv_incr")

    def update(self, key: str, fn: Callable[[Optional[Any]], Any], ttl_seconds: Optional[float] = None) -> Any:
        def _update(conn):
            now = self._clock()
            with conn.cursor() as cur:
                # Make sure a row exists so FOR UPDATE has something to lock
                cur.execute(
                    "INSERT INTO kv_entries (key, value, expires_at) VALUES (%s, 'null'::jsonb, %s) "
                    "ON CONFLICT (key) DO NOTHING",
                    (key, now),
                )
                cur.execute(
                    "SELECT value, expires_at FROM kv_entries WHERE key = %s FOR UPDATE",
                    (key,),
                )
                row = cur.fetchone()
                current = None
                if row and (row["expires_at"] is None or row["expires_at"] > now):
                    current = row["value"]

                new_value = fn(current)
                cur.execute(
                    "UPDATE kv_entries SET value = %s::jsonb, expires_at = %s WHERE key = %s",
                    (json.dumps(new_value), self._expires(ttl_seconds), key),
                )
            conn.commit()
            return new_value

        return self._db.execute_with_retry(_update, label="kv_update")

    def check_and_increment(
        self,
        key: str,
        limit: int,
        window_seconds: float,
        now: Optional[float] = None,
    ) -> WindowAdmission:
        now = self._clock() if now is None else now
        params = {"key": key, "now": now, "window": window_seconds, "limit": limit}

        def _admit(conn):
            with conn.cursor() as cur:
                if limit <= 0:
                    row = None
                else:
                    # Single statement: the row lock makes check and increment one step
                    cur.execute(
                        """
                        INSERT INTO kv_rate_windows (key, count, window_start)
                        VALUES (%(key)s, 1, %(now)s)
                        ON CONFLICT (key) DO UPDATE
                        SET count = CASE
                                WHEN kv_rate_windows.window_start + %(window)s <= %(now)s THEN 1
                                ELSE kv_rate_windows.count + 1
                            END,
                            window_start = CASE
                                WHEN kv_rate_windows.window_start + %(window)s <= %(now)s THEN %(now)s
                                ELSE kv_rate_windows.window_start
                            END
                        WHERE kv_rate_windows.window_start + %(window)s <= %(now)s
                           OR kv_rate_windows.count < %(limit)s
                        RETURNING count, window_start
                        """,
                        params,
                    )
                    row = cur.fetchone()

                if row is not None:
                    conn.commit()
                    return WindowAdmission(True, int(row["count"]), float(row["window_start"]))

                cur.execute(
                    "SELECT count, window_start FROM kv_rate_windows WHERE key = %s",
                    (key,),
                )
                current = cur.fetchone()
            conn.commit()
            if current is None:
                return WindowAdmission(False, 0, now)
            return WindowAdmission(False, int(current["count"]), float(current["window_start"]))

        return self._db.execute_with_retry(_admit, label="kv_check_and_increment")

    def purge_expired(self) -> int:
        """Delete expired entries. Returns the number removed."""
        def _purge(conn):
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM kv_entries WHERE expires_at IS NOT NULL AND expires_at <= %s",
                    (self._clock(),),
                )
                removed = cur.rowcount
            conn.commit()
            return removed

        return self._db.execute_with_retry(_purge, label="kv_purge_expired")

    def ping(self) -> bool:
        return self._db.health_check()


def get_kv_store(backend: str = "memory", db: Optional[PostgresConnectionManager] = None) -> KeyValueStore:
    """Build the configured key-value store."""
    if backend == "postgres":
        store = PostgresKeyValueStore(db=db)
        store.initialize_schema()
        return store
    if backend != "memory":
        logger.warning(f"Unknown KV backend {backend!r}, using in-memory store")
    return InMemoryKeyValueStore()
