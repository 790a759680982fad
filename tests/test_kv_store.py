"""
Tests for execution/member_search/kv_store.py

Covers: InMemoryKeyValueStore (TTL, incr, atomic update, fixed-window
        admission under concurrency, reclamation of expired keys) and PostgresKeyValueStore SQL paths
        against a mocked connection manager.
"""

import json
import threading
from unittest.mock import MagicMock

import pytest

from tests.conftest import FakeClock


@pytest.fixture
def kv_clock():
    return FakeClock()


@pytest.fixture
def kv(kv_clock):
    from execution.member_search.kv_store import InMemoryKeyValueStore
    return InMemoryKeyValueStore(clock=kv_clock)


# ---------------------------------------------------------------------------
# InMemoryKeyValueStore
# ---------------------------------------------------------------------------

class TestInMemoryKeyValueStore:
    """Tests for the in-process store."""

    def test_set_get_delete(self, kv):
        kv.set("k", {"a": 1})
        assert kv.get("k") == {"a": 1}
        assert kv.delete("k") is True
        assert kv.get("k") is None
        assert kv.delete("k") is False

    def test_ttl(self, kv, kv_clock):
        kv.set("k", "v", ttl_seconds=10)
        kv_clock.advance(9.9)
        assert kv.get("k") == "v"
        kv_clock.advance(0.2)
        assert kv.get("k") is None

    def test_values_are_copied(self, kv):
        value = {"history": [1]}
        kv.set("k", value)
        value["history"].append(2)
        fetched = kv.get("k")
        fetched["history"].append(3)
        assert kv.get("k") == {"history": [1]}

    def test_incr(self, kv, kv_clock):
        assert kv.incr("n") == 1
        assert kv.incr("n") == 2
        kv.set("m", 5, ttl_seconds=1)
        kv_clock.advance(2)
        assert kv.incr("m") == 1

    def test_update_is_atomic(self, kv):
        def _bump(current):
            return (current or 0) + 1

        threads = [
            threading.Thread(target=lambda: [kv.update("count", _bump) for _ in range(25)])
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert kv.get("count") == 200

    def test_window_admits_up_to_limit(self, kv):
        results = [kv.check_and_increment("rate", limit=3, window_seconds=60) for _ in range(5)]
        assert [r.allowed for r in results] == [True, True, True, False, False]
        assert results[2].count == 3
        # Rejections do not advance the counter
        assert results[4].count == 3

    def test_window_resets(self, kv, kv_clock):
        for _ in range(2):
            kv.check_and_increment("rate", limit=2, window_seconds=60)
        assert not kv.check_and_increment("rate", limit=2, window_seconds=60).allowed
        kv_clock.advance(60)
        admission = kv.check_and_increment("rate", limit=2, window_seconds=60)
        assert admission.allowed
        assert admission.count == 1
        assert admission.window_start == kv_clock.now

    def test_zero_limit_rejects(self, kv):
        assert not kv.check_and_increment("rate", limit=0, window_seconds=60).allowed

    def test_concurrent_admission_never_exceeds_limit(self, kv):
        limit = 20
        allowed = []
        lock = threading.Lock()
        barrier = threading.Barrier(50)

        def _attempt():
            barrier.wait()
            admission = kv.check_and_increment("rate", limit=limit, window_seconds=3600)
            with lock:
                allowed.append(admission.allowed)

        threads = [threading.Thread(target=_attempt) for _ in range(50)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert allowed.count(True) == limit

    def test_clear(self, kv):
        kv.set("k", 1)
        kv.check_and_increment("rate", limit=1, window_seconds=60)
        kv.clear()
        assert kv.get("k") is None
        assert kv.check_and_increment("rate", limit=1, window_seconds=60).allowed

    def test_backend_name(self, kv):
        assert kv.backend_name == "memory"
        assert kv.ping() is True

    def test_purge_expired(self, kv, kv_clock):
        kv.set("session:u1", {"history": []}, ttl_seconds=1800)
        kv.set("result_gen:tenant-a", 1)
        kv.check_and_increment("rate:search:u1", limit=5, window_seconds=3600)
        kv_clock.advance(3600)
        assert kv.purge_expired() == 2
        assert kv.stats() == {"entries": 1, "windows": 0}
        assert kv.get("result_gen:tenant-a") == 1

    def test_open_window_survives_purge(self, kv, kv_clock):
        kv.check_and_increment("rate", limit=1, window_seconds=60)
        kv_clock.advance(30)
        assert kv.purge_expired() == 0
        assert not kv.check_and_increment("rate", limit=1, window_seconds=60).allowed

    def test_writes_reclaim_abandoned_keys(self, kv_clock):
        from execution.member_search.kv_store import InMemoryKeyValueStore
        store = InMemoryKeyValueStore(clock=kv_clock, purge_interval=10)
        for i in range(500):
            store.set(f"session:u{i}", {"user_id": f"u{i}"}, ttl_seconds=1800)
            store.set(f"result:{i}", {"members": []}, ttl_seconds=3600)
            store.check_and_increment(f"rate:search:u{i}", limit=30, window_seconds=3600)
        store.set("result_gen:tenant-a", 2)
        assert store.stats() == {"entries": 1001, "windows": 500}

        kv_clock.advance(10 * 86400)
        for i in range(10):
            store.set(f"session:new{i}", {}, ttl_seconds=1800)

        assert store.stats() == {"entries": 11, "windows": 0}


# ---------------------------------------------------------------------------
# PostgresKeyValueStore
# ---------------------------------------------------------------------------

def _mock_db(cur):
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    db = MagicMock()
    db.execute_with_retry.side_effect = lambda operation, label=None: operation(conn)
    return db, conn


def _executed_sql(cur) -> list[str]:
    return [" ".join(c.args[0].split()) for c in cur.execute.call_args_list]


class TestPostgresKeyValueStore:
    """Tests for the SQL issued by the Postgres store."""

    def _store(self, cur, now=1000.0):
        from execution.member_search.kv_store import PostgresKeyValueStore
        db, conn = _mock_db(cur)
        return PostgresKeyValueStore(db=db, clock=lambda: now), conn

    def test_get_filters_expired(self):
        cur = MagicMock()
        cur.fetchone.return_value = {"value": {"a": 1}}
        store, conn = self._store(cur)
        assert store.get("k") == {"a": 1}
        sql, params = cur.execute.call_args.args
        assert "expires_at > %s" in sql
        assert params == ("k", 1000.0)
        conn.commit.assert_called_once()

    def test_get_missing(self):
        cur = MagicMock()
        cur.fetchone.return_value = None
        store, _ = self._store(cur)
        assert store.get("k") is None

    def test_set_serializes_json_with_expiry(self):
        cur = MagicMock()
        store, _ = self._store(cur)
        store.set("k", {"a": [1, 2]}, ttl_seconds=30)
        sql, params = cur.execute.call_args.args
        assert "ON CONFLICT (key) DO UPDATE" in sql
        assert params == ("k", json.dumps({"a": [1, 2]}), 1030.0)

    def test_incr_returns_int(self):
        cur = MagicMock()
        cur.fetchone.return_value = {"value": 3}
        store, _ = self._store(cur)
        assert store.incr("gen") == 3

    def test_update_locks_row(self):
        cur = MagicMock()
        cur.fetchone.return_value = {"value": {"n": 1}, "expires_at": None}
        store, _ = self._store(cur)
        result = store.update("k", lambda current: {"n": current["n"] + 1}, ttl_seconds=60)
        assert result == {"n": 2}
        statements = _executed_sql(cur)
        assert any("FOR UPDATE" in s for s in statements)
        assert cur.execute.call_args.args[1] == (json.dumps({"n": 2}), 1060.0, "k")

    def test_update_treats_expired_row_as_absent(self):
        cur = MagicMock()
        cur.fetchone.return_value = {"value": {"n": 9}, "expires_at": 999.0}
        store, _ = self._store(cur)
        seen = []
        store.update("k", lambda current: seen.append(current) or {"n": 0})
        assert seen == [None]

    def test_check_and_increment_admits_in_one_statement(self):
        cur = MagicMock()
        cur.fetchone.return_value = {"count": 4, "window_start": 900.0}
        store, _ = self._store(cur)
        admission = store.check_and_increment("rate:search:u1", limit=5, window_seconds=3600)
        assert admission.allowed
        assert admission.count == 4
        assert admission.window_start == 900.0
        assert cur.execute.call_count == 1
        params = cur.execute.call_args.args[1]
        assert params == {"key": "rate:search:u1", "now": 1000.0, "window": 3600, "limit": 5}

    def test_check_and_increment_rejects_when_full(self):
        cur = MagicMock()
        cur.fetchone.side_effect = [None, {"count": 5, "window_start": 900.0}]
        store, _ = self._store(cur)
        admission = store.check_and_increment("rate:search:u1", limit=5, window_seconds=3600)
        assert not admission.allowed
        assert admission.count == 5
        assert admission.window_start == 900.0

    def test_zero_limit_never_upserts(self):
        cur = MagicMock()
        cur.fetchone.return_value = None
        store, _ = self._store(cur)
        admission = store.check_and_increment("rate:search:u1", limit=0, window_seconds=3600)
        assert not admission.allowed
        assert not any("INSERT" in s for s in _executed_sql(cur))

    def test_delete(self):
        cur = MagicMock()
        cur.fetchone.return_value = {"key": "k"}
        store, _ = self._store(cur)
        assert store.delete("k") is True

    def test_purge_expired(self):
        cur = MagicMock()
        cur.rowcount = 7
        store, _ = self._store(cur)
        assert store.purge_expired() == 7

    def test_data_store_errors_propagate(self):
        from execution.member_search.errors import DataStoreError
        from execution.member_search.kv_store import PostgresKeyValueStore
        db = MagicMock()
        db.execute_with_retry.side_effect = DataStoreError("kv_get failed")
        with pytest.raises(DataStoreError):
            PostgresKeyValueStore(db=db).get("k")


class TestGetKvStore:
    """Tests for the backend factory."""

    def test_memory(self):
        from execution.member_search.kv_store import InMemoryKeyValueStore, get_kv_store
        assert isinstance(get_kv_store("memory"), InMemoryKeyValueStore)

    def test_unknown_falls_back_to_memory(self):
        from execution.member_search.kv_store import InMemoryKeyValueStore, get_kv_store
        assert isinstance(get_kv_store("redis"), InMemoryKeyValueStore)

    def test_postgres_initializes_schema(self):
        from execution.member_search.kv_store import PostgresKeyValueStore, get_kv_store
        cur = MagicMock()
        db, _ = _mock_db(cur)
        store = get_kv_store("postgres", db=db)
        assert isinstance(store, PostgresKeyValueStore)
        assert any("kv_rate_windows" in s for s in _executed_sql(cur))
