"""Tests for the Meridian SQLite layer: schema, transactions, JSON columns."""

import logging
import time

import pytest

from db import (
    RateLimitStore,
    decode_json,
    encode_json,
    next_updated_at,
    setup_logging,
    sqlite_connection,
    sqlite_transaction,
)


@pytest.fixture
def isolated_db(tmp_path, monkeypatch):
    """Redirect the default SQLite DB to a temp directory."""
    db_file = str(tmp_path / "test_meridian.db")
    monkeypatch.setenv("MERIDIAN_DB_PATH", db_file)
    yield db_file


# ── SQLite Connection ─────────────────────────────────────────────────


class TestSQLiteConnection:
    """Verify connection management and table creation."""

    def test_connection_creates_tables(self, isolated_db):
        with sqlite_connection() as conn:
            tables = {r["name"] for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()}
        assert {"jobs", "transactions", "reputation_subjects", "reputation_events",
                "events", "escrows", "chain_ratings", "rate_limit_hits"} <= tables

    def test_wal_mode(self, isolated_db):
        with sqlite_connection(isolated_db) as conn:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode == "wal"

    def test_transaction_commits(self, isolated_db):
        with sqlite_transaction() as conn:
            conn.execute(
                "INSERT INTO escrows (escrow_id, job_id, provider, amount, status, created_at, updated_at)"
                " VALUES ('esc_1', 'j1', '0xabc', '5', 'pending', 0, 0)"
            )
        with sqlite_connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM escrows").fetchone()[0] == 1

    def test_transaction_rolls_back_on_error(self, isolated_db):
        with pytest.raises(RuntimeError):
            with sqlite_transaction() as conn:
                conn.execute(
                    "INSERT INTO escrows (escrow_id, job_id, provider, amount, status, created_at, updated_at)"
                    " VALUES ('esc_1', 'j1', '0xabc', '5', 'pending', 0, 0)"
                )
                raise RuntimeError("boom")
        with sqlite_connection() as conn:
            assert conn.execute("SELECT COUNT(*) FROM escrows").fetchone()[0] == 0


class TestJsonColumns:
    def test_round_trip_is_sorted(self):
        assert encode_json({"b": 1, "a": [1, 2]}) == '{"a": [1, 2], "b": 1}'
        assert decode_json('{"a": 1}') == {"a": 1}

    def test_null_and_malformed_fall_back(self):
        assert decode_json(None, {}) == {}
        assert decode_json("", []) == []
        assert decode_json("{not json", {"x": 1}) == {"x": 1}

    def test_already_decoded(self):
        assert decode_json({"a": 1}) == {"a": 1}


class TestUpdatedAt:
    def test_strictly_increasing(self):
        future = time.time() + 100
        assert next_updated_at(future) > future

    def test_tracks_clock(self):
        before = time.time()
        assert next_updated_at(0.0) >= before


class TestLogging:
    def test_setup_is_idempotent(self):
        logger = setup_logging()
        count = len(logger.handlers)
        assert setup_logging() is logger
        assert len(logger.handlers) == count
        assert logger.name == "meridian"
        assert logging.getLogger("meridian.escrow").parent is logger


class TestRateLimitStore:
    """Sliding window shared through SQLite."""

    def test_limit_per_bucket(self, isolated_db):
        store = RateLimitStore(isolated_db, limit=2, window=60)
        assert store.hit("10.0.0.1", now=100.0)
        assert store.hit("10.0.0.1", now=101.0)
        assert not store.hit("10.0.0.1", now=102.0)
        assert store.hit("10.0.0.2", now=102.0)
        assert store.buckets() == {"10.0.0.1": 2, "10.0.0.2": 1}

    def test_window_slides_and_idle_buckets_are_pruned(self, isolated_db):
        store = RateLimitStore(isolated_db, limit=1, window=60)
        assert store.hit("10.0.0.1", now=100.0)
        assert not store.hit("10.0.0.1", now=159.0)
        assert store.hit("10.0.0.2", now=161.0)
        assert store.buckets() == {"10.0.0.2": 1}
        assert store.hit("10.0.0.1", now=162.0)

    def test_stores_on_one_database_share_counts(self, isolated_db):
        first = RateLimitStore(isolated_db, limit=1, window=60)
        second = RateLimitStore(isolated_db, limit=1, window=60)
        assert first.hit("10.0.0.1", now=100.0)
        assert not second.hit("10.0.0.1", now=100.5)
