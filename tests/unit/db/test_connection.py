"""Tests for Database connection layer."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from contextcache.db.connection import Database


def test_connect_creates_file(tmp_path):
    db_path = tmp_path / ".contextcache.db"
    conn = Database(db_path).connect()
    conn.close()
    assert db_path.exists()


def test_foreign_keys_enabled(tmp_path):
    conn = Database(tmp_path / ".contextcache.db").connect()
    result = conn.execute("PRAGMA foreign_keys").fetchone()[0]
    conn.close()
    assert result == 1


def test_wal_journal_mode(tmp_path):
    conn = Database(tmp_path / ".contextcache.db").connect()
    mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
    conn.close()
    assert mode == "wal"


def test_in_memory_database():
    db = Database(":memory:")
    assert db.db_path == ":memory:"
    with db as conn:
        assert conn.execute("SELECT 1").fetchone()[0] == 1


def test_row_factory_set(tmp_path):
    conn = Database(tmp_path / ".contextcache.db").connect()
    conn.execute("CREATE TABLE t (x INTEGER)")
    conn.execute("INSERT INTO t VALUES (42)")
    row = conn.execute("SELECT x FROM t").fetchone()
    conn.close()
    assert row["x"] == 42


def test_connection_usable_from_other_thread(tmp_path):
    conn = Database(tmp_path / ".contextcache.db").connect()
    results = []

    def _query():
        results.append(conn.execute("SELECT 7").fetchone()[0])

    worker = threading.Thread(target=_query)
    worker.start()
    worker.join()
    conn.close()
    assert results == [7]


def test_context_manager_closes_connection(tmp_path):
    db = Database(tmp_path / ".contextcache.db")
    with db as conn:
        conn.execute("CREATE TABLE t (x INTEGER)")
    # Connection is closed; further use raises ProgrammingError
    with pytest.raises(Exception):
        conn.execute("SELECT 1")


def test_context_manager_accepts_path_str(tmp_path):
    db = Database(str(tmp_path / ".contextcache.db"))
    assert isinstance(db.db_path, Path)
    with db as conn:
        result = conn.execute("SELECT 1").fetchone()[0]
    assert result == 1
