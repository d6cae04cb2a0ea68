"""Tests for the Database connection layer."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import pytest

from scholarkb.db.connection import BUSY_TIMEOUT_MS, Database


@pytest.fixture
def conn(tmp_path):
    connection = Database(tmp_path / ".scholarkb.db").connect()
    yield connection
    connection.close()


def test_connect_creates_workspace_file(tmp_path):
    db_path = tmp_path / ".scholarkb.db"
    Database(db_path).connect().close()
    assert db_path.exists()


def test_vec_distance_cosine_available(conn):
    dist = conn.execute(
        "SELECT vec_distance_cosine(vec_f32('[1, 0]'), vec_f32('[1, 0]'))"
    ).fetchone()[0]
    assert dist == pytest.approx(0.0, abs=1e-6)


def test_pragmas_applied(conn):
    assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == BUSY_TIMEOUT_MS


def test_rows_are_addressable_by_name(conn):
    conn.execute("CREATE TABLE t (x INTEGER)")
    conn.execute("INSERT INTO t VALUES (42)")
    assert conn.execute("SELECT x FROM t").fetchone()["x"] == 42


def test_connection_usable_from_worker_thread(conn):
    seen: list[int] = []

    def worker() -> None:
        seen.append(conn.execute("SELECT 7").fetchone()[0])

    t = threading.Thread(target=worker)
    t.start()
    t.join()
    assert seen == [7]


def test_context_manager_closes_connection(tmp_path):
    db = Database(str(tmp_path / ".scholarkb.db"))
    assert isinstance(db.db_path, Path)
    with db as conn:
        conn.execute("CREATE TABLE t (x INTEGER)")
    with pytest.raises(sqlite3.ProgrammingError):
        conn.execute("SELECT 1")
