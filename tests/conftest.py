"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from scholarkb.db.connection import Database
from scholarkb.db.schema import initialize


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".scholarkb.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture(autouse=True)
def isolated_global_config(tmp_path, monkeypatch):
    """Point the global config at an empty tmp location so ~/.scholarkb is never read."""
    monkeypatch.setattr(
        "scholarkb.config._GLOBAL_CONFIG_PATH", tmp_path / "global" / "config.yaml"
    )
    for var in (
        "SCHOLARKB_EMBEDDING_MODEL",
        "SCHOLARKB_LLM_MODEL",
        "SCHOLARKB_RERANK_MODEL",
        "SCHOLARKB_RERANK_PROVIDER",
    ):
        monkeypatch.delenv(var, raising=False)
