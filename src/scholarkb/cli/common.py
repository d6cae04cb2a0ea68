"""Shared CLI plumbing: database/service opening and result reporting."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import typer
from rich.console import Console

from scholarkb.cli.errors import err_config, err_failed, err_no_db
from scholarkb.config import ConfigError, ScholarConfig, load_config
from scholarkb.db.connection import Database
from scholarkb.db.repository import Repository
from scholarkb.db.schema import initialize
from scholarkb.service import KnowledgeService

console = Console()

DEFAULT_DB = Path(".scholarkb.db")


def open_db(db_path: Path) -> sqlite3.Connection:
    conn = Database(db_path).connect()
    initialize(conn)
    return conn


def load_config_or_exit() -> ScholarConfig:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc


@contextmanager
def service_for(db: Path, *, create: bool = False) -> Iterator[KnowledgeService]:
    """Yield a KnowledgeService on *db*; exits 1 if the database is missing.

    Args:
        db: Workspace database path.
        create: Create the database when it does not exist yet.
    """
    if not create and not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)
    cfg = load_config_or_exit()
    conn = open_db(db)
    try:
        yield KnowledgeService(Repository(conn), cfg)
    finally:
        conn.close()


def check(result: dict[str, Any], action: str) -> dict[str, Any]:
    """Return *result* if it succeeded, else print the error and exit 1."""
    if not result.get("success"):
        console.print(err_failed(action, str(result.get("error", "unknown error"))))
        raise typer.Exit(1)
    return result
