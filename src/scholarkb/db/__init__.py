"""scholarkb database layer."""

from scholarkb.db.connection import Database
from scholarkb.db.migrations import MIGRATIONS, run_migrations
from scholarkb.db.schema import initialize
from scholarkb.db.vectors import to_blob

__all__ = [
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "to_blob",
]
