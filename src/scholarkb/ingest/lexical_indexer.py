"""Lexical (FTS5/BM25) indexer kept in lockstep with the chunks table.

Document ingestion writes FTS rows in the same transaction as the chunks
(Repository.replace_document_chunks); this indexer covers the explicit
operations: indexing already-persisted chunks, removal, and the full rebuild
used to repair drift reported by diagnostics.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from scholarkb.db.models import Chunk
from scholarkb.db.repository import Repository

logger = logging.getLogger(__name__)


class LexicalIndexer:
    """FTS5 index maintenance for one workspace database."""

    def __init__(self, repo: Repository) -> None:
        self._repo = repo

    def index(self, library_id: str, chunks: Sequence[Chunk]) -> int:
        """(Re)write FTS rows for persisted *chunks* belonging to *library_id*.

        Returns:
            Number of FTS rows written.
        """
        owned = [c for c in chunks if c.library_id == library_id]
        skipped = len(chunks) - len(owned)
        if skipped:
            logger.warning("Ignored %d chunk(s) not owned by library %s", skipped, library_id)
        return self._repo.index_fts(owned)

    def remove(self, library_id: str, chunk_ids: Sequence[int]) -> int:
        """Delete FTS rows for *chunk_ids*. Returns rows removed."""
        removed = self._repo.remove_fts(chunk_ids)
        logger.debug("Removed %d FTS row(s) from library %s", removed, library_id)
        return removed

    def rebuild(self, library_id: str | None = None) -> int:
        """Regenerate the FTS index from the chunks table.

        Args:
            library_id: Limit the rebuild to one library; None rebuilds every
                library and drops orphaned rows.

        Returns:
            Number of FTS records after the rebuild.
        """
        count = self._repo.rebuild_fts(library_id)
        logger.info(
            "Rebuilt FTS index (%s): %d records", library_id or "all libraries", count
        )
        return count
