"""Repository pattern for all scholarkb database operations.

Single interface for: libraries, documents, chunks, FTS5 search, embeddings,
citations. Methods commit their own work; multi-statement writes that must be
observed atomically (document chunk replacement, FTS rebuild, deletions) run
inside one ``with conn:`` transaction.
"""

from __future__ import annotations

import json
import re
import sqlite3
from collections.abc import Iterable, Sequence

from scholarkb.db.models import Chunk, Citation, Document, Library
from scholarkb.db.vectors import distance_to_similarity, to_blob

_CHUNK_COLUMNS = "id, document_id, library_id, chunk_index, text, chunk_type, metadata, created_at"
_DOCUMENT_COLUMNS = (
    "id, library_id, filename, path, media_type, content_hash, content, bib_key, "
    "citation_text, metadata, process_status, error_message, created_at"
)


def build_fts_query(query: str) -> str:
    """Turn free text into a safe FTS5 MATCH expression.

    FTS5 MATCH rejects punctuation like commas and quotes as syntax errors.
    Each word token is quoted and the tokens are OR-ed so BM25 ranks partial
    matches instead of requiring every term.
    """
    tokens = re.findall(r"\w+", query)
    return " OR ".join(f'"{t}"' for t in tokens)


def _in_clause(values: Sequence[object]) -> str:
    return ",".join("?" * len(values))


class Repository:
    """Data access layer for all scholarkb database entities.

    Wraps an open sqlite3.Connection and provides typed methods. The connection
    is owned by the caller and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see scholarkb.db.schema.initialize).
        """
        self._conn = conn

    @property
    def conn(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Libraries
    # ------------------------------------------------------------------

    def add_library(self, library: Library) -> None:
        """Insert a new library record."""
        self._conn.execute(
            "INSERT INTO libraries (id, name, description, config) VALUES (?, ?, ?, ?)",
            (library.id, library.name, library.description, library.config),
        )
        self._conn.commit()

    def get_library(self, library_id: str) -> Library | None:
        row = self._conn.execute(
            "SELECT id, name, description, config, created_at, updated_at "
            "FROM libraries WHERE id = ?",
            (library_id,),
        ).fetchone()
        return _row_to_library(row) if row else None

    def get_library_by_name(self, name: str) -> Library | None:
        row = self._conn.execute(
            "SELECT id, name, description, config, created_at, updated_at "
            "FROM libraries WHERE name = ?",
            (name,),
        ).fetchone()
        return _row_to_library(row) if row else None

    def list_libraries(self) -> list[Library]:
        """Return all libraries ordered by creation time (oldest first)."""
        rows = self._conn.execute(
            "SELECT id, name, description, config, created_at, updated_at "
            "FROM libraries ORDER BY created_at, name"
        ).fetchall()
        return [_row_to_library(r) for r in rows]

    def library_exists(self, library_id: str) -> bool:
        return (
            self._conn.execute(
                "SELECT 1 FROM libraries WHERE id = ?", (library_id,)
            ).fetchone()
            is not None
        )

    def update_library(
        self,
        library_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
        config: str | None = None,
    ) -> None:
        """Update library fields in a single statement.

        The config JSON is replaced as a whole, so concurrent readers observe
        either the old or the new configuration.
        """
        self._conn.execute(
            """
            UPDATE libraries SET
                name = COALESCE(?, name),
                description = COALESCE(?, description),
                config = COALESCE(?, config),
                updated_at = datetime('now')
            WHERE id = ?
            """,
            (name, description, config, library_id),
        )
        self._conn.commit()

    def delete_library(self, library_id: str) -> None:
        """Delete a library with its documents, chunks, embeddings, FTS rows and citations."""
        with self._conn:
            self._conn.execute(
                "DELETE FROM chunks_fts WHERE rowid IN "
                "(SELECT id FROM chunks WHERE library_id = ?)",
                (library_id,),
            )
            self._conn.execute("DELETE FROM libraries WHERE id = ?", (library_id,))

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def add_document(self, document: Document) -> None:
        """Insert a new document record."""
        self._conn.execute(
            f"""
            INSERT INTO documents ({_DOCUMENT_COLUMNS.replace(", created_at", "")})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document.id,
                document.library_id,
                document.filename,
                document.path,
                document.media_type,
                document.content_hash,
                document.content,
                document.bib_key,
                document.citation_text,
                document.metadata,
                document.process_status,
                document.error_message,
            ),
        )
        self._conn.commit()

    def get_document(self, document_id: str) -> Document | None:
        row = self._conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id = ?", (document_id,)
        ).fetchone()
        return _row_to_document(row) if row else None

    def get_documents(self, document_ids: Iterable[str]) -> dict[str, Document]:
        """Return {document_id: Document} for the ids that exist."""
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return {}
        rows = self._conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE id IN ({_in_clause(ids)})",
            ids,
        ).fetchall()
        return {r["id"]: _row_to_document(r) for r in rows}

    def get_document_by_path(self, library_id: str, path: str) -> Document | None:
        """Return the document ingested from *path* into *library_id*, or None."""
        row = self._conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE library_id = ? AND path = ?",
            (library_id, path),
        ).fetchone()
        return _row_to_document(row) if row else None

    def get_document_by_hash(self, library_id: str, content_hash: str) -> Document | None:
        row = self._conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents "
            "WHERE library_id = ? AND content_hash = ? ORDER BY created_at LIMIT 1",
            (library_id, content_hash),
        ).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(self, library_id: str | None = None) -> list[Document]:
        """Return documents (optionally for one library) ordered by creation time."""
        if library_id is None:
            rows = self._conn.execute(
                f"SELECT {_DOCUMENT_COLUMNS} FROM documents ORDER BY created_at"
            ).fetchall()
        else:
            rows = self._conn.execute(
                f"SELECT {_DOCUMENT_COLUMNS} FROM documents "
                "WHERE library_id = ? ORDER BY created_at",
                (library_id,),
            ).fetchall()
        return [_row_to_document(r) for r in rows]

    def update_document_status(
        self, document_id: str, status: str, error_message: str | None = None
    ) -> None:
        self._conn.execute(
            "UPDATE documents SET process_status = ?, error_message = ? WHERE id = ?",
            (status, error_message, document_id),
        )
        self._conn.commit()

    def update_document_metadata(self, document_id: str, metadata: str) -> None:
        self._conn.execute(
            "UPDATE documents SET metadata = ? WHERE id = ?", (metadata, document_id)
        )
        self._conn.commit()

    def delete_document(self, document_id: str) -> int:
        """Delete a document with its chunks, FTS rows, embeddings and citation usage.

        Returns:
            Number of chunks removed.
        """
        with self._conn:
            self._conn.execute(
                "DELETE FROM chunks_fts WHERE rowid IN "
                "(SELECT id FROM chunks WHERE document_id = ?)",
                (document_id,),
            )
            removed = self._conn.execute(
                "DELETE FROM chunks WHERE document_id = ?", (document_id,)
            ).rowcount
            self._conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
        return removed

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def replace_document_chunks(self, document_id: str, chunks: Sequence[Chunk]) -> list[int]:
        """Replace all chunks of *document_id* and their FTS rows in one transaction.

        Existing chunks (and, by cascade, their embeddings) are removed first.
        Readers never observe a chunk without its FTS row.

        Returns:
            The new chunk ids, in input order. Each input Chunk's ``id`` is set.
        """
        ids: list[int] = []
        with self._conn:
            self._conn.execute(
                "DELETE FROM chunks_fts WHERE rowid IN "
                "(SELECT id FROM chunks WHERE document_id = ?)",
                (document_id,),
            )
            self._conn.execute("DELETE FROM chunks WHERE document_id = ?", (document_id,))
            for chunk in chunks:
                cur = self._conn.execute(
                    """
                    INSERT INTO chunks
                        (document_id, library_id, chunk_index, text, chunk_type, metadata)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        document_id,
                        chunk.library_id,
                        chunk.chunk_index,
                        chunk.text,
                        chunk.chunk_type,
                        chunk.metadata,
                    ),
                )
                chunk_id = cur.lastrowid
                # Keep FTS5 in sync with explicit rowid mapping
                self._conn.execute(
                    "INSERT INTO chunks_fts(rowid, text) VALUES (?, ?)", (chunk_id, chunk.text)
                )
                chunk.id = chunk_id
                ids.append(chunk_id)
        return ids

    def get_chunk_at(self, document_id: str, chunk_index: int) -> Chunk | None:
        """Return the chunk at ordinal *chunk_index* of *document_id*, or None."""
        row = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE document_id = ? AND chunk_index = ?",
            (document_id, chunk_index),
        ).fetchone()
        return _row_to_chunk(row) if row else None

    def list_chunks(self, document_id: str) -> list[Chunk]:
        """Return the chunks of one document in ordinal order."""
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE document_id = ? ORDER BY chunk_index",
            (document_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks(self, library_id: str | None = None) -> int:
        if library_id is None:
            return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE library_id = ?", (library_id,)
        ).fetchone()[0]

    def count_chunks_by_document(self, document_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (document_id,)
        ).fetchone()[0]

    def chunks_missing_embeddings(
        self, library_id: str | None = None, limit: int | None = None
    ) -> list[Chunk]:
        """Return chunks that have no stored embedding, oldest first."""
        sql = (
            "SELECT c.id, c.document_id, c.library_id, c.chunk_index, c.text, c.chunk_type, "
            "c.metadata, c.created_at FROM chunks c "
            "LEFT JOIN embeddings e ON e.chunk_id = c.id WHERE e.chunk_id IS NULL"
        )
        params: list[object] = []
        if library_id is not None:
            sql += " AND c.library_id = ?"
            params.append(library_id)
        sql += " ORDER BY c.id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_chunk(r) for r in self._conn.execute(sql, params).fetchall()]

    # ------------------------------------------------------------------
    # FTS5 / BM25
    # ------------------------------------------------------------------

    def index_fts(self, chunks: Sequence[Chunk]) -> int:
        """Insert (or refresh) FTS rows for persisted *chunks*. Returns rows written."""
        rows = [(c.id, c.text) for c in chunks if c.id is not None]
        if not rows:
            return 0
        ids = [r[0] for r in rows]
        with self._conn:
            self._conn.execute(
                f"DELETE FROM chunks_fts WHERE rowid IN ({_in_clause(ids)})", ids
            )
            self._conn.executemany("INSERT INTO chunks_fts(rowid, text) VALUES (?, ?)", rows)
        return len(rows)

    def remove_fts(self, chunk_ids: Sequence[int]) -> int:
        """Delete FTS rows by chunk id. Returns rows deleted."""
        ids = list(chunk_ids)
        if not ids:
            return 0
        with self._conn:
            cur = self._conn.execute(
                f"DELETE FROM chunks_fts WHERE rowid IN ({_in_clause(ids)})", ids
            )
        return cur.rowcount

    def rebuild_fts(self, library_id: str | None = None) -> int:
        """Regenerate FTS rows from the chunks table in one transaction.

        With *library_id* only that library's rows are regenerated; otherwise the
        whole index is cleared first (dropping orphaned rows too).

        Returns:
            Number of FTS rows written.
        """
        with self._conn:
            if library_id is None:
                self._conn.execute("DELETE FROM chunks_fts")
                cur = self._conn.execute(
                    "INSERT INTO chunks_fts(rowid, text) SELECT id, text FROM chunks"
                )
            else:
                self._conn.execute(
                    "DELETE FROM chunks_fts WHERE rowid IN "
                    "(SELECT id FROM chunks WHERE library_id = ?)",
                    (library_id,),
                )
                cur = self._conn.execute(
                    "INSERT INTO chunks_fts(rowid, text) "
                    "SELECT id, text FROM chunks WHERE library_id = ?",
                    (library_id,),
                )
        return cur.rowcount

    def count_fts(self, library_id: str | None = None) -> int:
        """Count FTS rows (all rows, or those mapped to *library_id*'s chunks)."""
        if library_id is None:
            return self._conn.execute("SELECT COUNT(*) FROM chunks_fts").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks_fts WHERE rowid IN "
            "(SELECT id FROM chunks WHERE library_id = ?)",
            (library_id,),
        ).fetchone()[0]

    def count_orphan_fts(self) -> int:
        """Count FTS rows whose chunk no longer exists."""
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks_fts WHERE rowid NOT IN (SELECT id FROM chunks)"
        ).fetchone()[0]

    def search_fts(
        self, query: str, library_ids: Sequence[str] | None = None, limit: int = 10
    ) -> list[tuple[Chunk, float]]:
        """BM25 full-text search. Returns (chunk, bm25) sorted best-first.

        bm25() returns negative values; lower (more negative) = better match.
        The raw score is returned so callers can normalise it.
        """
        fts_query = build_fts_query(query)
        if not fts_query:
            return []
        sql = (
            "SELECT c.id, c.document_id, c.library_id, c.chunk_index, c.text, c.chunk_type, "
            "c.metadata, c.created_at, bm25(chunks_fts) AS score "
            "FROM chunks_fts JOIN chunks c ON c.id = chunks_fts.rowid "
            "WHERE chunks_fts MATCH ?"
        )
        params: list[object] = [fts_query]
        if library_ids:
            sql += f" AND c.library_id IN ({_in_clause(library_ids)})"
            params.extend(library_ids)
        sql += " ORDER BY score LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [(_row_to_chunk(r), r["score"]) for r in rows]

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def add_embedding(
        self, chunk_id: int, library_id: str, model: str, vector: Sequence[float]
    ) -> None:
        """Store (or replace) the embedding of one chunk, tagged with model and dimensions."""
        self._conn.execute(
            """
            INSERT OR REPLACE INTO embeddings (chunk_id, library_id, model, dimensions, vector)
            VALUES (?, ?, ?, ?, ?)
            """,
            (chunk_id, library_id, model, len(vector), to_blob(vector)),
        )
        self._conn.commit()

    def count_embeddings(self, library_id: str | None = None) -> int:
        if library_id is None:
            return self._conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]
        return self._conn.execute(
            "SELECT COUNT(*) FROM embeddings WHERE library_id = ?", (library_id,)
        ).fetchone()[0]

    def embedding_dimensions(self, library_id: str | None = None) -> list[int]:
        """Return the distinct embedding dimensionalities in use, ascending."""
        if library_id is None:
            rows = self._conn.execute(
                "SELECT DISTINCT dimensions FROM embeddings ORDER BY dimensions"
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT DISTINCT dimensions FROM embeddings WHERE library_id = ? "
                "ORDER BY dimensions",
                (library_id,),
            ).fetchall()
        return [r[0] for r in rows]

    def embedding_models(self, library_id: str) -> list[str]:
        rows = self._conn.execute(
            "SELECT DISTINCT model FROM embeddings WHERE library_id = ? ORDER BY model",
            (library_id,),
        ).fetchall()
        return [r[0] for r in rows]

    def delete_embeddings(
        self, library_id: str, chunk_ids: Sequence[int] | None = None
    ) -> int:
        """Drop embeddings of a library: all of them, or only those of *chunk_ids*."""
        with self._conn:
            if chunk_ids is None:
                cur = self._conn.execute(
                    "DELETE FROM embeddings WHERE library_id = ?", (library_id,)
                )
            else:
                ids = list(chunk_ids)
                if not ids:
                    return 0
                cur = self._conn.execute(
                    f"DELETE FROM embeddings WHERE library_id = ? "
                    f"AND chunk_id IN ({_in_clause(ids)})",
                    [library_id, *ids],
                )
        return cur.rowcount

    def search_vec(
        self,
        vector: Sequence[float],
        library_ids: Sequence[str] | None = None,
        limit: int = 10,
    ) -> list[tuple[Chunk, float]]:
        """Cosine nearest-neighbour search. Returns (chunk, similarity) best-first.

        Only embeddings with the query's dimensionality are compared; mixed
        dimensions are reported by diagnostics, not scored.
        """
        sql = (
            "SELECT c.id, c.document_id, c.library_id, c.chunk_index, c.text, c.chunk_type, "
            "c.metadata, c.created_at, vec_distance_cosine(e.vector, ?) AS distance "
            "FROM embeddings e JOIN chunks c ON c.id = e.chunk_id "
            "WHERE e.dimensions = ?"
        )
        params: list[object] = [to_blob(vector), len(vector)]
        if library_ids:
            sql += f" AND e.library_id IN ({_in_clause(library_ids)})"
            params.extend(library_ids)
        sql += " ORDER BY distance LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [(_row_to_chunk(r), distance_to_similarity(r["distance"])) for r in rows]

    # ------------------------------------------------------------------
    # Citations
    # ------------------------------------------------------------------

    def upsert_citations(self, citations: Sequence[Citation]) -> int:
        """Insert or replace BibTeX entries. Returns the number written."""
        with self._conn:
            self._conn.executemany(
                """
                INSERT OR REPLACE INTO citations
                    (library_id, key, entry_type, title, author, year, journal, fields, document_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        c.library_id,
                        c.key,
                        c.entry_type,
                        c.title,
                        c.author,
                        c.year,
                        c.journal,
                        c.fields,
                        c.document_id,
                    )
                    for c in citations
                ],
            )
        return len(citations)

    def set_citation_usage(self, library_id: str, document_id: str, counts: dict[str, int]) -> None:
        """Replace the per-key cite counts contributed by one document."""
        with self._conn:
            self._conn.execute(
                "DELETE FROM citation_usage WHERE document_id = ?", (document_id,)
            )
            self._conn.executemany(
                "INSERT INTO citation_usage (library_id, document_id, key, count) "
                "VALUES (?, ?, ?, ?)",
                [(library_id, document_id, k, n) for k, n in counts.items()],
            )

    def citation_usage(self, library_id: str) -> dict[str, int]:
        """Return {key: total cite count} aggregated across the library's documents."""
        rows = self._conn.execute(
            "SELECT key, SUM(count) AS total FROM citation_usage "
            "WHERE library_id = ? GROUP BY key",
            (library_id,),
        ).fetchall()
        return {r["key"]: r["total"] for r in rows}

    def search_citations(
        self, library_id: str, text: str = "", limit: int = 20
    ) -> list[Citation]:
        """Search entries by key/author/title/year, most-cited first."""
        like = f"%{text}%"
        rows = self._conn.execute(
            """
            SELECT ci.library_id, ci.key, ci.entry_type, ci.title, ci.author, ci.year,
                   ci.journal, ci.fields, ci.document_id,
                   COALESCE((SELECT SUM(u.count) FROM citation_usage u
                             WHERE u.library_id = ci.library_id AND u.key = ci.key), 0)
                       AS usage_count
            FROM citations ci
            WHERE ci.library_id = ?
              AND (ci.key LIKE ? OR ci.author LIKE ? OR ci.title LIKE ? OR ci.year LIKE ?)
            ORDER BY usage_count DESC, ci.key
            LIMIT ?
            """,
            (library_id, like, like, like, like, limit),
        ).fetchall()
        return [_row_to_citation(r) for r in rows]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_library(row: sqlite3.Row) -> Library:
    return Library(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        config=row["config"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        library_id=row["library_id"],
        filename=row["filename"],
        path=row["path"],
        media_type=row["media_type"],
        content_hash=row["content_hash"],
        content=row["content"],
        bib_key=row["bib_key"],
        citation_text=row["citation_text"],
        metadata=row["metadata"],
        process_status=row["process_status"],
        error_message=row["error_message"],
        created_at=row["created_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        document_id=row["document_id"],
        library_id=row["library_id"],
        chunk_index=row["chunk_index"],
        text=row["text"],
        chunk_type=row["chunk_type"],
        metadata=row["metadata"],
        created_at=row["created_at"],
    )


def _row_to_citation(row: sqlite3.Row) -> Citation:
    return Citation(
        library_id=row["library_id"],
        key=row["key"],
        entry_type=row["entry_type"],
        title=row["title"],
        author=row["author"],
        year=row["year"],
        journal=row["journal"],
        fields=row["fields"],
        document_id=row["document_id"],
        usage_count=row["usage_count"],
    )


def dumps_metadata(metadata: dict) -> str:
    """Serialise a metadata dict for storage (non-ASCII kept readable)."""
    return json.dumps(metadata, ensure_ascii=False)
