"""Read-only index consistency report.

diagnose() only counts; it never writes. Repairs are separate, explicit calls
(Repository.rebuild_fts, EmbeddingIndexer.generate_missing) exposed by the
service facade as rebuild_fts() and generate_embeddings().

Detected faults:
  - chunks without an embedding (missing embeddings are a normal, queryable
    state, reported as a count rather than an issue)
  - chunk and FTS counts that differ, or FTS rows pointing at deleted chunks
  - more than one embedding dimensionality inside a library
  - stored dimensionality that differs from the library's configured one
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from scholarkb.db.models import Library
from scholarkb.db.repository import Repository
from scholarkb.errors import ConsistencyError, LibraryNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class LibraryStats:
    library_id: str
    name: str
    document_count: int = 0
    pending_documents: int = 0
    failed_documents: int = 0
    chunk_count: int = 0
    embedding_count: int = 0
    fts_count: int = 0
    embedding_models: list[str] = field(default_factory=list)
    embedding_dimensions: list[int] = field(default_factory=list)
    configured_dimensions: int | None = None

    @property
    def missing_embeddings(self) -> int:
        return max(0, self.chunk_count - self.embedding_count)

    def to_dict(self) -> dict[str, Any]:
        return {
            "libraryId": self.library_id,
            "name": self.name,
            "documentCount": self.document_count,
            "pendingDocuments": self.pending_documents,
            "failedDocuments": self.failed_documents,
            "chunkCount": self.chunk_count,
            "embeddingCount": self.embedding_count,
            "ftsCount": self.fts_count,
            "missingEmbeddings": self.missing_embeddings,
            "embeddingModels": list(self.embedding_models),
            "embeddingDimensions": list(self.embedding_dimensions),
            "configuredDimensions": self.configured_dimensions,
        }


@dataclass
class DiagnosticsReport:
    total_chunks: int = 0
    total_embeddings: int = 0
    fts_records: int = 0
    embedding_dimensions: list[int] = field(default_factory=list)
    orphan_fts_records: int = 0
    per_library: list[LibraryStats] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)

    @property
    def missing_embeddings(self) -> int:
        return max(0, self.total_chunks - self.total_embeddings)

    @property
    def healthy(self) -> bool:
        return not self.issues

    def raise_for_issues(self) -> None:
        """Raise ConsistencyError listing every detected issue (no-op when healthy)."""
        if self.issues:
            raise ConsistencyError("; ".join(self.issues))

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalChunks": self.total_chunks,
            "totalEmbeddings": self.total_embeddings,
            "ftsRecords": self.fts_records,
            "embeddingDimensions": list(self.embedding_dimensions),
            "missingEmbeddings": self.missing_embeddings,
            "orphanFtsRecords": self.orphan_fts_records,
            "perLibraryStats": [s.to_dict() for s in self.per_library],
            "issues": list(self.issues),
            "healthy": self.healthy,
        }


def diagnose(repo: Repository, library_id: str | None = None) -> DiagnosticsReport:
    """Collect index statistics for one library or the whole database.

    Args:
        repo: Open Repository instance.
        library_id: Restrict the report to this library (None = all libraries).

    Returns:
        DiagnosticsReport. Faults are listed in ``issues``; nothing is repaired.

    Raises:
        LibraryNotFoundError: If *library_id* is given but does not exist.
    """
    if library_id is not None:
        library = repo.get_library(library_id)
        if library is None:
            raise LibraryNotFoundError(f"Library '{library_id}' not found")
        libraries = [library]
    else:
        libraries = repo.list_libraries()

    report = DiagnosticsReport(
        total_chunks=repo.count_chunks(library_id),
        total_embeddings=repo.count_embeddings(library_id),
        fts_records=repo.count_fts(library_id),
        embedding_dimensions=repo.embedding_dimensions(library_id),
    )
    if library_id is None:
        # Orphans belong to no library, so only the global report sees them.
        report.orphan_fts_records = repo.count_orphan_fts()
        if report.orphan_fts_records:
            report.issues.append(
                f"{report.orphan_fts_records} FTS record(s) reference deleted chunks"
            )

    for library in libraries:
        stats = _library_stats(repo, library)
        report.per_library.append(stats)
        report.issues.extend(_library_issues(stats))

    if report.issues:
        logger.info("Diagnostics found %d issue(s)", len(report.issues))
    return report


def _library_stats(repo: Repository, library: Library) -> LibraryStats:
    documents = repo.list_documents(library.id)
    stats = LibraryStats(
        library_id=library.id,
        name=library.name,
        document_count=len(documents),
        pending_documents=sum(1 for d in documents if d.process_status == "pending"),
        failed_documents=sum(1 for d in documents if d.process_status == "failed"),
        chunk_count=repo.count_chunks(library.id),
        embedding_count=repo.count_embeddings(library.id),
        fts_count=repo.count_fts(library.id),
        embedding_models=repo.embedding_models(library.id),
        embedding_dimensions=repo.embedding_dimensions(library.id),
    )
    try:
        stats.configured_dimensions = library.config_obj.embedding.dimensions
    except (json.JSONDecodeError, ValueError) as exc:
        logger.warning("Library %s has an unreadable config: %s", library.name, exc)
    return stats


def _library_issues(stats: LibraryStats) -> list[str]:
    issues: list[str] = []
    label = f"Library '{stats.name}'"
    if stats.fts_count != stats.chunk_count:
        issues.append(
            f"{label}: {stats.chunk_count} chunk(s) but {stats.fts_count} FTS record(s); "
            "run rebuild-fts"
        )
    if len(stats.embedding_dimensions) > 1:
        dims = ", ".join(str(d) for d in stats.embedding_dimensions)
        issues.append(f"{label}: mixed embedding dimensions ({dims}); re-embed the library")
    elif (
        stats.embedding_dimensions
        and stats.configured_dimensions
        and stats.embedding_dimensions[0] != stats.configured_dimensions
    ):
        issues.append(
            f"{label}: embeddings have {stats.embedding_dimensions[0]} dimensions, "
            f"config expects {stats.configured_dimensions}"
        )
    return issues
