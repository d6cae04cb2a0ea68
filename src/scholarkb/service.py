"""KnowledgeService: the library, ingestion, query and maintenance API.

Every public method returns a plain dict. Success carries ``"success": True``
plus the payload; any KnowledgeError, provider or OS failure is logged and
returned as ``{"success": False, "error": "<message>"}`` instead of raised, so
callers on the other side of a process or UI boundary never see a traceback.

Ingestion pipeline for one document:
  read (text / pypdf) → segment + metadata → chunks and FTS rows in one
  transaction → citation entries and cite usage → embeddings.

Embeddings are best-effort at ingestion time: without a usable embedding
provider the document is still indexed lexically and its chunks are left
without embeddings, to be filled later by generate_embeddings().
"""

from __future__ import annotations

import functools
import hashlib
import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from scholarkb.config import LibraryConfig, ScholarConfig, validate_library_config
from scholarkb.db.models import Chunk, Citation, Document, Library
from scholarkb.db.repository import Repository, dumps_metadata
from scholarkb.diagnostics import diagnose
from scholarkb.errors import (
    ConfigError,
    DocumentNotFoundError,
    KnowledgeError,
    LibraryNotFoundError,
)
from scholarkb.ingest.bibtex import parse_bibtex, scan_cite_usage
from scholarkb.ingest.embedding_indexer import EmbeddingIndexer, EmbeddingReport
from scholarkb.ingest.lexical_indexer import LexicalIndexer
from scholarkb.ingest.paths import validate_input_path
from scholarkb.ingest.pdf import read_pdf
from scholarkb.ingest.segmenter import (
    MEDIA_TYPES,
    Format,
    detect_format,
    extract_metadata,
    format_from_media_type,
    segment,
    to_chunks,
)
from scholarkb.rag.assembler import assemble
from scholarkb.rag.context_router import ContextRouter
from scholarkb.rag.llm_client import completion_provider, embedding_provider, rerank_provider
from scholarkb.rag.query_rewriter import QueryRewriter
from scholarkb.rag.reranker import Reranker
from scholarkb.rag.retriever import HybridRetriever, RetrieverType

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., dict[str, Any]])

ProgressCallback = Callable[[int, int], None]


def _reported(func: F) -> F:
    """Convert raised failures into ``{"success": False, "error": ...}``."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            return func(*args, **kwargs)
        except (KnowledgeError, ValueError, OSError, sqlite3.Error) as exc:
            logger.warning("%s failed: %s", func.__name__, exc)
            return {"success": False, "error": str(exc)}

    return wrapper  # type: ignore[return-value]


class KnowledgeService:
    """Facade over the repository, segmenters, indexers and retriever.

    Args:
        repo: Open Repository on an initialised database.
        config: Loaded configuration; library defaults and provider settings.
    """

    def __init__(self, repo: Repository, config: ScholarConfig | None = None) -> None:
        self._repo = repo
        self._config = config or ScholarConfig()
        self._lexical = LexicalIndexer(repo)
        self._cancel_events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    @property
    def repo(self) -> Repository:
        return self._repo

    @property
    def config(self) -> ScholarConfig:
        return self._config

    # ------------------------------------------------------------------
    # Libraries
    # ------------------------------------------------------------------

    @_reported
    def create_library(
        self,
        name: str,
        description: str = "",
        config: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a library whose settings start from the loaded configuration."""
        name = name.strip()
        if not name:
            raise ConfigError("Library name must not be empty")
        if self._repo.get_library_by_name(name) is not None:
            raise ConfigError(f"Library '{name}' already exists")
        lib_cfg = LibraryConfig.from_config(self._config)
        if config:
            lib_cfg = lib_cfg.merged(config)
        validate_library_config(lib_cfg)
        library = Library(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            config=json.dumps(lib_cfg.to_dict(), ensure_ascii=False),
        )
        self._repo.add_library(library)
        logger.info("Created library %s (%s)", name, library.id)
        return {"success": True, "library": _library_dict(self._repo.get_library(library.id))}

    @_reported
    def list_libraries(self) -> dict[str, Any]:
        libraries = []
        for library in self._repo.list_libraries():
            data = _library_dict(library)
            data["documentCount"] = len(self._repo.list_documents(library.id))
            data["chunkCount"] = self._repo.count_chunks(library.id)
            libraries.append(data)
        return {"success": True, "libraries": libraries}

    @_reported
    def get_library(self, library: str) -> dict[str, Any]:
        return {"success": True, "library": _library_dict(self._resolve_library(library))}

    @_reported
    def update_library_config(self, library: str, updates: dict[str, Any]) -> dict[str, Any]:
        """Apply nested *updates* to a library's settings and store them as one document.

        Existing chunks keep their segmentation; call reprocess_document to
        apply new chunking settings to them.
        """
        lib = self._resolve_library(library)
        lib_cfg = lib.config_obj.merged(updates)
        validate_library_config(lib_cfg)
        self._repo.update_library(
            lib.id, config=json.dumps(lib_cfg.to_dict(), ensure_ascii=False)
        )
        return {"success": True, "config": lib_cfg.to_dict()}

    @_reported
    def delete_library(self, library: str) -> dict[str, Any]:
        """Delete a library and everything it owns; cancels its running embedding jobs."""
        lib = self._resolve_library(library)
        with self._lock:
            event = self._cancel_events.pop(lib.id, None)
        if event is not None:
            event.set()
        self._repo.delete_library(lib.id)
        logger.info("Deleted library %s (%s)", lib.name, lib.id)
        return {"success": True, "libraryId": lib.id}

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @_reported
    def add_document(
        self,
        path: str | Path,
        library: str,
        *,
        bib_key: str | None = None,
        citation_text: str | None = None,
        metadata: dict[str, Any] | None = None,
        process_immediately: bool = True,
        embed: bool = True,
    ) -> dict[str, Any]:
        """Register a file in *library* and (by default) index it.

        Unchanged files (same path and content hash) are skipped; a changed
        file replaces its previous version; identical content under another
        path is reported as a duplicate.
        """
        lib = self._resolve_library(library)
        resolved = validate_input_path(path)
        if not resolved.is_file():
            raise DocumentNotFoundError(f"File not found: '{path}'")
        fmt = detect_format(resolved)
        if fmt is None:
            raise ValueError(f"Unsupported file type: '{resolved.suffix}'")

        raw = resolved.read_bytes()
        content_hash = hashlib.sha256(raw).hexdigest()
        existing = self._repo.get_document_by_path(lib.id, str(resolved))
        if existing is not None:
            if existing.content_hash == content_hash:
                if existing.process_status == "completed" or not process_immediately:
                    return _skipped(existing, "unchanged")
                return self._process(existing, embed=embed)
            logger.info("Content changed, re-ingesting %s", resolved)
            self._repo.delete_document(existing.id)
        duplicate = self._repo.get_document_by_hash(lib.id, content_hash)
        if duplicate is not None:
            return _skipped(duplicate, "duplicate")

        extracted: dict[str, Any] = {}
        if fmt is Format.PDF:
            pdf = read_pdf(resolved)
            content = pdf.text
            extracted = {"title": pdf.title, "authors": pdf.authors, "pageCount": pdf.page_count}
        else:
            content = raw.decode("utf-8", errors="replace")

        document = Document(
            id=str(uuid.uuid4()),
            library_id=lib.id,
            filename=resolved.name,
            path=str(resolved),
            media_type=MEDIA_TYPES[fmt],
            content_hash=content_hash,
            content=content,
            bib_key=bib_key,
            citation_text=citation_text,
            metadata=dumps_metadata(_merge_metadata(extracted, metadata)),
        )
        self._repo.add_document(document)
        if not process_immediately:
            return {"success": True, "documentId": document.id, "status": "pending"}
        return self._process(document, embed=embed)

    @_reported
    def add_text(
        self,
        content: str,
        library: str,
        *,
        title: str | None = None,
        media_type: str = "text",
        bib_key: str | None = None,
        citation_text: str | None = None,
        metadata: dict[str, Any] | None = None,
        process_immediately: bool = True,
        embed: bool = True,
    ) -> dict[str, Any]:
        """Add raw text (text, markdown or latex) without a backing file."""
        lib = self._resolve_library(library)
        fmt = format_from_media_type(media_type)
        if fmt is Format.PDF:
            raise ValueError("add_text accepts text, markdown, latex or bibtex content")
        content_hash = hashlib.sha256(content.encode("utf-8")).hexdigest()
        duplicate = self._repo.get_document_by_hash(lib.id, content_hash)
        if duplicate is not None:
            return _skipped(duplicate, "duplicate")

        extra = dict(metadata or {})
        if title:
            extra["title"] = title
        document = Document(
            id=str(uuid.uuid4()),
            library_id=lib.id,
            filename=title or "untitled",
            media_type=MEDIA_TYPES[fmt],
            content_hash=content_hash,
            content=content,
            bib_key=bib_key,
            citation_text=citation_text,
            metadata=dumps_metadata(extra),
        )
        self._repo.add_document(document)
        if not process_immediately:
            return {"success": True, "documentId": document.id, "status": "pending"}
        return self._process(document, embed=embed)

    @_reported
    def process_document(self, document_id: str, *, embed: bool = True) -> dict[str, Any]:
        """Index a pending (or failed) document."""
        return self._process(self._get_document(document_id), embed=embed)

    @_reported
    def reprocess_document(self, document_id: str, *, embed: bool = True) -> dict[str, Any]:
        """Re-segment a document with its library's current chunking settings."""
        document = self._get_document(document_id)
        logger.info("Reprocessing %s", document.filename)
        return self._process(document, embed=embed)

    @_reported
    def process_pending(self, library: str | None = None, *, embed: bool = True) -> dict[str, Any]:
        """Index every pending document (of one library, or all)."""
        library_id = self._resolve_library(library).id if library else None
        pending = [
            d for d in self._repo.list_documents(library_id) if d.process_status == "pending"
        ]
        processed = failed = 0
        for document in pending:
            result = self.process_document(document.id, embed=embed)
            if result["success"]:
                processed += 1
            else:
                failed += 1
        return {"success": True, "processed": processed, "failed": failed}

    @_reported
    def remove_document(self, document_id: str) -> dict[str, Any]:
        """Delete a document with its chunks, FTS rows, embeddings and cite usage."""
        document = self._get_document(document_id)
        removed = self._repo.delete_document(document.id)
        logger.info("Removed %s (%d chunks)", document.filename, removed)
        return {"success": True, "documentId": document.id, "removedChunks": removed}

    @_reported
    def list_documents(self, library: str | None = None) -> dict[str, Any]:
        library_id = self._resolve_library(library).id if library else None
        documents = [
            {
                "documentId": d.id,
                "libraryId": d.library_id,
                "filename": d.filename,
                "path": d.path,
                "mediaType": d.media_type,
                "status": d.process_status,
                "error": d.error_message,
                "bibKey": d.bib_key,
                "chunkCount": self._repo.count_chunks_by_document(d.id),
            }
            for d in self._repo.list_documents(library_id)
        ]
        return {"success": True, "documents": documents}

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    @_reported
    def search(
        self,
        query: str,
        library_ids: list[str] | None = None,
        top_k: int | None = None,
        score_threshold: float | None = None,
        retriever_type: RetrieverType | None = None,
        *,
        history: list[dict[str, str]] | None = None,
    ) -> dict[str, Any]:
        """Hybrid search; an empty result carries ``noResultsHint``."""
        if not query.strip():
            raise ValueError("Query must not be empty")
        resolved = self._resolve_libraries(library_ids)
        response = self._retriever(resolved).search(
            query,
            [lib.id for lib in resolved] or None,
            top_k,
            score_threshold,
            retriever_type,
            history=history,
        )
        return {"success": True, **response.to_dict()}

    @_reported
    def build_context(
        self,
        query: str,
        library_ids: list[str] | None = None,
        top_k: int | None = None,
        *,
        token_budget: int | None = None,
    ) -> dict[str, Any]:
        """Search and render the results as reference blocks within a token budget."""
        resolved = self._resolve_libraries(library_ids)
        response = self._retriever(resolved).search(
            query, [lib.id for lib in resolved] or None, top_k
        )
        budget = token_budget or self._library_config(resolved).retrieval.token_budget
        model = self._config.llm.model or "gpt-4o-mini"
        assembled = assemble(response.results, model=model, token_budget=budget)
        return {
            "success": True,
            "context": assembled.context,
            "citations": [c.to_dict() for c in assembled.citations],
            "totalTokens": assembled.total_tokens,
            "droppedResults": assembled.dropped,
            **response.to_dict(),
        }

    @_reported
    def route(self, query: str) -> dict[str, Any]:
        """Classify *query* without searching."""
        router = ContextRouter(
            completion_provider(self._config.llm),
            enabled=self._config.advanced.enable_llm_routing,
        )
        decision = router.route(query)
        params = router.get_retrieval_params(decision)
        return {
            "success": True,
            "decision": decision.to_dict(),
            "retrievalParams": {
                "topK": params.top_k,
                "includeAdjacent": params.include_adjacent,
                "diversify": params.diversify,
            },
        }

    @_reported
    def search_citations(self, library: str, text: str = "", limit: int = 20) -> dict[str, Any]:
        """Search a library's BibTeX entries, most-cited first."""
        lib = self._resolve_library(library)
        citations = [
            {
                "key": c.key,
                "entryType": c.entry_type,
                "title": c.title,
                "author": c.author,
                "year": c.year,
                "journal": c.journal,
                "usageCount": c.usage_count,
            }
            for c in self._repo.search_citations(lib.id, text, limit)
        ]
        return {"success": True, "citations": citations}

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    @_reported
    def get_diagnostics(self, library: str | None = None) -> dict[str, Any]:
        library_id = self._resolve_library(library).id if library else None
        return {"success": True, **diagnose(self._repo, library_id).to_dict()}

    @_reported
    def rebuild_fts(self, library: str | None = None) -> dict[str, Any]:
        library_id = self._resolve_library(library).id if library else None
        count = self._lexical.rebuild(library_id)
        return {"success": True, "recordCount": count}

    @_reported
    def generate_embeddings(
        self,
        library: str | None = None,
        *,
        rebuild: bool = False,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Embed chunks that have none yet (every chunk when *rebuild*).

        Repeated calls converge: a second run without new chunks processes 0.
        """
        libraries = [self._resolve_library(library)] if library else self._repo.list_libraries()
        total = EmbeddingReport()
        for lib in libraries:
            indexer = self._embedding_indexer(lib)
            if rebuild:
                report = indexer.rebuild(lib.id, on_progress=on_progress)
            else:
                report = indexer.generate_missing(lib.id, on_progress=on_progress)
            total.processed += report.processed
            total.failed += report.failed
            total.cancelled = total.cancelled or report.cancelled
            total.errors.extend(report.errors)
        return {
            "success": True,
            "processed": total.processed,
            "failed": total.failed,
            "cancelled": total.cancelled,
            "errors": total.errors[:20],
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_library(self, ref: str) -> Library:
        """Look a library up by id, then by name."""
        library = self._repo.get_library(ref) or self._repo.get_library_by_name(ref)
        if library is None:
            raise LibraryNotFoundError(f"Library '{ref}' not found")
        return library

    def _resolve_libraries(self, refs: list[str] | None) -> list[Library]:
        return [self._resolve_library(ref) for ref in refs or []]

    def _get_document(self, document_id: str) -> Document:
        document = self._repo.get_document(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document '{document_id}' not found")
        return document

    def _library_config(self, libraries: list[Library]) -> LibraryConfig:
        """Settings of the first requested library, else the configured defaults."""
        if libraries:
            return libraries[0].config_obj
        stored = self._repo.list_libraries()
        if stored:
            return stored[0].config_obj
        return LibraryConfig.from_config(self._config)

    def _retriever(self, libraries: list[Library]) -> HybridRetriever:
        lib_cfg = self._library_config(libraries)
        llm = completion_provider(self._config.llm)
        advanced = self._config.advanced
        return HybridRetriever(
            self._repo,
            retrieval=lib_cfg.retrieval,
            advanced=advanced,
            embedder=embedding_provider(lib_cfg.embedding),
            router=ContextRouter(llm, enabled=advanced.enable_llm_routing),
            rewriter=QueryRewriter(llm, enabled=advanced.enable_query_rewrite),
            reranker=Reranker(rerank_provider(self._config.rerank)),
        )

    def _cancel_event(self, library_id: str) -> threading.Event:
        with self._lock:
            return self._cancel_events.setdefault(library_id, threading.Event())

    def _embedding_indexer(self, library: Library) -> EmbeddingIndexer:
        embedding = library.config_obj.embedding
        return EmbeddingIndexer(
            self._repo,
            embedding_provider(embedding),
            batch_size=embedding.batch_size,
            expected_dimensions=embedding.dimensions,
            cancel_event=self._cancel_event(library.id),
        )

    def _process(self, document: Document, *, embed: bool) -> dict[str, Any]:
        """Segment, index and (optionally) embed one registered document."""
        library = self._repo.get_library(document.library_id)
        if library is None:
            raise LibraryNotFoundError(f"Library '{document.library_id}' not found")
        lib_cfg = library.config_obj
        fmt = format_from_media_type(document.media_type)
        content = document.content or ""

        self._repo.update_document_status(document.id, "processing")
        try:
            raw_chunks = segment(content, fmt, lib_cfg.chunking)
            chunks = to_chunks(raw_chunks, document.id, library.id, document.filename)
            self._repo.replace_document_chunks(document.id, chunks)
            self._index_citations(library.id, document, content, fmt)
            metadata = _merge_metadata(
                extract_metadata(content, fmt).to_dict(), document.metadata_dict
            )
            self._repo.update_document_metadata(document.id, dumps_metadata(metadata))
        except (KnowledgeError, ValueError, sqlite3.Error) as exc:
            self._repo.update_document_status(document.id, "failed", str(exc))
            raise
        except Exception as exc:
            logger.exception("Unexpected failure while indexing %s", document.filename)
            self._repo.update_document_status(document.id, "failed", repr(exc))
            raise KnowledgeError(f"Failed to index {document.filename}: {exc!r}") from exc
        self._repo.update_document_status(document.id, "completed")
        logger.info("Indexed %s: %d chunks", document.filename, len(chunks))

        result: dict[str, Any] = {
            "success": True,
            "documentId": document.id,
            "status": "completed",
            "chunkCount": len(chunks),
        }
        if embed:
            result["embedding"] = self._embed_new_chunks(library, chunks)
        return result

    def _embed_new_chunks(self, library: Library, chunks: list[Chunk]) -> dict[str, Any]:
        try:
            report = self._embedding_indexer(library).index(library.id, chunks)
        except ConfigError as exc:
            logger.warning(
                "Embeddings skipped for library %s: %s (run 'scholarkb embed' later)",
                library.name,
                exc,
            )
            return {"processed": 0, "failed": 0, "skipped": str(exc)}
        return {"processed": report.processed, "failed": report.failed}

    def _index_citations(
        self, library_id: str, document: Document, content: str, fmt: Format
    ) -> None:
        if fmt is Format.BIBTEX:
            entries = parse_bibtex(content)
            self._repo.upsert_citations(
                [
                    Citation(
                        library_id=library_id,
                        key=e.key,
                        entry_type=e.entry_type,
                        title=e.title,
                        author=e.author,
                        year=e.year,
                        journal=e.journal,
                        fields=json.dumps(e.fields, ensure_ascii=False),
                        document_id=document.id,
                    )
                    for e in entries
                ]
            )
            logger.debug("Stored %d BibTeX entries from %s", len(entries), document.filename)
            return
        usage = scan_cite_usage(content)
        self._repo.set_citation_usage(library_id, document.id, dict(usage))


def _merge_metadata(extracted: dict[str, Any], given: dict[str, Any] | None) -> dict[str, Any]:
    """Extracted values first, caller-supplied values win; empty values dropped."""
    merged = {k: v for k, v in extracted.items() if v not in (None, "", [])}
    merged.update(given or {})
    return merged


def _skipped(document: Document, reason: str) -> dict[str, Any]:
    return {
        "success": True,
        "documentId": document.id,
        "status": document.process_status,
        "skipped": True,
        "reason": reason,
    }


def _library_dict(library: Library | None) -> dict[str, Any]:
    if library is None:
        return {}
    return {
        "id": library.id,
        "name": library.name,
        "description": library.description,
        "config": json.loads(library.config),
        "createdAt": library.created_at,
        "updatedAt": library.updated_at,
    }
