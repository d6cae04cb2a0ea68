"""Embedding indexer — provider embeddings for persisted chunks.

Chunks are embedded in provider-sized batches. A failed batch is retried one
chunk at a time so a single bad or slow chunk (per-call timeout) only costs
that chunk; failures are counted and reported, never raised. Chunks left
without an embedding remain a queryable state (see
Repository.chunks_missing_embeddings) and are picked up by the next
``generate_missing`` run, which is therefore idempotent.

Each embedding row records the model and dimensionality that produced it.

Cancellation: the job stops between calls once its cancel event is set or its
library no longer exists. Provider calls run on a worker thread and are
abandoned, not awaited, when cancellation arrives mid-call.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

from scholarkb.db.models import Chunk
from scholarkb.db.repository import Repository
from scholarkb.errors import ProviderError
from scholarkb.rag.llm_client import Provider

logger = logging.getLogger(__name__)

_CANCEL_POLL_SECONDS = 0.2


class EmbeddingCancelled(Exception):
    """Raised internally when a job's library was deleted or its event was set."""


@dataclass
class EmbeddingReport:
    """Outcome of one indexing run."""

    processed: int = 0
    failed: int = 0
    cancelled: bool = False
    model: str = ""
    dimensions: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class EmbeddingIndexer:
    """Embed chunks for one library with a configured provider.

    Args:
        repo: Open Repository instance.
        provider: Embedding provider (resolved from the library's embedding config).
        batch_size: Maximum texts per provider request.
        expected_dimensions: Library-configured dimensionality; vectors of another
            size are still stored (diagnostics flags them) but logged.
        cancel_event: Set by the owner to stop the job (e.g. library deletion).
    """

    def __init__(
        self,
        repo: Repository,
        provider: Provider,
        *,
        batch_size: int = 32,
        expected_dimensions: int | None = None,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._repo = repo
        self._provider = provider
        self._batch_size = batch_size
        self._expected_dimensions = expected_dimensions
        self._cancel_event = cancel_event or threading.Event()

    @property
    def model(self) -> str:
        return self._provider.spec.model

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def index(
        self,
        library_id: str,
        chunks: Sequence[Chunk],
        on_progress: Callable[[int, int], None] | None = None,
    ) -> EmbeddingReport:
        """Embed persisted *chunks* of *library_id* and store the vectors.

        Args:
            library_id: Owning library.
            chunks: Chunks with ids (already written by the repository).
            on_progress: Called with ``(done, total)`` after every batch.

        Returns:
            EmbeddingReport with processed/failed counts.

        Raises:
            ConfigError: If the provider is not usable (no key/model). Raised
                before any work is attempted.
        """
        self._provider.validate()
        report = EmbeddingReport(model=self.model)
        pending = [c for c in chunks if c.id is not None and c.library_id == library_id]
        total = len(pending)
        dims: set[int] = set()

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scholarkb-embed")
        try:
            for start in range(0, total, self._batch_size):
                batch = pending[start : start + self._batch_size]
                self._embed_batch(pool, library_id, batch, report, dims)
                if on_progress is not None:
                    on_progress(min(start + len(batch), total), total)
        except EmbeddingCancelled:
            report.cancelled = True
            logger.info(
                "Embedding job for library %s cancelled after %d chunks",
                library_id,
                report.processed,
            )
        finally:
            # An abandoned in-flight call is not joined.
            pool.shutdown(wait=not report.cancelled, cancel_futures=True)

        report.dimensions = sorted(dims)
        if report.failed:
            logger.warning(
                "Embedding finished with %d failed chunk(s) of %d (library %s)",
                report.failed,
                total,
                library_id,
            )
        return report

    def generate_missing(
        self,
        library_id: str,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> EmbeddingReport:
        """Embed only the chunks of *library_id* that have no embedding yet.

        Running it twice without new chunks processes nothing the second time.
        """
        missing = self._repo.chunks_missing_embeddings(library_id)
        if not missing:
            return EmbeddingReport(model=self.model)
        return self.index(library_id, missing, on_progress=on_progress)

    def remove(self, library_id: str, chunk_ids: Sequence[int]) -> int:
        """Delete the embeddings of *chunk_ids* (restricted to *library_id*)."""
        return self._repo.delete_embeddings(library_id, chunk_ids=chunk_ids)

    def rebuild(
        self,
        library_id: str,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> EmbeddingReport:
        """Drop every embedding of *library_id* and re-embed all of its chunks."""
        self._provider.validate()
        self._repo.delete_embeddings(library_id)
        return self.generate_missing(library_id, on_progress=on_progress)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_cancelled(self, library_id: str) -> None:
        if self._cancel_event.is_set() or not self._repo.library_exists(library_id):
            raise EmbeddingCancelled(library_id)

    def _await(self, future: Future, library_id: str) -> list[list[float]]:
        """Wait for *future*, abandoning it if the job is cancelled meanwhile."""
        while True:
            if self._cancel_event.is_set():
                future.cancel()
                raise EmbeddingCancelled(library_id)
            try:
                return future.result(timeout=_CANCEL_POLL_SECONDS)
            except TimeoutError:
                continue

    def _embed_batch(
        self,
        pool: ThreadPoolExecutor,
        library_id: str,
        batch: list[Chunk],
        report: EmbeddingReport,
        dims: set[int],
    ) -> None:
        self._check_cancelled(library_id)
        texts = [c.text if c.text.strip() else " " for c in batch]
        try:
            vectors = self._await(pool.submit(self._provider.embed, texts), library_id)
        except ProviderError as exc:
            if len(batch) == 1:
                self._record_failure(batch[0], exc, report)
                return
            logger.debug("Batch of %d failed (%s); retrying per chunk", len(batch), exc)
            for chunk in batch:
                self._embed_batch(pool, library_id, [chunk], report, dims)
            return

        self._check_cancelled(library_id)
        for chunk, vector in zip(batch, vectors):
            self._store(library_id, chunk, vector, report, dims)

    def _store(
        self,
        library_id: str,
        chunk: Chunk,
        vector: list[float],
        report: EmbeddingReport,
        dims: set[int],
    ) -> None:
        if not vector:
            self._record_failure(chunk, ProviderError("empty vector"), report)
            return
        if self._expected_dimensions and len(vector) != self._expected_dimensions:
            logger.warning(
                "Model %s returned %d dimensions, library expects %d",
                self.model,
                len(vector),
                self._expected_dimensions,
            )
        self._repo.add_embedding(chunk.id, library_id, self.model, vector)
        dims.add(len(vector))
        report.processed += 1

    @staticmethod
    def _record_failure(chunk: Chunk, exc: Exception, report: EmbeddingReport) -> None:
        report.failed += 1
        report.errors.append(f"chunk {chunk.id}: {exc}")
        logger.warning("Embedding failed for chunk %s: %s", chunk.id, exc)
