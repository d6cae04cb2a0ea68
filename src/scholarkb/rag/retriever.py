"""Hybrid retriever: BM25 (FTS5) + cosine similarity (sqlite-vec), weighted fusion.

Pipeline for one query:
  1. Context routing (optional): a 'none' decision returns no results without
     touching either index; otherwise top_k / adjacency / diversity come from
     the decision.
  2. Query rewriting (optional): with bilingual search every variant is
     searched and the result lists are merged by Reciprocal Rank Fusion
     (score = sum of 1 / (k + rank), k = 60), keeping each chunk's best score.
  3. Per query, channel search:
       vector   score = cosine similarity (0-1)
       keyword  score = sigmoid-normalised |bm25|, divided by the best score
       hybrid   score = vector_weight * vector + bm25_weight * keyword
     When one channel returns nothing the weights collapse onto the other.
  4. Rerank (optional) over 2 x top_k candidates.
  5. Score threshold, diversification across documents, truncation to top_k,
     then adjacent-chunk expansion.

An empty result carries a ``no_results_hint`` telling an empty index and a
library without embeddings apart from a genuine miss.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from scholarkb.config import AdvancedCfg, RetrievalCfg
from scholarkb.db.models import Chunk, Document
from scholarkb.db.repository import Repository
from scholarkb.errors import ProviderError
from scholarkb.rag.context_router import ContextDecision, ContextRouter
from scholarkb.rag.llm_client import Provider
from scholarkb.rag.query_rewriter import QueryRewriter, RewrittenQuery
from scholarkb.rag.reranker import Reranker

logger = logging.getLogger(__name__)

RetrieverType = Literal["vector", "keyword", "hybrid"]
RETRIEVER_TYPES: tuple[str, ...] = ("vector", "keyword", "hybrid")

_RRF_K = 60
_RERANK_FETCH_FACTOR = 2
# Per-channel over-fetch before fusion, so chunks found by both channels meet.
_CHANNEL_FETCH_FACTOR = 2

HINT_EMPTY_INDEX = "empty_index"
HINT_NO_EMBEDDINGS = "no_embeddings"
HINT_NO_MATCH = "no_match"


@dataclass
class RetrievalResult:
    """A retrieved chunk with its fused score and source document details.

    Attributes:
        chunk: The Chunk row.
        score: Final score (0-1) after fusion and optional rerank.
        filename: Originating document's file name.
        source: Document path, or the file name for text added without a path.
        bib_key: Reference-manager citation key of the document, if any.
        citation_text: Formatted citation of the document, if any.
        vector_score: Cosine similarity, when the vector channel matched.
        keyword_score: Normalised BM25 score, when the keyword channel matched.
        adjacent: True for neighbours pulled in by adjacency expansion.
    """

    chunk: Chunk
    score: float
    filename: str = ""
    source: str = ""
    bib_key: str | None = None
    citation_text: str | None = None
    vector_score: float | None = None
    keyword_score: float | None = None
    adjacent: bool = False

    @property
    def chunk_id(self) -> int:
        assert self.chunk.id is not None
        return self.chunk.id

    @property
    def section(self) -> str:
        return str(self.chunk.metadata_dict.get("section") or "")

    def to_dict(self) -> dict[str, Any]:
        metadata = self.chunk.metadata_dict
        metadata.update(
            {
                "documentId": self.chunk.document_id,
                "libraryId": self.chunk.library_id,
                "chunkIndex": self.chunk.chunk_index,
                "chunkType": self.chunk.chunk_type,
                "bibKey": self.bib_key,
                "citationText": self.citation_text,
                "vectorScore": self.vector_score,
                "keywordScore": self.keyword_score,
                "adjacent": self.adjacent,
            }
        )
        return {
            "chunkId": self.chunk_id,
            "content": self.chunk.text,
            "score": round(self.score, 6),
            "filename": self.filename,
            "source": self.source,
            "metadata": metadata,
        }


@dataclass
class SearchResponse:
    """Outcome of one HybridRetriever.search call."""

    results: list[RetrievalResult] = field(default_factory=list)
    context_decision: ContextDecision | None = None
    rewritten_query: RewrittenQuery | None = None
    no_results_hint: str | None = None
    warnings: list[str] = field(default_factory=list)
    processing_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "results": [r.to_dict() for r in self.results],
            "processingTime": self.processing_ms,
        }
        if self.context_decision is not None:
            data["contextDecision"] = self.context_decision.to_dict()
        if self.rewritten_query is not None:
            data["rewrittenQuery"] = {
                "original": self.rewritten_query.original,
                "english": self.rewritten_query.english,
                "chinese": self.rewritten_query.chinese,
                "keywords": list(self.rewritten_query.keywords),
            }
        if self.no_results_hint is not None:
            data["noResultsHint"] = self.no_results_hint
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


@dataclass
class _Plan:
    top_k: int
    fetch_k: int
    include_adjacent: bool
    diversify: bool


class HybridRetriever:
    """Search one or more libraries through both indexes.

    Args:
        repo: Open Repository instance.
        retrieval: Retrieval settings (weights, defaults for top_k/threshold).
        advanced: Feature flags for routing, rewrite, rerank, bilingual search.
        embedder: Embedding provider matching the libraries' stored embeddings;
            None restricts search to the keyword channel.
        router: Context router (used when routing is enabled).
        rewriter: Query rewriter (used when rewriting is enabled).
        reranker: Reranker (used when reranking is enabled).
    """

    def __init__(
        self,
        repo: Repository,
        *,
        retrieval: RetrievalCfg | None = None,
        advanced: AdvancedCfg | None = None,
        embedder: Provider | None = None,
        router: ContextRouter | None = None,
        rewriter: QueryRewriter | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        self._repo = repo
        self._retrieval = retrieval or RetrievalCfg()
        self._advanced = advanced or AdvancedCfg()
        self._embedder = embedder
        self._router = router or ContextRouter(enabled=False)
        self._rewriter = rewriter or QueryRewriter(enabled=False)
        self._reranker = reranker or Reranker()

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        library_ids: list[str] | None = None,
        top_k: int | None = None,
        score_threshold: float | None = None,
        retriever_type: RetrieverType | None = None,
        *,
        history: list[dict[str, str]] | None = None,
        exclude_chunk_ids: list[int] | None = None,
    ) -> SearchResponse:
        """Run the retrieval pipeline for *query*.

        Args:
            query: Natural-language query.
            library_ids: Libraries to search (None = all).
            top_k: Result count when context routing is off.
            score_threshold: Minimum final score (defaults to the configured one).
            retriever_type: 'vector', 'keyword' or 'hybrid'.
            history: Recent chat messages for query rewriting.
            exclude_chunk_ids: Chunks never to return.

        Returns:
            SearchResponse; empty results carry a ``no_results_hint``.

        Raises:
            ValueError: If *retriever_type* is unknown.
            ConfigError: If the vector channel is needed but the embedding
                provider is not usable.
            ProviderError: If a vector-only search cannot embed the query.
        """
        started = time.monotonic()
        retriever_type = retriever_type or (
            "hybrid" if self._retrieval.use_hybrid_search else "vector"
        )
        if retriever_type not in RETRIEVER_TYPES:
            raise ValueError(
                f"Unknown retriever type {retriever_type!r}; expected one of {RETRIEVER_TYPES}"
            )
        threshold = (
            self._retrieval.score_threshold if score_threshold is None else score_threshold
        )
        response = SearchResponse()

        plan = self._plan(top_k)
        if self._advanced.enable_context_routing:
            decision = self._router.route(query)
            response.context_decision = decision
            if decision.context_type == "none":
                logger.debug("Query routed to 'none'; skipping retrieval")
                response.processing_ms = _elapsed_ms(started)
                return response
            params = self._router.get_retrieval_params(decision)
            plan = self._plan(params.top_k, params.include_adjacent, params.diversify)

        queries = [query]
        if self._advanced.enable_query_rewrite:
            rewritten = self._rewriter.rewrite(query, history)
            response.rewritten_query = rewritten
            queries = rewritten.variants(self._advanced.enable_bilingual_search) or [query]

        use_vector = self._vector_channel_needed(retriever_type, library_ids)
        if use_vector:
            assert self._embedder is not None
            self._embedder.validate()

        excluded = set(exclude_chunk_ids or ())
        result_sets = [
            self._search_one(
                q, retriever_type, use_vector, library_ids, plan.fetch_k, excluded, response
            )
            for q in queries
        ]
        candidates = self._merge_result_sets(result_sets)

        if self._advanced.enable_rerank and candidates:
            rerank_query = response.rewritten_query.original if response.rewritten_query else query
            candidates = self._rerank(rerank_query, candidates, plan.top_k)

        response.results = self._post_process(candidates, plan, threshold)
        if not response.results:
            response.no_results_hint = self._no_results_hint(retriever_type, library_ids)
        response.processing_ms = _elapsed_ms(started)
        logger.debug(
            "Search %r: %d result(s) in %d ms", query, len(response.results), response.processing_ms
        )
        return response

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _plan(
        self, top_k: int | None, include_adjacent: bool = False, diversify: bool = False
    ) -> _Plan:
        k = self._retrieval.max_results if top_k is None else max(0, top_k)
        fetch_k = k
        if self._advanced.enable_rerank or diversify:
            fetch_k = k * _RERANK_FETCH_FACTOR
        return _Plan(
            top_k=k, fetch_k=fetch_k, include_adjacent=include_adjacent, diversify=diversify
        )

    def _vector_channel_needed(
        self, retriever_type: str, library_ids: list[str] | None
    ) -> bool:
        if retriever_type == "keyword":
            return False
        if retriever_type == "vector":
            if self._embedder is None:
                raise ProviderError("Vector search requires an embedding provider")
            return True
        # hybrid: skip the provider call entirely when nothing is embedded yet
        return self._embedder is not None and self._count_embeddings(library_ids) > 0

    # ------------------------------------------------------------------
    # Channel search
    # ------------------------------------------------------------------

    def _search_one(
        self,
        query: str,
        retriever_type: str,
        use_vector: bool,
        library_ids: list[str] | None,
        limit: int,
        excluded: set[int],
        response: SearchResponse,
    ) -> list[RetrievalResult]:
        if limit <= 0:
            return []
        if retriever_type == "vector":
            vector_hits = self._vector_search(query, library_ids, limit, excluded)
            return self._to_results(
                [(chunk, score, score, None) for chunk, score in vector_hits]
            )
        if retriever_type == "keyword":
            keyword_hits = self._keyword_search(query, library_ids, limit, excluded)
            best = max((s for _, s in keyword_hits), default=1.0) or 1.0
            return self._to_results(
                [(chunk, score / best, None, score) for chunk, score in keyword_hits]
            )

        channel_limit = limit * _CHANNEL_FETCH_FACTOR
        vector_hits: list[tuple[Chunk, float]] = []
        if use_vector:
            try:
                vector_hits = self._vector_search(query, library_ids, channel_limit, excluded)
            except ProviderError as exc:
                logger.warning("Query embedding failed, using keyword search only: %s", exc)
                response.warnings.append(f"vector search unavailable: {exc}")
        keyword_hits = self._keyword_search(query, library_ids, channel_limit, excluded)
        return self._to_results(self._fuse(vector_hits, keyword_hits)[:limit])

    def _vector_search(
        self, query: str, library_ids: list[str] | None, limit: int, excluded: set[int]
    ) -> list[tuple[Chunk, float]]:
        assert self._embedder is not None
        vector = self._embedder.embed([query])[0]
        hits = self._repo.search_vec(vector, library_ids, limit + len(excluded))
        return [(c, s) for c, s in hits if c.id not in excluded][:limit]

    def _keyword_search(
        self, query: str, library_ids: list[str] | None, limit: int, excluded: set[int]
    ) -> list[tuple[Chunk, float]]:
        hits = self._repo.search_fts(query, library_ids, limit + len(excluded))
        hits = [(c, s) for c, s in hits if c.id not in excluded][:limit]
        return normalize_bm25(hits)

    def _fuse(
        self,
        vector_hits: list[tuple[Chunk, float]],
        keyword_hits: list[tuple[Chunk, float]],
    ) -> list[tuple[Chunk, float, float | None, float | None]]:
        """Weighted sum of both channels, best-first."""
        vector_weight = self._retrieval.vector_weight
        keyword_weight = self._retrieval.bm25_weight
        if keyword_hits and not vector_hits:
            vector_weight, keyword_weight = 0.0, 1.0
        elif vector_hits and not keyword_hits:
            vector_weight, keyword_weight = 1.0, 0.0

        chunk_map: dict[int, Chunk] = {}
        vector_scores: dict[int, float] = {}
        keyword_scores: dict[int, float] = {}
        for chunk, score in vector_hits:
            chunk_map[chunk.id] = chunk  # type: ignore[index]
            vector_scores[chunk.id] = score  # type: ignore[index]
        for chunk, score in keyword_hits:
            chunk_map.setdefault(chunk.id, chunk)  # type: ignore[arg-type]
            keyword_scores[chunk.id] = score  # type: ignore[index]

        fused = [
            (
                chunk,
                vector_weight * vector_scores.get(cid, 0.0)
                + keyword_weight * keyword_scores.get(cid, 0.0),
                vector_scores.get(cid),
                keyword_scores.get(cid),
            )
            for cid, chunk in chunk_map.items()
        ]
        fused.sort(key=lambda item: item[1], reverse=True)
        return fused

    def _to_results(
        self, scored: list[tuple[Chunk, float, float | None, float | None]]
    ) -> list[RetrievalResult]:
        documents = self._repo.get_documents({chunk.document_id for chunk, *_ in scored})
        return [
            _make_result(chunk, score, documents.get(chunk.document_id), vec, kw)
            for chunk, score, vec, kw in scored
        ]

    # ------------------------------------------------------------------
    # Merge, rerank, post-process
    # ------------------------------------------------------------------

    def _merge_result_sets(self, result_sets: list[list[RetrievalResult]]) -> list[RetrievalResult]:
        non_empty = [s for s in result_sets if s]
        if not non_empty:
            return []
        if len(non_empty) == 1:
            return non_empty[0]
        return rrf_merge(non_empty, k=self._retrieval.rrf_k or _RRF_K)

    def _rerank(
        self, query: str, candidates: list[RetrievalResult], top_k: int
    ) -> list[RetrievalResult]:
        ranked = self._reranker.rerank(
            query, [(r.chunk.text, r.score) for r in candidates], top_k
        )
        return [replace(candidates[idx], score=score) for idx, score in ranked]

    def _post_process(
        self, candidates: list[RetrievalResult], plan: _Plan, threshold: float
    ) -> list[RetrievalResult]:
        results = [r for r in candidates if r.score >= threshold]
        if plan.diversify and len(results) > 1:
            results = diversify(results)
        results = results[: plan.top_k]
        if plan.include_adjacent and results:
            results = self._expand_adjacent(results)
        return results

    def _expand_adjacent(self, results: list[RetrievalResult]) -> list[RetrievalResult]:
        """Insert each hit's neighbouring chunks (index +/- 1) around it."""
        seen = {r.chunk_id for r in results}
        expanded: list[RetrievalResult] = []
        for result in results:
            before = self._neighbour(result, -1, seen)
            after = self._neighbour(result, +1, seen)
            expanded.extend(r for r in (before, result, after) if r is not None)
        return expanded

    def _neighbour(
        self, anchor: RetrievalResult, offset: int, seen: set[int]
    ) -> RetrievalResult | None:
        index = anchor.chunk.chunk_index + offset
        if index < 0:
            return None
        chunk = self._repo.get_chunk_at(anchor.chunk.document_id, index)
        if chunk is None or chunk.id in seen:
            return None
        seen.add(chunk.id)  # type: ignore[arg-type]
        return replace(
            anchor, chunk=chunk, vector_score=None, keyword_score=None, adjacent=True
        )

    # ------------------------------------------------------------------
    # Empty-result diagnosis
    # ------------------------------------------------------------------

    def _no_results_hint(self, retriever_type: str, library_ids: list[str] | None) -> str:
        if self._count_chunks(library_ids) == 0:
            return HINT_EMPTY_INDEX
        if retriever_type != "keyword" and self._count_embeddings(library_ids) == 0:
            return HINT_NO_EMBEDDINGS
        return HINT_NO_MATCH

    def _count_chunks(self, library_ids: list[str] | None) -> int:
        if not library_ids:
            return self._repo.count_chunks()
        return sum(self._repo.count_chunks(lib) for lib in library_ids)

    def _count_embeddings(self, library_ids: list[str] | None) -> int:
        if not library_ids:
            return self._repo.count_embeddings()
        return sum(self._repo.count_embeddings(lib) for lib in library_ids)


# ------------------------------------------------------------------
# Score helpers
# ------------------------------------------------------------------


def normalize_bm25(hits: list[tuple[Chunk, float]]) -> list[tuple[Chunk, float]]:
    """Map raw FTS5 bm25() values onto (0, 1) with an adaptive sigmoid.

    sigmoid(x) = 1 / (1 + exp(-k * (x - midpoint))) on x = |bm25|, with
    midpoint = 0.5 * max and k = max(0.05, 5 / max), so the best hit lands
    near 0.92 and a hit at half the best score at 0.5.
    """
    if not hits:
        return []
    magnitudes = [abs(score) for _, score in hits]
    max_score = max(magnitudes)
    midpoint, k = 10.0, 0.1
    if max_score > 0:
        midpoint = max_score * 0.5
        k = max(0.05, 5.0 / max_score)
    return [
        (chunk, 1.0 / (1.0 + math.exp(-k * (magnitude - midpoint))))
        for (chunk, _), magnitude in zip(hits, magnitudes)
    ]


def rrf_merge(
    result_sets: list[list[RetrievalResult]], k: int = _RRF_K
) -> list[RetrievalResult]:
    """Merge ranked lists by Reciprocal Rank Fusion.

    Ordering follows sum(1 / (k + rank)) with 1-based ranks; each merged
    result keeps the highest score it had in any list so thresholds still
    apply to real scores.
    """
    rrf: dict[int, float] = {}
    best: dict[int, RetrievalResult] = {}
    for results in result_sets:
        for rank, result in enumerate(results, start=1):
            cid = result.chunk_id
            rrf[cid] = rrf.get(cid, 0.0) + 1.0 / (k + rank)
            if cid not in best or result.score > best[cid].score:
                best[cid] = result
    ordered = sorted(rrf, key=lambda cid: rrf[cid], reverse=True)
    return [best[cid] for cid in ordered]


def diversify(results: list[RetrievalResult]) -> list[RetrievalResult]:
    """Reorder so each document's best hit comes before any second hit."""
    seen: set[str] = set()
    first: list[RetrievalResult] = []
    rest: list[RetrievalResult] = []
    for result in results:
        if result.chunk.document_id in seen:
            rest.append(result)
        else:
            seen.add(result.chunk.document_id)
            first.append(result)
    return first + rest


def _make_result(
    chunk: Chunk,
    score: float,
    document: Document | None,
    vector_score: float | None,
    keyword_score: float | None,
) -> RetrievalResult:
    filename = document.filename if document else ""
    return RetrievalResult(
        chunk=chunk,
        score=score,
        filename=filename,
        source=(document.path or filename) if document else "",
        bib_key=document.bib_key if document else None,
        citation_text=document.citation_text if document else None,
        vector_score=vector_score,
        keyword_score=keyword_score,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
