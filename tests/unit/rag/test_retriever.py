"""Tests for the hybrid retriever and its score helpers."""

from __future__ import annotations

import math
from unittest.mock import MagicMock

import pytest

from scholarkb.config import AdvancedCfg, RetrievalCfg
from scholarkb.db.models import Chunk, Document, Library
from scholarkb.db.repository import Repository
from scholarkb.errors import ConfigError, ProviderError
from scholarkb.rag.context_router import ContextRouter
from scholarkb.rag.query_rewriter import RewrittenQuery
from scholarkb.rag.retriever import (
    HINT_EMPTY_INDEX,
    HINT_NO_EMBEDDINGS,
    HINT_NO_MATCH,
    HybridRetriever,
    RetrievalResult,
    SearchResponse,
    diversify,
    normalize_bm25,
    rrf_merge,
)

# ------------------------------------------------------------------
# Fixtures
# ------------------------------------------------------------------

_CORPUS = {
    "doc-1": [
        ("Transformers use self attention layers", [1.0, 0.0, 0.0]),
        ("Residual connections stabilise training", [0.0, 1.0, 0.0]),
        ("Attention weights are softmax normalised", [0.7, 0.7, 0.0]),
    ],
    "doc-2": [
        ("Convolutional filters capture local patterns", [0.0, 0.0, 1.0]),
        ("Attention maps visualise convolution", [0.6, 0.8, 0.0]),
    ],
}

_NO_ROUTING = AdvancedCfg(enable_context_routing=False)


def _seed(repo: Repository, embed: bool) -> dict[str, int]:
    repo.add_library(Library(id="lib-1", name="papers"))
    ids: dict[str, int] = {}
    for doc_id, rows in _CORPUS.items():
        repo.add_document(
            Document(
                id=doc_id,
                library_id="lib-1",
                filename=f"{doc_id}.tex",
                path=f"/data/{doc_id}.tex",
                media_type="latex",
                content_hash=doc_id,
                bib_key="smith2020" if doc_id == "doc-1" else None,
            )
        )
        chunks = [
            Chunk(document_id=doc_id, library_id="lib-1", chunk_index=i, text=text)
            for i, (text, _) in enumerate(rows)
        ]
        for chunk, chunk_id in zip(chunks, repo.replace_document_chunks(doc_id, chunks)):
            ids[chunk.text] = chunk_id
        if embed:
            for chunk, (_, vector) in zip(chunks, rows):
                repo.add_embedding(chunk.id, "lib-1", "m", vector)
    return ids


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


@pytest.fixture
def embedded(repo):
    return _seed(repo, embed=True)


@pytest.fixture
def unembedded(repo):
    return _seed(repo, embed=False)


@pytest.fixture
def embedder():
    provider = MagicMock()
    provider.embed.return_value = [[1.0, 0.0, 0.0]]
    return provider


def _texts(response: SearchResponse) -> list[str]:
    return [r.chunk.text for r in response.results]


# ------------------------------------------------------------------
# Channels
# ------------------------------------------------------------------


def test_keyword_search_scores_relative_to_best(repo, unembedded):
    retriever = HybridRetriever(repo, advanced=_NO_ROUTING)
    response = retriever.search("attention", retriever_type="keyword", score_threshold=0.0)

    assert len(response.results) == 3
    assert all("ttention" in text for text in _texts(response))
    assert response.results[0].score == pytest.approx(1.0)
    assert all(r.vector_score is None for r in response.results)
    assert response.no_results_hint is None


def test_vector_search_orders_by_similarity(repo, embedded, embedder):
    retriever = HybridRetriever(repo, advanced=_NO_ROUTING, embedder=embedder)
    response = retriever.search("attention", retriever_type="vector", score_threshold=0.0)

    assert _texts(response)[:3] == [
        "Transformers use self attention layers",
        "Attention weights are softmax normalised",
        "Attention maps visualise convolution",
    ]
    assert response.results[0].score == pytest.approx(1.0, abs=1e-5)
    embedder.validate.assert_called_once()


def test_hybrid_fuses_weighted_scores(repo, embedded, embedder):
    retriever = HybridRetriever(repo, advanced=_NO_ROUTING, embedder=embedder)
    response = retriever.search("attention", retriever_type="hybrid", score_threshold=0.0)

    top = response.results[0]
    assert top.chunk.text == "Transformers use self attention layers"
    assert top.vector_score is not None and top.keyword_score is not None
    assert top.score == pytest.approx(0.7 * top.vector_score + 0.3 * top.keyword_score)


def test_hybrid_without_embeddings_skips_vector_channel(repo, unembedded, embedder):
    retriever = HybridRetriever(repo, advanced=_NO_ROUTING, embedder=embedder)
    response = retriever.search("residual", retriever_type="hybrid")

    embedder.embed.assert_not_called()
    assert _texts(response) == ["Residual connections stabilise training"]
    assert response.results[0].score == response.results[0].keyword_score


def test_hybrid_degrades_when_query_embedding_fails(repo, embedded, embedder):
    embedder.embed.side_effect = ProviderError("service unavailable")
    retriever = HybridRetriever(repo, advanced=_NO_ROUTING, embedder=embedder)
    response = retriever.search("residual", retriever_type="hybrid")

    assert _texts(response) == ["Residual connections stabilise training"]
    assert "vector search unavailable" in response.warnings[0]


def test_vector_search_requires_embedder(repo, embedded):
    with pytest.raises(ProviderError):
        HybridRetriever(repo, advanced=_NO_ROUTING).search("x", retriever_type="vector")


def test_unusable_embedder_raises_config_error(repo, embedded, embedder):
    embedder.validate.side_effect = ConfigError("API key not found")
    with pytest.raises(ConfigError):
        HybridRetriever(repo, advanced=_NO_ROUTING, embedder=embedder).search("attention")


def test_unknown_retriever_type(repo):
    with pytest.raises(ValueError, match="Unknown retriever type"):
        HybridRetriever(repo).search("x", retriever_type="semantic")


def test_result_carries_document_details(repo, unembedded):
    response = HybridRetriever(repo, advanced=_NO_ROUTING).search(
        "residual", retriever_type="keyword"
    )
    result = response.results[0]
    assert result.filename == "doc-1.tex"
    assert result.source == "/data/doc-1.tex"
    assert result.bib_key == "smith2020"


# ------------------------------------------------------------------
# Filters and hints
# ------------------------------------------------------------------


def test_threshold_filters_everything(repo, unembedded):
    response = HybridRetriever(repo, advanced=_NO_ROUTING).search(
        "attention", retriever_type="keyword", score_threshold=1.5
    )
    assert response.results == []
    assert response.no_results_hint == HINT_NO_MATCH


def test_excluded_chunks_not_returned(repo, unembedded):
    excluded = unembedded["Residual connections stabilise training"]
    response = HybridRetriever(repo, advanced=_NO_ROUTING).search(
        "residual", retriever_type="keyword", exclude_chunk_ids=[excluded]
    )
    assert response.results == []


def test_top_k_truncates(repo, unembedded):
    response = HybridRetriever(repo, advanced=_NO_ROUTING).search(
        "attention", top_k=1, retriever_type="keyword", score_threshold=0.0
    )
    assert len(response.results) == 1


def test_hint_empty_index(repo, unembedded):
    response = HybridRetriever(repo, advanced=_NO_ROUTING).search(
        "attention", library_ids=["other-lib"], retriever_type="keyword"
    )
    assert response.no_results_hint == HINT_EMPTY_INDEX


def test_hint_no_embeddings(repo, unembedded, embedder):
    response = HybridRetriever(repo, advanced=_NO_ROUTING, embedder=embedder).search(
        "attention", retriever_type="vector"
    )
    assert response.no_results_hint == HINT_NO_EMBEDDINGS


# ------------------------------------------------------------------
# Routing, rewriting, reranking
# ------------------------------------------------------------------


def test_none_decision_skips_retrieval(repo, embedded, embedder):
    retriever = HybridRetriever(repo, embedder=embedder, router=ContextRouter())
    response = retriever.search("hello")

    assert response.results == []
    assert response.context_decision.context_type == "none"
    assert response.no_results_hint is None
    embedder.embed.assert_not_called()


def test_full_decision_expands_adjacent_chunks(repo, unembedded):
    retriever = HybridRetriever(repo, router=ContextRouter())
    response = retriever.search("compare attention", retriever_type="hybrid")

    assert response.context_decision.context_type == "full"
    texts = _texts(response)
    assert "Residual connections stabilise training" in texts
    assert "Convolutional filters capture local patterns" in texts
    adjacent = [r for r in response.results if r.adjacent]
    assert {r.chunk.text for r in adjacent} == {
        "Residual connections stabilise training",
        "Convolutional filters capture local patterns",
    }
    assert all(r.keyword_score is None for r in adjacent)
    assert len(set(texts)) == len(texts)


def test_bilingual_variants_merged(repo, unembedded):
    rewriter = MagicMock()
    rewriter.rewrite.return_value = RewrittenQuery(
        original="attention", english="residual", chinese="attention"
    )
    advanced = AdvancedCfg(
        enable_context_routing=False, enable_query_rewrite=True, enable_bilingual_search=True
    )
    response = HybridRetriever(repo, advanced=advanced, rewriter=rewriter).search(
        "attention", retriever_type="keyword", score_threshold=0.0
    )

    assert "Residual connections stabilise training" in _texts(response)
    assert len(response.results) == 4
    assert response.rewritten_query.english == "residual"
    rewriter.rewrite.assert_called_once_with("attention", None)


def test_rerank_reorders_candidates(repo, unembedded):
    reranker = MagicMock()
    reranker.rerank.return_value = [(1, 0.95), (0, 0.5)]
    advanced = AdvancedCfg(enable_context_routing=False, enable_rerank=True)
    response = HybridRetriever(repo, advanced=advanced, reranker=reranker).search(
        "attention", top_k=2, retriever_type="keyword"
    )

    assert [r.score for r in response.results] == [0.95, 0.5]
    assert reranker.rerank.call_args.args[2] == 2
    assert len(reranker.rerank.call_args.args[1]) == 3


def test_configured_weights_apply(repo, embedded, embedder):
    retrieval = RetrievalCfg(bm25_weight=0.5, vector_weight=0.5)
    retriever = HybridRetriever(
        repo, retrieval=retrieval, advanced=_NO_ROUTING, embedder=embedder
    )
    top = retriever.search("attention", score_threshold=0.0).results[0]
    assert top.score == pytest.approx(0.5 * top.vector_score + 0.5 * top.keyword_score)


# ------------------------------------------------------------------
# Score helpers
# ------------------------------------------------------------------


def _chunk(cid: int, document_id: str = "doc-1") -> Chunk:
    return Chunk(id=cid, document_id=document_id, library_id="lib-1", chunk_index=0, text="t")


def _result(cid: int, score: float, document_id: str = "doc-1") -> RetrievalResult:
    return RetrievalResult(chunk=_chunk(cid, document_id), score=score)


def test_normalize_bm25_sigmoid():
    normalized = normalize_bm25([(_chunk(1), -10.0), (_chunk(2), -5.0)])
    assert normalized[0][1] == pytest.approx(1.0 / (1.0 + math.exp(-2.5)))
    assert normalized[1][1] == pytest.approx(0.5)


def test_normalize_bm25_empty():
    assert normalize_bm25([]) == []


def test_rrf_merge_orders_by_reciprocal_rank_and_keeps_best_score():
    merged = rrf_merge(
        [
            [_result(1, 0.4), _result(2, 0.9)],
            [_result(2, 0.3), _result(3, 0.8)],
        ]
    )
    assert [r.chunk_id for r in merged] == [2, 1, 3]
    assert merged[0].score == 0.9


def test_diversify_puts_each_document_first():
    results = [_result(1, 0.9, "a"), _result(2, 0.8, "a"), _result(3, 0.7, "b")]
    assert [r.chunk_id for r in diversify(results)] == [1, 3, 2]


def test_search_response_to_dict():
    response = SearchResponse(results=[_result(1, 0.5)], no_results_hint=None, processing_ms=3)
    data = response.to_dict()
    assert data["processingTime"] == 3
    assert data["results"][0]["chunkId"] == 1
    assert data["results"][0]["metadata"]["libraryId"] == "lib-1"
    assert "noResultsHint" not in data
    assert SearchResponse(no_results_hint=HINT_NO_MATCH).to_dict()["noResultsHint"] == "no_match"
