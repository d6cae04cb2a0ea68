"""Second-pass reranking of fused retrieval candidates.

A configured rerank model (Cohere, Jina, or an OpenAI-compatible endpoint via
LiteLLM) scores the candidates; without one, or when the call fails, a local
keyword score is used:

    score = 0.4 * original + 0.4 * term_match + 0.2 * position

term_match is the share of query terms present in the passage; position
rewards query words that appear early (linear decay over 500 characters).
"""

from __future__ import annotations

import logging
import re

from scholarkb.errors import ProviderError
from scholarkb.rag.llm_client import Provider

logger = logging.getLogger(__name__)

_ORIGINAL_WEIGHT = 0.4
_MATCH_WEIGHT = 0.4
_POSITION_WEIGHT = 0.2
_POSITION_WINDOW = 500
_MAX_DOC_CHARS = 2_000


def _tokenize(text: str) -> list[str]:
    return [w for w in re.sub(r"[^\w\s]", " ", text.lower()).split() if len(w) > 1]


def term_match_score(query: str, content: str) -> float:
    """Fraction of query terms that occur in *content* (0–1)."""
    query_terms = _tokenize(query)
    if not query_terms:
        return 0.0
    doc_terms = set(_tokenize(content))
    return sum(1 for t in query_terms if t in doc_terms) / len(query_terms)


def position_score(query: str, content: str) -> float:
    """Average earliness of query words (length > 2) in *content* (0–1)."""
    words = [w for w in query.lower().split() if len(w) > 2]
    if not words:
        return 0.0
    lowered = content.lower()
    total = 0.0
    for word in words:
        idx = lowered.find(word)
        if idx != -1:
            total += 1.0 - min(idx / _POSITION_WINDOW, 1.0)
    return total / len(words)


def local_rerank(
    query: str, documents: list[tuple[str, float]], top_k: int
) -> list[tuple[int, float]]:
    """Keyword rerank. Returns ``(index, score)`` pairs, best-first, at most *top_k*."""
    scored = [
        (
            i,
            score * _ORIGINAL_WEIGHT
            + term_match_score(query, text) * _MATCH_WEIGHT
            + position_score(query, text) * _POSITION_WEIGHT,
        )
        for i, (text, score) in enumerate(documents)
    ]
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:top_k]


class Reranker:
    """Rerank candidates with a model when configured, else locally.

    Args:
        provider: Rerank provider; None or a LOCAL provider means keyword rerank.
        max_documents: Candidates sent to the model (the rest are dropped).
    """

    def __init__(self, provider: Provider | None = None, *, max_documents: int = 20) -> None:
        self._provider = provider
        self._max_documents = max_documents

    @property
    def uses_model(self) -> bool:
        return self._provider is not None and not self._provider.is_local

    def rerank(
        self, query: str, documents: list[tuple[str, float]], top_k: int
    ) -> list[tuple[int, float]]:
        """Reorder ``(text, score)`` candidates.

        Returns:
            ``(candidate_index, new_score)`` pairs, best-first, at most *top_k*.
            With *top_k* or fewer candidates the input order and scores are kept.
        """
        if len(documents) <= top_k:
            return [(i, score) for i, (_, score) in enumerate(documents)]
        if not self.uses_model:
            return local_rerank(query, documents, top_k)

        limited = documents[: self._max_documents]
        try:
            results = self._provider.rerank(  # type: ignore[union-attr]
                query, [text[:_MAX_DOC_CHARS] for text, _ in limited], top_n=top_k
            )
        except ProviderError as exc:
            logger.warning("Rerank model failed, using local keyword rerank: %s", exc)
            return local_rerank(query, documents, top_k)
        valid = [(i, s) for i, s in results if 0 <= i < len(limited)]
        return valid[:top_k]
