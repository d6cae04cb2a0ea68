"""Context router: decide how much context a query needs before retrieval.

Two tiers:
  1. Rule patterns (English and Chinese) in three families, checked in order
     no-context → full-context → partial-context. Every rule match carries
     confidence ≥ 0.8; no match yields a default 'partial' decision at 0.5.
  2. Only for low-confidence decisions, and only when an LLM is configured and
     enabled, the LLM classifies the query. A malformed or failed LLM reply
     falls back to the rule decision; the caller never sees the error.

'none' decisions must not reach the retriever (HybridRetriever short-circuits).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal

from scholarkb.errors import ParseError, ProviderError
from scholarkb.rag.json_response import parse_json_object
from scholarkb.rag.llm_client import Provider

logger = logging.getLogger(__name__)

ContextType = Literal["none", "partial", "full"]

HIGH_CONFIDENCE = 0.8
LLM_CONFIDENCE = 0.9

# ------------------------------------------------------------------
# Rule families
# ------------------------------------------------------------------

NO_CONTEXT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"你好|谢谢|再见|早上好|晚上好"),
    re.compile(r"\b(hello|hi|thanks?|bye|good morning|good night)\b", re.IGNORECASE),
    re.compile(r"帮我写|生成|创作|编写代码"),
    re.compile(r"\b(write|generate|create|compose)\b", re.IGNORECASE),
    re.compile(r"翻译|转换|格式化"),
    re.compile(r"\b(translate|convert|format)\b", re.IGNORECASE),
)

FULL_CONTEXT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"整体|全文|总结|概述|大纲|框架|结构"),
    re.compile(r"overall|entire|whole|summary|outline|structure|overview", re.IGNORECASE),
    re.compile(r"比较|对比|区别|联系|关系|差异"),
    re.compile(r"compare|contrast|difference|relation|connection|versus", re.IGNORECASE),
    re.compile(r"流程|步骤|过程|方法论|架构"),
    re.compile(r"process|procedure|steps|methodology|architecture|workflow", re.IGNORECASE),
    re.compile(r"主要内容|核心思想|贡献|创新点"),
    re.compile(r"main contribution|key idea|innovation|novelty", re.IGNORECASE),
)

PARTIAL_CONTEXT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"什么是|定义|解释|说明|含义"),
    re.compile(r"what is|define|explain|describe|meaning", re.IGNORECASE),
    re.compile(r"怎么|如何|方法|技术|实现"),
    re.compile(r"how to|method|technique|approach|implement", re.IGNORECASE),
    re.compile(r"哪个|哪些|列举|举例|有哪些"),
    re.compile(r"which|list|example|enumerate|what are", re.IGNORECASE),
    re.compile(r"具体|细节|参数|数值|公式"),
    re.compile(r"specific|detail|parameter|value|formula", re.IGNORECASE),
)

_ROUTER_SYSTEM_PROMPT = """\
You are a query analyzer for a retrieval-augmented generation system over \
scholarly documents. Decide what context the user query needs.

Context types:
- "full": broad document context (document structure, comparing documents, \
methodology, summarizing a whole text)
- "partial": a few specific passages (concrete questions, facts, definitions, formulas)
- "none": no retrieval (greetings, creative writing, translation, general knowledge)

Respond with a JSON object only:
{"contextType": "full" | "partial" | "none", "reason": "brief explanation", \
"suggestedChunkCount": <integer 1-10>, "needsMultiDocument": <true|false>}"""


@dataclass(frozen=True)
class ContextDecision:
    """Routing outcome for one query (never persisted)."""

    context_type: ContextType
    reason: str
    suggested_chunk_count: int
    needs_multi_document: bool
    confidence: float
    source: str = "rules"  # rules | llm

    def to_dict(self) -> dict:
        return {
            "contextType": self.context_type,
            "reason": self.reason,
            "suggestedChunkCount": self.suggested_chunk_count,
            "needsMultiDocument": self.needs_multi_document,
            "confidence": self.confidence,
            "source": self.source,
        }


@dataclass(frozen=True)
class RetrievalParams:
    """Retriever knobs derived from a ContextDecision."""

    top_k: int
    include_adjacent: bool
    diversify: bool


_NONE_DECISION = ContextDecision(
    context_type="none",
    reason="Query does not require retrieval context",
    suggested_chunk_count=0,
    needs_multi_document=False,
    confidence=0.9,
)
_FULL_DECISION = ContextDecision(
    context_type="full",
    reason="Requires understanding full document structure or comparison",
    suggested_chunk_count=10,
    needs_multi_document=True,
    confidence=0.85,
)
_PARTIAL_DECISION = ContextDecision(
    context_type="partial",
    reason="Requires specific chunks to answer a concrete question",
    suggested_chunk_count=5,
    needs_multi_document=False,
    confidence=0.8,
)
_DEFAULT_DECISION = ContextDecision(
    context_type="partial",
    reason="Default retrieval of relevant chunks",
    suggested_chunk_count=5,
    needs_multi_document=False,
    confidence=0.5,
)


def rule_based_route(query: str) -> ContextDecision:
    """Classify *query* with the pattern families only (deterministic)."""
    for patterns, decision in (
        (NO_CONTEXT_PATTERNS, _NONE_DECISION),
        (FULL_CONTEXT_PATTERNS, _FULL_DECISION),
        (PARTIAL_CONTEXT_PATTERNS, _PARTIAL_DECISION),
    ):
        if any(p.search(query) for p in patterns):
            return decision
    return _DEFAULT_DECISION


def get_retrieval_params(decision: ContextDecision) -> RetrievalParams:
    """Map a decision to retriever parameters.

    full → top_k = suggested, adjacent chunks and cross-document diversity on;
    partial → top_k = suggested, both off; none → top_k = 0.
    """
    if decision.context_type == "full":
        return RetrievalParams(
            top_k=decision.suggested_chunk_count, include_adjacent=True, diversify=True
        )
    if decision.context_type == "partial":
        return RetrievalParams(
            top_k=decision.suggested_chunk_count, include_adjacent=False, diversify=False
        )
    return RetrievalParams(top_k=0, include_adjacent=False, diversify=False)


class ContextRouter:
    """Rule-first query classifier with an optional LLM tier.

    Args:
        provider: Chat provider for the LLM tier (None disables it).
        enabled: Master switch for the LLM tier.
    """

    def __init__(self, provider: Provider | None = None, *, enabled: bool = True) -> None:
        self._provider = provider
        self._enabled = enabled

    @property
    def llm_enabled(self) -> bool:
        return self._enabled and self._provider is not None

    def route(self, query: str) -> ContextDecision:
        """Return the ContextDecision for *query*. Never raises for LLM faults."""
        decision = rule_based_route(query)
        if decision.confidence >= HIGH_CONFIDENCE:
            logger.debug("Rule match: %s (%.2f)", decision.context_type, decision.confidence)
            return decision
        if not self.llm_enabled:
            return decision
        try:
            llm_decision = self._llm_route(query)
        except (ProviderError, ParseError) as exc:
            logger.warning("LLM routing failed, using rule-based decision: %s", exc)
            return decision
        logger.debug("LLM routing: %s (%s)", llm_decision.context_type, llm_decision.reason)
        return llm_decision

    def get_retrieval_params(self, decision: ContextDecision) -> RetrievalParams:
        return get_retrieval_params(decision)

    def _llm_route(self, query: str) -> ContextDecision:
        assert self._provider is not None
        reply = self._provider.complete(
            [
                {"role": "system", "content": _ROUTER_SYSTEM_PROMPT},
                {"role": "user", "content": f'Query: "{query}"'},
            ],
            max_tokens=200,
            temperature=0.0,
        )
        return _decision_from_reply(reply)


def _decision_from_reply(reply: str) -> ContextDecision:
    """Build a ContextDecision from the LLM's JSON reply.

    Raises:
        ParseError: If the reply holds no JSON object or an unknown context type.
    """
    data = parse_json_object(reply)
    context_type = str(data.get("contextType") or "partial").lower()
    if context_type not in ("none", "partial", "full"):
        raise ParseError(f"Unknown contextType {context_type!r}")
    try:
        count = int(data.get("suggestedChunkCount") or 5)
    except (TypeError, ValueError):
        count = 5
    count = 0 if context_type == "none" else max(1, min(10, count))
    return ContextDecision(
        context_type=context_type,  # type: ignore[arg-type]
        reason=str(data.get("reason") or ""),
        suggested_chunk_count=count,
        needs_multi_document=bool(data.get("needsMultiDocument", False)),
        confidence=LLM_CONFIDENCE,
        source="llm",
    )
