"""Context assembly: token budget, reference blocks, and citations for an LLM prompt.

Pipeline:
  1. Apply the token budget: keep results, best-first, until the next one would
     exceed ``token_budget`` tokens (counted with LiteLLM's token counter).
  2. Render each kept result as a reference block:

         [Reference 1] paper.tex - §Method - [smith2020] (87.5%)
         <chunk text>

     Blocks are separated by a ``---`` rule.
  3. List the citations (bibKey and citation text) of the documents behind
     the kept results, one entry per key.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from scholarkb.rag.llm_client import count_tokens
from scholarkb.rag.retriever import RetrievalResult

_BLOCK_SEPARATOR = "\n\n---\n\n"


@dataclass
class Citation:
    bib_key: str
    text: str
    source: str

    def to_dict(self) -> dict[str, str]:
        return {"bibKey": self.bib_key, "text": self.text, "source": self.source}


@dataclass
class AssembledContext:
    results: list[RetrievalResult] = field(default_factory=list)
    context: str = ""
    citations: list[Citation] = field(default_factory=list)
    total_tokens: int = 0
    dropped: int = 0


def assemble(
    results: list[RetrievalResult],
    *,
    model: str,
    token_budget: int,
) -> AssembledContext:
    """Trim *results* to the token budget and render them for a prompt.

    Args:
        results: Retrieval results, best-first.
        model: LiteLLM model name used for token counting.
        token_budget: Maximum tokens of chunk text in the assembled context.

    Returns:
        AssembledContext with the kept results, rendered context and citations.
    """
    if not results:
        return AssembledContext()
    kept, total = apply_token_budget(results, model, token_budget)
    return AssembledContext(
        results=kept,
        context=format_as_context(kept),
        citations=extract_citations(kept),
        total_tokens=total,
        dropped=len(results) - len(kept),
    )


# ------------------------------------------------------------------
# Formatting
# ------------------------------------------------------------------


def format_source(result: RetrievalResult) -> str:
    """``filename - §section - [bibKey] (score%)`` with absent parts left out."""
    parts: list[str] = [result.filename or result.source or f"chunk {result.chunk_id}"]
    if result.section:
        parts.append(f"§{result.section}")
    if result.bib_key:
        parts.append(f"[{result.bib_key}]")
    parts.append(f"({result.score * 100:.1f}%)")
    return " - ".join(parts)


def format_as_context(results: list[RetrievalResult]) -> str:
    """Render *results* as numbered reference blocks ('' when empty)."""
    return _BLOCK_SEPARATOR.join(
        f"[Reference {i}] {format_source(r)}\n{r.chunk.text}"
        for i, r in enumerate(results, start=1)
    )


def extract_citations(results: list[RetrievalResult]) -> list[Citation]:
    """Citations of the documents behind *results*, first occurrence of each key."""
    citations: list[Citation] = []
    seen: set[str] = set()
    for result in results:
        if not result.bib_key or result.bib_key in seen:
            continue
        seen.add(result.bib_key)
        citations.append(
            Citation(
                bib_key=result.bib_key,
                text=result.citation_text or result.filename,
                source=result.filename,
            )
        )
    return citations


# ------------------------------------------------------------------
# Token budget
# ------------------------------------------------------------------


def apply_token_budget(
    results: list[RetrievalResult],
    model: str,
    budget: int,
) -> tuple[list[RetrievalResult], int]:
    """Select results that fit within *budget* tokens. Returns (selected, total_tokens)."""
    selected: list[RetrievalResult] = []
    total = 0
    for result in results:
        tokens = count_tokens(model, result.chunk.text)
        if total + tokens > budget:
            break
        selected.append(result)
        total += tokens
    return selected, total
