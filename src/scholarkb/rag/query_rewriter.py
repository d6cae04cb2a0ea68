"""Query rewriting: standalone, bilingual query variants plus keywords.

With an LLM configured, the query (and optional recent chat history) is
rewritten into a self-contained query in its original language, English and
Chinese variants, and 3–5 keywords. Without an LLM, or when the call or its
JSON fails, a simple rewrite is returned: every variant equals the query and
keywords come from a stop-word filtered frequency count.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Literal

from scholarkb.errors import ParseError, ProviderError
from scholarkb.rag.json_response import parse_json_object
from scholarkb.rag.llm_client import Provider

logger = logging.getLogger(__name__)

Language = Literal["en", "zh", "mixed"]

_HISTORY_WINDOW = 4
_MAX_KEYWORDS = 5

_STOP_WORDS: frozenset[str] = frozenset(
    """
    the a an is are was were be been have has had do does did will would could
    should may might must shall can to of in for on with at by from as into
    through during before after what how why when where which who
    的 了 和 是 在 有 我 他 她 它 这 那 什么 怎么 如何 为什么 哪个 哪些
    """.split()
)

_REWRITE_SYSTEM_PROMPT = """\
You rewrite search queries for an academic research assistant.
1. Use the conversation history to understand what the user means.
2. Produce a complete, standalone query understandable without the history: \
replace pronouns (it, this, that, 它, 这个, 那个) with the nouns they refer to \
and fill in omitted information. Keep it under 50 words.
3. Provide English and Chinese versions.
4. Extract 3-5 search keywords.

Respond with a JSON object only:
{"original": "rewritten query in the original language", "english": "...", \
"chinese": "...", "keywords": ["..."], "originalLanguage": "en" | "zh" | "mixed"}"""


@dataclass
class RewrittenQuery:
    original: str
    english: str
    chinese: str
    keywords: list[str] = field(default_factory=list)
    original_language: Language = "en"
    rewritten: bool = False

    def variants(self, bilingual: bool) -> list[str]:
        """Distinct non-empty queries to search, original first."""
        candidates = [self.original]
        if bilingual:
            candidates += [self.english, self.chinese]
        return [q for q in dict.fromkeys(c.strip() for c in candidates) if q]


def extract_keywords(text: str, limit: int = _MAX_KEYWORDS) -> list[str]:
    """Most frequent non-stop-words (length > 1) of *text*, most frequent first."""
    cleaned = re.sub(r"[^\w\s一-龥]", " ", text.lower())
    words = [w for w in cleaned.split() if len(w) > 1 and w not in _STOP_WORDS]
    return [w for w, _ in Counter(words).most_common(limit)]


def detect_language(text: str) -> Language:
    """'zh' or 'en' when that script is over 70% of the letters, else 'mixed'."""
    chinese = len(re.findall(r"[一-龥]", text))
    english = len(re.findall(r"[a-zA-Z]", text))
    total = chinese + english
    if total == 0:
        return "en"
    if chinese / total > 0.7:
        return "zh"
    if english / total > 0.7:
        return "en"
    return "mixed"


def simple_rewrite(query: str) -> RewrittenQuery:
    return RewrittenQuery(
        original=query,
        english=query,
        chinese=query,
        keywords=extract_keywords(query),
        original_language=detect_language(query),
    )


class QueryRewriter:
    """LLM-backed query rewriter with a deterministic fallback."""

    def __init__(self, provider: Provider | None = None, *, enabled: bool = True) -> None:
        self._provider = provider
        self._enabled = enabled

    def rewrite(
        self, query: str, history: list[dict[str, str]] | None = None
    ) -> RewrittenQuery:
        """Rewrite *query*; never raises for provider or parse faults."""
        if not self._enabled or self._provider is None:
            return simple_rewrite(query)
        messages = [{"role": "system", "content": _REWRITE_SYSTEM_PROMPT}]
        messages.extend((history or [])[-_HISTORY_WINDOW:])
        messages.append({"role": "user", "content": f'Please rewrite this query: "{query}"'})
        try:
            data = parse_json_object(self._provider.complete(messages, max_tokens=400))
        except (ProviderError, ParseError) as exc:
            logger.warning("Query rewrite failed, using original query: %s", exc)
            return simple_rewrite(query)

        keywords = data.get("keywords")
        if not isinstance(keywords, list) or not keywords:
            keywords = extract_keywords(query)
        language = data.get("originalLanguage")
        if language not in ("en", "zh", "mixed"):
            language = detect_language(query)
        return RewrittenQuery(
            original=str(data.get("original") or query),
            english=str(data.get("english") or query),
            chinese=str(data.get("chinese") or query),
            keywords=[str(k) for k in keywords][:_MAX_KEYWORDS],
            original_language=language,
            rewritten=True,
        )
