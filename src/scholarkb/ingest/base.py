"""Base segmenter interface shared by every source format."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from scholarkb.config import DEFAULT_SEPARATORS, ChunkingCfg
from scholarkb.ingest.protect import PlaceholderArena, safe_cut, safe_start


@dataclass
class RawChunk:
    """A segment produced before persistence (no ids yet).

    Attributes:
        text: Chunk content with every protected span restored.
        chunk_type: 'preamble' | 'section' | 'main' | 'paragraph'.
        heading: Section heading text ('' for heading-less sections).
        level: Heading depth (0 for preamble / no heading).
        start_line: 1-based first line of the originating section.
        end_line: 1-based last line of the originating section.
        metadata: Extra per-chunk metadata (e.g. ``part`` for size-pass pieces).
    """

    text: str
    chunk_type: str = "section"
    heading: str = ""
    level: int = 0
    start_line: int | None = None
    end_line: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class BaseSegmenter(ABC):
    """Abstract base for all segmenters.

    Subclasses implement ``segment()`` and use ``_size_pass()`` to break an
    oversized section into size-bounded pieces. All size work happens on
    placeholder-protected text so protected spans are never cut; the caller
    restores each piece afterwards.
    """

    def __init__(self, config: ChunkingCfg | None = None) -> None:
        config = config if config is not None else ChunkingCfg()
        if config.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if not 0 <= config.chunk_overlap < config.chunk_size:
            raise ValueError("chunk_overlap must be in [0, chunk_size)")
        self.config = config
        self.chunk_size = config.chunk_size
        self.overlap = config.chunk_overlap
        self.separators = list(config.separators) or list(DEFAULT_SEPARATORS)

    @abstractmethod
    def segment(self, content: str) -> list[RawChunk]:
        """Split *content* into ordered RawChunks.

        Empty input yields exactly one empty chunk.
        """

    # ------------------------------------------------------------------
    # Size pass
    # ------------------------------------------------------------------

    def _size_pass(self, text: str) -> list[str]:
        """Split protected *text* into pieces no longer than ``chunk_size``.

        Text that already fits is returned unchanged as a single piece.
        """
        if len(text) <= self.chunk_size:
            return [text]
        strategy = self.config.strategy
        if strategy == "fixed":
            pieces = self._split_fixed_window(text)
        elif strategy == "paragraph":
            pieces = self._split_paragraphs(text)
        else:
            pieces = self._split_recursive(text, self.separators)
        return [p for p in pieces if p.strip()] or [text]

    def _split_fixed_window(self, text: str) -> list[str]:
        """Fixed character windows with ``overlap`` characters shared.

        Window edges are nudged so no placeholder token is cut.
        """
        step = max(1, self.chunk_size - self.overlap)
        segments: list[str] = []
        pos = 0
        length = len(text)
        while pos < length:
            end = safe_cut(text, min(pos + self.chunk_size, length))
            segment = text[pos:end].strip()
            if segment:
                segments.append(segment)
            if end >= length:
                break
            nxt = safe_start(text, pos + step)
            # Always make progress, even when a placeholder spans the step.
            pos = nxt if nxt > pos else end
        return segments

    def _split_paragraphs(self, text: str) -> list[str]:
        """Pack blank-line-separated paragraphs; oversized paragraphs recurse."""
        parts = _split_keep(text, "\n\n")
        pieces: list[str] = []
        for part in parts:
            if len(part) <= self.chunk_size:
                pieces.append(part)
            else:
                pieces.extend(self._split_recursive(part, self.separators[1:]))
        return self._merge(pieces)

    def _split_recursive(self, text: str, separators: list[str]) -> list[str]:
        """Split on the first separator present, recursing into oversized parts."""
        separator = ""
        remaining: list[str] = []
        for i, sep in enumerate(separators):
            if sep == "":
                break
            if sep in text:
                separator = sep
                remaining = separators[i + 1 :]
                break
        if not separator:
            return self._split_fixed_window(text)

        results: list[str] = []
        pending: list[str] = []
        for part in _split_keep(text, separator):
            if len(part) <= self.chunk_size:
                pending.append(part)
                continue
            if pending:
                results.extend(self._merge(pending))
                pending = []
            if remaining:
                results.extend(self._split_recursive(part, remaining))
            else:
                results.extend(self._split_fixed_window(part))
        if pending:
            results.extend(self._merge(pending))
        return results

    def _merge(self, parts: list[str]) -> list[str]:
        """Greedily join small parts up to ``chunk_size``, carrying ``overlap`` chars."""
        docs: list[str] = []
        current: list[str] = []
        total = 0
        for part in parts:
            if current and total + len(part) > self.chunk_size:
                docs.append("".join(current))
                while current and (
                    total > self.overlap or total + len(part) > self.chunk_size
                ):
                    total -= len(current[0])
                    current.pop(0)
            current.append(part)
            total += len(part)
        if current:
            docs.append("".join(current))
        return [d.strip() for d in docs if d.strip()]

    def _sized_chunks(
        self,
        protected_body: str,
        arena: PlaceholderArena,
        *,
        chunk_type: str,
        heading: str,
        level: int,
        start_line: int | None,
        end_line: int | None,
    ) -> list[RawChunk]:
        """Run the size pass on one section and restore protected spans per piece."""
        pieces = self._size_pass(protected_body)
        chunks: list[RawChunk] = []
        for i, piece in enumerate(pieces):
            metadata: dict[str, Any] = {}
            if len(pieces) > 1:
                metadata = {"part": i + 1, "parts": len(pieces)}
            chunks.append(
                RawChunk(
                    text=arena.restore(piece),
                    chunk_type=chunk_type,
                    heading=heading,
                    level=level,
                    start_line=start_line,
                    end_line=end_line,
                    metadata=metadata,
                )
            )
        return chunks


def _split_keep(text: str, separator: str) -> list[str]:
    """Split on *separator*, keeping it attached to the preceding part."""
    parts = text.split(separator)
    out = [p + separator for p in parts[:-1]]
    out.append(parts[-1])
    return [p for p in out if p]
