"""Plain-text segmenter — whole document as one section, size pass only."""

from __future__ import annotations

from scholarkb.ingest.base import BaseSegmenter, RawChunk
from scholarkb.ingest.protect import PlaceholderArena


class PlainTextSegmenter(BaseSegmenter):
    """Segment unstructured text (.txt, .rst, .org, extracted PDF text).

    The trimmed document is one 'main' section; when it exceeds
    ``chunk_size`` the configured strategy splits it ('semantic' recurses
    through separators, 'paragraph' packs blank-line paragraphs, 'fixed'
    uses character windows).
    """

    def segment(self, content: str) -> list[RawChunk]:
        text = content.strip()
        total_lines = content.count("\n") + 1
        if not text:
            return [RawChunk(text="", chunk_type="main", start_line=1, end_line=1)]
        arena = PlaceholderArena()
        return self._sized_chunks(
            arena.shield(text),
            arena,
            chunk_type="main",
            heading="",
            level=0,
            start_line=1,
            end_line=total_lines,
        )
