"""Markdown segmenter — heading-aware splits with a size pass inside sections."""

from __future__ import annotations

import re
from dataclasses import dataclass

from scholarkb.ingest.base import BaseSegmenter, RawChunk
from scholarkb.ingest.protect import PlaceholderArena, protect_math

# ATX headings H1–H6 at the start of a line.
_HEADING_RE: re.Pattern[str] = re.compile(r"^(#{1,6})\s+(.+)$")
_FENCE_RE: re.Pattern[str] = re.compile(r"^\s*(```|~~~)")


@dataclass
class Section:
    """One heading-delimited section of a Markdown document.

    ``heading`` is '' and ``level`` 0 for content before the first heading, or
    for a document without headings.
    """

    heading: str
    level: int
    content: str
    start_line: int
    end_line: int


def split_by_headings(content: str) -> list[Section]:
    """Split Markdown *content* on ATX heading lines.

    Heading-like lines inside fenced code blocks are ignored. Content before
    the first heading becomes a heading-less section when it is not blank.
    Headings with no body still produce a section. A document without any
    heading yields exactly one section holding the trimmed input.

    Args:
        content: Markdown source text.

    Returns:
        Sections in document order.
    """
    lines = content.splitlines()
    sections: list[Section] = []
    heading: str | None = None
    level = 0
    start = 1
    body: list[str] = []
    in_fence = False
    found_heading = False

    def _flush(end_line: int) -> None:
        text = "\n".join(body).strip()
        if heading is None and not text:
            return
        sections.append(
            Section(
                heading=heading or "",
                level=level,
                content=text,
                start_line=start,
                end_line=max(start, end_line),
            )
        )

    for idx, line in enumerate(lines, start=1):
        if _FENCE_RE.match(line):
            in_fence = not in_fence
            body.append(line)
            continue
        match = None if in_fence else _HEADING_RE.match(line)
        if match is None:
            body.append(line)
            continue
        _flush(idx - 1)
        found_heading = True
        heading = match.group(2).strip()
        level = len(match.group(1))
        start = idx
        body = []

    if not found_heading:
        return [
            Section(
                heading="",
                level=0,
                content=content.strip(),
                start_line=1,
                end_line=max(1, len(lines)),
            )
        ]
    _flush(len(lines))
    return sections


class MarkdownSegmenter(BaseSegmenter):
    """Split Markdown on H1–H6 heading boundaries.

    Strategy:
    - split_by_headings() yields the sections; each becomes at least one chunk.
    - Inline and display math is protected before the size pass, so an
      oversized section is never cut inside ``$...$`` or ``$$...$$``.
    - No headings: one 'main' chunk (size pass applies).
    """

    def segment(self, content: str) -> list[RawChunk]:
        sections = split_by_headings(content)
        has_headings = any(s.heading for s in sections)
        chunks: list[RawChunk] = []
        for section in sections:
            if not has_headings:
                chunk_type = "main"
            elif section.heading:
                chunk_type = "section"
            else:
                chunk_type = "preamble"
            if not section.content:
                chunks.append(
                    RawChunk(
                        text="",
                        chunk_type=chunk_type,
                        heading=section.heading,
                        level=section.level,
                        start_line=section.start_line,
                        end_line=section.end_line,
                    )
                )
                continue
            arena = PlaceholderArena()
            protected = protect_math(section.content, arena)
            chunks.extend(
                self._sized_chunks(
                    protected,
                    arena,
                    chunk_type=chunk_type,
                    heading=section.heading,
                    level=section.level,
                    start_line=section.start_line,
                    end_line=section.end_line,
                )
            )
        return chunks
