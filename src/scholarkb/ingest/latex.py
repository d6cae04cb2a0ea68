"""LaTeX segmenter — sectioning-command splits over placeholder-protected text."""

from __future__ import annotations

import re
from typing import NamedTuple

from scholarkb.ingest.base import BaseSegmenter, RawChunk
from scholarkb.ingest.metadata import clean_latex_text, read_braced
from scholarkb.ingest.protect import PlaceholderArena, protect_latex_blocks

# \part, \chapter, \section, \subsection, \subsubsection (starred or with a short
# title), up to the opening brace of the title.
_SECTION_RE: re.Pattern[str] = re.compile(
    r"\\(part|chapter|section|subsection|subsubsection)\*?\s*(?:\[[^\]]*\])?\s*\{"
)
_COMMENT_RE: re.Pattern[str] = re.compile(r"(?<!\\)%")

# LaTeX sectioning depth shifted so every heading level is positive (preamble = 0).
SECTION_LEVELS: dict[str, int] = {
    "part": 1,
    "chapter": 2,
    "section": 3,
    "subsection": 4,
    "subsubsection": 5,
}


class _Command(NamedTuple):
    start: int
    end: int
    kind: str
    title: str


def _is_commented(text: str, pos: int) -> bool:
    """True when an unescaped ``%`` precedes *pos* on its line."""
    line_start = text.rfind("\n", 0, pos) + 1
    return _COMMENT_RE.search(text, line_start, pos) is not None


def _section_commands(protected: str) -> list[_Command]:
    """Live sectioning commands with balanced titles, in document order."""
    commands: list[_Command] = []
    for match in _SECTION_RE.finditer(protected):
        if _is_commented(protected, match.start()):
            continue
        title = read_braced(protected, match.end() - 1)
        if title is None:
            continue
        end = match.end() + len(title) + 1
        if commands and match.start() < commands[-1].end:
            continue
        commands.append(_Command(match.start(), end, match.group(1), title))
    return commands
class LatexSegmenter(BaseSegmenter):
    """Split LaTeX source into one chunk per sectioning command.

    Strategy:
    - Protect math, theorem/float/list/code environments and citation
      commands with placeholders (see scholarkb.ingest.protect).
    - Split on sectioning commands that are not commented out. The command
      itself is dropped from the chunk text; its title becomes the heading.
    - Non-blank content before the first command becomes a 'preamble' chunk.
    - Every command yields at least one chunk, even with an empty body.
    - No commands at all: the whole document is a single 'main' chunk.
    - Oversized sections go through the size pass; placeholders are restored
      in every piece, so no chunk holds a torn protected span.
    """

    def segment(self, content: str) -> list[RawChunk]:
        if not content.strip():
            return [RawChunk(text="", chunk_type="main", start_line=1, end_line=1)]

        protected, arena = protect_latex_blocks(content)
        commands = _section_commands(protected)
        total_lines = content.count("\n") + 1

        if not commands:
            return self._sized_chunks(
                protected.strip(),
                arena,
                chunk_type="main",
                heading="",
                level=0,
                start_line=1,
                end_line=total_lines,
            )

        chunks: list[RawChunk] = []
        line = 1  # line number at ``cursor`` in the restored document
        cursor = 0

        preamble = protected[: commands[0].start]
        if preamble.strip():
            preamble_lines = arena.restore(preamble).count("\n")
            chunks.extend(
                self._sized_chunks(
                    preamble.strip(),
                    arena,
                    chunk_type="preamble",
                    heading="",
                    level=0,
                    start_line=1,
                    end_line=max(1, preamble_lines),
                )
            )

        for i, command in enumerate(commands):
            line += arena.restore(protected[cursor : command.start]).count("\n")
            cursor = command.start
            end = commands[i + 1].start if i + 1 < len(commands) else len(protected)
            section_lines = arena.restore(protected[command.start : end]).rstrip("\n").count("\n")
            heading = clean_latex_text(arena.restore(command.title))
            level = SECTION_LEVELS[command.kind]
            body = protected[command.end : end].strip()
            if not body:
                chunks.append(
                    RawChunk(
                        text="",
                        chunk_type="section",
                        heading=heading,
                        level=level,
                        start_line=line,
                        end_line=line + section_lines,
                    )
                )
                continue
            chunks.extend(
                self._sized_chunks(
                    body,
                    arena,
                    chunk_type="section",
                    heading=heading,
                    level=level,
                    start_line=line,
                    end_line=line + section_lines,
                )
            )
        return chunks


def protected_spans(content: str) -> list[str]:
    """Return the atomic spans LatexSegmenter would protect in *content*."""
    _, arena = protect_latex_blocks(content, PlaceholderArena())
    return arena.expanded()
