"""Format detection and segmentation dispatch.

Source dispatch by extension:
  .tex .latex              → LatexSegmenter
  .md .markdown            → MarkdownSegmenter
  .txt .rst .org .text     → PlainTextSegmenter
  .pdf                     → pypdf text → PlainTextSegmenter
  .bib                     → one 'citation' chunk per BibTeX entry
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path

from scholarkb.config import ChunkingCfg
from scholarkb.db.models import Chunk
from scholarkb.ingest.base import BaseSegmenter, RawChunk
from scholarkb.ingest.bibtex import parse_bibtex
from scholarkb.ingest.latex import LatexSegmenter
from scholarkb.ingest.markdown import MarkdownSegmenter
from scholarkb.ingest.metadata import (
    DocumentMetadata,
    extract_latex_metadata,
    extract_markdown_metadata,
    first_line_title,
    strip_front_matter,
)
from scholarkb.ingest.plaintext import PlainTextSegmenter


class Format(str, Enum):
    LATEX = "latex"
    MARKDOWN = "markdown"
    TEXT = "text"
    PDF = "pdf"
    BIBTEX = "bibtex"


_EXTENSIONS: dict[str, Format] = {
    ".tex": Format.LATEX,
    ".latex": Format.LATEX,
    ".md": Format.MARKDOWN,
    ".markdown": Format.MARKDOWN,
    ".txt": Format.TEXT,
    ".text": Format.TEXT,
    ".rst": Format.TEXT,
    ".org": Format.TEXT,
    ".pdf": Format.PDF,
    ".bib": Format.BIBTEX,
}

SUPPORTED_EXTENSIONS: frozenset[str] = frozenset(_EXTENSIONS)

# Document media_type values stored per format.
MEDIA_TYPES: dict[Format, str] = {
    Format.LATEX: "latex",
    Format.MARKDOWN: "markdown",
    Format.TEXT: "text",
    Format.PDF: "pdf",
    Format.BIBTEX: "bibtex",
}


def detect_format(path: str | Path) -> Format | None:
    """Return the Format for *path*'s extension, or None if unsupported."""
    return _EXTENSIONS.get(Path(path).suffix.lower())


def format_from_media_type(media_type: str) -> Format:
    """Map a stored/declared media type back to a Format (unknown → TEXT)."""
    for fmt, name in MEDIA_TYPES.items():
        if name == media_type:
            return fmt
    return Format.TEXT


def _segmenter_for(fmt: Format, config: ChunkingCfg) -> BaseSegmenter:
    if fmt is Format.LATEX:
        return LatexSegmenter(config)
    if fmt is Format.MARKDOWN:
        return MarkdownSegmenter(config)
    return PlainTextSegmenter(config)


def segment(content: str, fmt: Format, config: ChunkingCfg | None = None) -> list[RawChunk]:
    """Split *content* of format *fmt* into ordered RawChunks.

    PDF content must already be extracted text (see scholarkb.ingest.pdf).
    Markdown front matter is metadata, not content, and is dropped first.

    Args:
        content: Decoded document text.
        fmt: Source format.
        config: Chunking settings; defaults apply when omitted.

    Returns:
        At least one RawChunk (empty input yields one empty chunk).
    """
    config = config if config is not None else ChunkingCfg()
    if fmt is Format.BIBTEX:
        return _segment_bibtex(content)
    offset = 0
    if fmt is Format.MARKDOWN:
        body = strip_front_matter(content)
        offset = content[: len(content) - len(body)].count("\n")
        content = body
    raw_chunks = _segmenter_for(fmt, config).segment(content)
    if offset:
        for raw in raw_chunks:
            if raw.start_line is not None:
                raw.start_line += offset
            if raw.end_line is not None:
                raw.end_line += offset
    return raw_chunks


def _segment_bibtex(content: str) -> list[RawChunk]:
    entries = parse_bibtex(content)
    if not entries:
        return [RawChunk(text="", chunk_type="main")]
    return [
        RawChunk(
            text=f"[{e.key}] {e.citation_text()}",
            chunk_type="citation",
            heading=e.key,
            metadata={"bib_key": e.key, "entry_type": e.entry_type},
        )
        for e in entries
    ]


def extract_metadata(content: str, fmt: Format) -> DocumentMetadata:
    """Extract document metadata for *fmt* (title fallback for plain text)."""
    if fmt is Format.LATEX:
        return extract_latex_metadata(content)
    if fmt is Format.MARKDOWN:
        return extract_markdown_metadata(content)
    if fmt is Format.BIBTEX:
        return DocumentMetadata()
    return DocumentMetadata(title=first_line_title(content))


def to_chunks(
    raw_chunks: list[RawChunk],
    document_id: str,
    library_id: str,
    filename: str = "",
) -> list[Chunk]:
    """Convert RawChunks into sequentially indexed, unsaved Chunk models."""
    chunks: list[Chunk] = []
    for i, raw in enumerate(raw_chunks):
        metadata = {
            "section": raw.heading,
            "level": raw.level,
            "file": filename,
            "start_line": raw.start_line,
            "end_line": raw.end_line,
            **raw.metadata,
        }
        chunks.append(
            Chunk(
                document_id=document_id,
                library_id=library_id,
                chunk_index=i,
                text=raw.text,
                chunk_type=raw.chunk_type,
                metadata=json.dumps(metadata, ensure_ascii=False),
            )
        )
    return chunks
