"""scholarkb ingest pipeline — segmenters, metadata, citations, indexers."""

from scholarkb.ingest.base import BaseSegmenter, RawChunk
from scholarkb.ingest.latex import LatexSegmenter
from scholarkb.ingest.markdown import MarkdownSegmenter, split_by_headings
from scholarkb.ingest.plaintext import PlainTextSegmenter
from scholarkb.ingest.protect import PlaceholderArena, protect_latex_blocks
from scholarkb.ingest.segmenter import Format, detect_format, segment

__all__ = [
    "BaseSegmenter",
    "Format",
    "LatexSegmenter",
    "MarkdownSegmenter",
    "PlaceholderArena",
    "PlainTextSegmenter",
    "RawChunk",
    "detect_format",
    "protect_latex_blocks",
    "segment",
    "split_by_headings",
]
