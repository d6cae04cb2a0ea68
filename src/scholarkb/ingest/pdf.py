"""PDF text extraction via pypdf."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import pypdf


@dataclass
class PdfContent:
    """Text and document-info metadata pulled from one PDF."""

    text: str
    page_count: int
    title: str | None = None
    authors: list[str] = field(default_factory=list)


def read_pdf(path: Path | str) -> PdfContent:
    """Extract all page text from the PDF at *path*.

    Pages that yield no text (scanned images, etc.) are skipped. Page texts
    are joined with blank lines so the paragraph strategy sees page breaks.

    Raises:
        ValueError: If the file is not a readable PDF.
    """
    try:
        reader = pypdf.PdfReader(str(path))
    except pypdf.errors.PdfReadError as exc:
        raise ValueError(f"Cannot read PDF '{path}': {exc}") from exc

    parts: list[str] = []
    for page in reader.pages:
        page_text = page.extract_text() or ""
        stripped = page_text.strip()
        if stripped:
            parts.append(stripped)

    title: str | None = None
    authors: list[str] = []
    info = reader.metadata
    if info is not None:
        if info.title and info.title.strip():
            title = info.title.strip()
        if info.author and info.author.strip():
            authors = [a.strip() for a in info.author.replace(";", ",").split(",") if a.strip()]

    return PdfContent(
        text="\n\n".join(parts),
        page_count=len(reader.pages),
        title=title,
        authors=authors,
    )
