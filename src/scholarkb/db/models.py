"""Domain models for the scholarkb database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from scholarkb.config import LibraryConfig

PROCESS_STATUSES = ("pending", "processing", "completed", "failed")


@dataclass
class Library:
    id: str
    name: str
    description: str = ""
    config: str = field(default_factory=lambda: "{}")
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def config_obj(self) -> LibraryConfig:
        return LibraryConfig.from_dict(json.loads(self.config))


@dataclass
class Document:
    id: str
    library_id: str
    filename: str
    media_type: str
    content_hash: str
    path: str | None = None
    content: str | None = None
    bib_key: str | None = None
    citation_text: str | None = None
    metadata: str = field(default_factory=lambda: "{}")
    process_status: str = "pending"
    error_message: str | None = None
    created_at: str | None = None

    @property
    def metadata_dict(self) -> dict[str, Any]:
        return json.loads(self.metadata)


@dataclass
class Chunk:
    document_id: str
    library_id: str
    chunk_index: int
    text: str
    chunk_type: str = "section"
    metadata: str = field(default_factory=lambda: "{}")
    created_at: str | None = None
    id: int | None = None  # set after insert; None for unsaved chunks

    @property
    def metadata_dict(self) -> dict[str, Any]:
        return json.loads(self.metadata)


@dataclass
class Citation:
    library_id: str
    key: str
    entry_type: str
    title: str = ""
    author: str = ""
    year: str = ""
    journal: str = ""
    fields: str = field(default_factory=lambda: "{}")
    document_id: str | None = None
    usage_count: int = 0
