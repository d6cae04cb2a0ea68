"""Error taxonomy shared by every scholarkb layer.

ConfigError and ProviderError are surfaced to the caller; ParseError is
recovered locally by the component that raised it; ConsistencyError is only
ever reported through diagnostics and never blocks search.
"""

from __future__ import annotations


class KnowledgeError(Exception):
    """Base class for all scholarkb errors."""


class ConfigError(KnowledgeError, ValueError):
    """Raised when configuration is invalid, forbidden, or incomplete (missing key/model)."""


class ProviderError(KnowledgeError):
    """Raised when an embedding, completion, or rerank provider call fails."""


class ParseError(KnowledgeError):
    """Raised when an LLM response cannot be parsed into the expected structure."""


class ConsistencyError(KnowledgeError):
    """Describes drift between chunk, FTS, and embedding counts."""


class PathSecurityError(KnowledgeError, ValueError):
    """Raised when an ingestion path attempts directory traversal."""


class LibraryNotFoundError(KnowledgeError, LookupError):
    """Raised when a library id does not exist."""


class DocumentNotFoundError(KnowledgeError, LookupError):
    """Raised when a document id does not exist."""
