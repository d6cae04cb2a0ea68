"""scholarkb configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site — not in this module)
  2. Environment variables  (SCHOLARKB_EMBEDDING_MODEL, SCHOLARKB_LLM_MODEL,
     SCHOLARKB_RERANK_MODEL, SCHOLARKB_RERANK_PROVIDER)
  3. Per-workspace scholarkb.yaml  (next to .scholarkb.db)
  4. Global ~/.scholarkb/config.yaml  (model defaults only — no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load() — never yaml.load().

Library-level settings (chunking, embedding, retrieval) are snapshotted into a
LibraryConfig when a library is created and stored with it as a single JSON
document, so a config update replaces the whole snapshot atomically.
"""

from __future__ import annotations

import dataclasses
import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from scholarkb.errors import ConfigError

__all__ = [
    "AdvancedCfg",
    "ChunkingCfg",
    "ConfigError",
    "EmbeddingCfg",
    "LibraryConfig",
    "LLMCfg",
    "RerankCfg",
    "RetrievalCfg",
    "ScholarConfig",
    "ensure_global_config",
    "load_config",
    "validate_library_config",
]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".scholarkb"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "scholarkb.yaml"

# Fields that look like API keys; forbidden in the global config.
# Matches: api_key, apikey, api-key, api_secret, _token (suffix), standalone token,
# standalone secret, _secret (suffix), password, passwd, credential(s).
# Does NOT match api_key_env (names an env var, holds no secret) or max_tokens.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)(?![_\-]?env)"
    r"|_token$"
    r"|^token$"
    r"|_secret$"
    r"|^secret$"
    r"|passw(?:ord|d)"
    r"|credential",
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["chunking", "embedding", "retrieval", "advanced", "llm", "rerank"]
)

CHUNKING_STRATEGIES: frozenset[str] = frozenset(["fixed", "semantic", "paragraph"])
PROVIDER_KINDS: frozenset[str] = frozenset(
    ["openai", "ollama", "custom", "cohere", "jina", "local"]
)

DEFAULT_SEPARATORS: list[str] = [
    "\n\n", "\n", "。", ". ", "！", "! ", "？", "? ", "；", "; ", "，", ", ", " ", "",
]


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class ChunkingCfg:
    """Segmentation settings (scholarkb.yaml: chunking:).

    Attributes:
        chunk_size: Maximum chunk length in characters for the size pass.
        chunk_overlap: Characters shared between consecutive size-pass pieces.
        strategy: 'fixed' | 'semantic' | 'paragraph'.
        separators: Ordered separators for the recursive 'semantic' strategy.
        enable_multimodal: Reserved for image/audio sources; text segmentation ignores it.
    """

    chunk_size: int = 512
    chunk_overlap: int = 50
    strategy: str = "semantic"
    separators: list[str] = field(default_factory=lambda: list(DEFAULT_SEPARATORS))
    enable_multimodal: bool = False


@dataclass
class EmbeddingCfg:
    """Embedding provider configuration (scholarkb.yaml: embedding:)."""

    provider: str = "openai"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    base_url: str | None = None
    api_key_env: str | None = None
    batch_size: int = 32
    timeout: float = 30.0


@dataclass
class RetrievalCfg:
    """Retrieval configuration (scholarkb.yaml: retrieval:)."""

    max_results: int = 5
    score_threshold: float = 0.1
    use_hybrid_search: bool = True
    bm25_weight: float = 0.3
    vector_weight: float = 0.7
    rrf_k: int = 60
    token_budget: int = 4_096


@dataclass
class AdvancedCfg:
    """Feature flags (scholarkb.yaml: advanced:)."""

    enable_query_rewrite: bool = False
    enable_rerank: bool = False
    enable_context_routing: bool = True
    enable_bilingual_search: bool = False
    enable_llm_routing: bool = True


@dataclass
class LLMCfg:
    """Chat-completion provider used by routing and query rewriting (scholarkb.yaml: llm:).

    An empty model means no LLM is configured; the LLM-backed paths are skipped.
    """

    provider: str = "openai"
    model: str = ""
    base_url: str | None = None
    api_key_env: str | None = None
    timeout: float = 60.0


@dataclass
class RerankCfg:
    """Rerank provider configuration (scholarkb.yaml: rerank:)."""

    provider: str = "local"
    model: str = ""
    base_url: str | None = None
    api_key_env: str | None = None
    timeout: float = 60.0


@dataclass
class ScholarConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)
    advanced: AdvancedCfg = field(default_factory=AdvancedCfg)
    llm: LLMCfg = field(default_factory=LLMCfg)
    rerank: RerankCfg = field(default_factory=RerankCfg)


@dataclass
class LibraryConfig:
    """Per-library snapshot of chunking, embedding, and retrieval settings."""

    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    retrieval: RetrievalCfg = field(default_factory=RetrievalCfg)

    @classmethod
    def from_config(cls, cfg: ScholarConfig) -> LibraryConfig:
        """Snapshot the library-relevant sections of a loaded configuration."""
        return cls(
            chunking=dataclasses.replace(cfg.chunking, separators=list(cfg.chunking.separators)),
            embedding=dataclasses.replace(cfg.embedding),
            retrieval=dataclasses.replace(cfg.retrieval),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LibraryConfig:
        """Build from a stored JSON dict; missing keys fall back to defaults."""
        base = cls()
        return cls(
            chunking=_merge_section(base.chunking, data.get("chunking") or {}, "chunking"),
            embedding=_merge_section(base.embedding, data.get("embedding") or {}, "embedding"),
            retrieval=_merge_section(base.retrieval, data.get("retrieval") or {}, "retrieval"),
        )

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)

    def merged(self, updates: dict[str, Any]) -> LibraryConfig:
        """Return a new LibraryConfig with *updates* (nested dict) applied."""
        for key in updates:
            if key not in ("chunking", "embedding", "retrieval"):
                raise ConfigError(f"Unknown library config section '{key}'.")
        return LibraryConfig.from_dict(_deep_merge(self.to_dict(), updates))


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigError if *data* contains any API-key-like key names.

    Global config must never store credentials; they belong in env vars.
    """

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}' — ignored.",
                UserWarning,
                stacklevel=4,
            )


def _validate_chunking(c: ChunkingCfg) -> None:
    if c.chunk_size <= 0:
        raise ConfigError(f"chunking.chunk_size must be positive, got {c.chunk_size}")
    if c.chunk_overlap < 0:
        raise ConfigError(f"chunking.chunk_overlap must be >= 0, got {c.chunk_overlap}")
    if c.chunk_overlap >= c.chunk_size:
        raise ConfigError(
            f"chunking.chunk_overlap ({c.chunk_overlap}) must be smaller than "
            f"chunking.chunk_size ({c.chunk_size})"
        )
    if c.strategy not in CHUNKING_STRATEGIES:
        raise ConfigError(
            f"chunking.strategy must be one of {sorted(CHUNKING_STRATEGIES)}, got '{c.strategy}'"
        )


def _validate_retrieval(r: RetrievalCfg) -> None:
    for name in ("score_threshold", "bm25_weight", "vector_weight"):
        value = getattr(r, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"retrieval.{name} must be between 0 and 1, got {value}")
    if r.max_results <= 0:
        raise ConfigError(f"retrieval.max_results must be positive, got {r.max_results}")


def _validate_provider(section: str, provider: str) -> None:
    if provider not in PROVIDER_KINDS:
        raise ConfigError(
            f"{section}.provider must be one of {sorted(PROVIDER_KINDS)}, got '{provider}'"
        )


def validate_library_config(lib_cfg: LibraryConfig) -> None:
    """Raise ConfigError if any library-level setting is out of range."""
    _validate_chunking(lib_cfg.chunking)
    _validate_retrieval(lib_cfg.retrieval)
    _validate_provider("embedding", lib_cfg.embedding.provider)
    if lib_cfg.embedding.dimensions <= 0:
        raise ConfigError(
            f"embedding.dimensions must be positive, got {lib_cfg.embedding.dimensions}"
        )


def _validate(cfg: ScholarConfig) -> None:
    validate_library_config(LibraryConfig(cfg.chunking, cfg.embedding, cfg.retrieval))
    _validate_provider("llm", cfg.llm.provider)
    _validate_provider("rerank", cfg.rerank.provider)


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _coerce(value: Any, default: Any, name: str) -> Any:
    """Coerce a raw YAML/JSON value to the type of the field's current value."""
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        if isinstance(default, list):
            if not isinstance(value, list):
                raise TypeError("expected a list")
            return [str(v) for v in value]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid value for '{name}': {value!r} ({exc})") from exc
    if value is None:
        return None
    return str(value)


def _merge_section(current: Any, raw: dict[str, Any], section: str) -> Any:
    """Return a copy of dataclass *current* with recognised keys from *raw* applied."""
    if not isinstance(raw, dict):
        raise ConfigError(f"Config section '{section}' must be a mapping")
    known = {f.name for f in dataclasses.fields(current)}
    updates: dict[str, Any] = {}
    for key, value in raw.items():
        if key not in known:
            warnings.warn(
                f"Unknown config key '{section}.{key}' — ignored.",
                UserWarning,
                stacklevel=3,
            )
            continue
        updates[key] = _coerce(value, getattr(current, key), f"{section}.{key}")
    return dataclasses.replace(current, **updates)


def _cfg_from_dict(data: dict[str, Any]) -> ScholarConfig:
    """Build a *ScholarConfig* from a merged raw YAML dict."""
    cfg = ScholarConfig()
    for section in _KNOWN_SECTIONS:
        if section in data and data[section] is not None:
            setattr(cfg, section, _merge_section(getattr(cfg, section), data[section], section))
    return cfg


def _apply_env_overrides(cfg: ScholarConfig) -> ScholarConfig:
    """Apply SCHOLARKB_* environment variable overrides."""
    if model := os.environ.get("SCHOLARKB_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if model := os.environ.get("SCHOLARKB_LLM_MODEL"):
        cfg.llm.model = model
    if model := os.environ.get("SCHOLARKB_RERANK_MODEL"):
        cfg.rerank.model = model
    if provider := os.environ.get("SCHOLARKB_RERANK_PROVIDER"):
        cfg.rerank.provider = provider
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> ScholarConfig:
    """Load and return a merged *ScholarConfig*.

    Applies layers in order: global → per-workspace → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *scholarkb.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Returns:
        Fully merged and validated *ScholarConfig*.

    Raises:
        ConfigError: If global config contains API-key-like fields or any
            value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    # Layer 1: global config
    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    # Layer 2: per-workspace config
    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)

    # Layer 3: env var overrides
    cfg = _apply_env_overrides(cfg)

    _validate(cfg)
    return cfg


def ensure_global_config(
    global_config_path: Path | None = None,
) -> Path:
    """Create ``~/.scholarkb/config.yaml`` with defaults if it does not exist.

    Creates parent directory with mode 0o700 and the config file with
    mode 0o600 (owner-readable only).

    Args:
        global_config_path: Override path (for testing).

    Returns:
        Path to the global config file.
    """
    target = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    target.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    if not target.exists():
        content = (
            "# scholarkb global configuration — model defaults only.\n"
            "# NEVER store API keys here — use environment variables:\n"
            "#   export OPENAI_API_KEY=sk-...\n"
            "#   export COHERE_API_KEY=...\n"
            "\n"
            "embedding:\n"
            "  provider: openai\n"
            "  model: text-embedding-3-small\n"
            "  dimensions: 1536\n"
            "\n"
            "llm:\n"
            "  provider: openai\n"
            "  model: gpt-4o-mini\n"
            "\n"
            "rerank:\n"
            "  provider: local\n"
        )
        target.write_text(content, encoding="utf-8")
        target.chmod(0o600)

    return target
