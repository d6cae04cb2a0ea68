"""Provider capability interface over LiteLLM.

Every embedding, completion, and rerank call routes through a ``Provider``.
The provider kind is resolved once, when configuration is loaded, into a
``ProviderSpec`` (model, endpoint, credential variable, per-call timeout);
call sites never branch on provider names.

LiteLLM's built-in retry is used (``num_retries``); each call carries its own
``timeout`` so one slow request cannot stall a whole batch. Failures surface
as ``ProviderError``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any

import litellm

from scholarkb.config import EmbeddingCfg, LLMCfg, RerankCfg
from scholarkb.errors import ConfigError, ProviderError

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

logger = logging.getLogger(__name__)


class ProviderKind(str, Enum):
    """Closed set of supported backends."""

    OPENAI = "openai"  # hosted OpenAI API
    OLLAMA = "ollama"  # local Ollama server, no key
    CUSTOM = "custom"  # any OpenAI-compatible endpoint at base_url
    COHERE = "cohere"  # hosted rerank/embeddings
    JINA = "jina"  # hosted rerank/embeddings
    LOCAL = "local"  # no network; keyword rerank only


# LiteLLM model prefix per kind.
_LITELLM_PREFIX: dict[ProviderKind, str] = {
    ProviderKind.OPENAI: "openai",
    ProviderKind.OLLAMA: "ollama",
    ProviderKind.CUSTOM: "openai",
    ProviderKind.COHERE: "cohere",
    ProviderKind.JINA: "jina_ai",
}

# Default credential variable per kind (None = no key required).
_DEFAULT_KEY_ENV: dict[ProviderKind, str | None] = {
    ProviderKind.OPENAI: "OPENAI_API_KEY",
    ProviderKind.OLLAMA: None,
    ProviderKind.CUSTOM: None,
    ProviderKind.COHERE: "COHERE_API_KEY",
    ProviderKind.JINA: "JINA_AI_API_KEY",
    ProviderKind.LOCAL: None,
}

_OLLAMA_DEFAULT_BASE = "http://localhost:11434"


@dataclass(frozen=True)
class ProviderSpec:
    """Resolved provider endpoint.

    Attributes:
        kind: Backend kind.
        model: Model name, with or without a LiteLLM ``provider/`` prefix.
        base_url: Endpoint override (required for CUSTOM, defaulted for OLLAMA).
        api_key_env: Environment variable holding the key; defaults per kind.
        timeout: Per-call timeout in seconds.
        num_retries: LiteLLM retries for transient errors.
    """

    kind: ProviderKind
    model: str = ""
    base_url: str | None = None
    api_key_env: str | None = None
    timeout: float = 30.0
    num_retries: int = 2

    @property
    def litellm_model(self) -> str:
        prefix = _LITELLM_PREFIX.get(self.kind, "")
        if not prefix or self.model.startswith(f"{prefix}/"):
            return self.model
        if self.kind is ProviderKind.OPENAI and "/" in self.model:
            # Already routed to another LiteLLM provider (e.g. "azure/...").
            return self.model
        return f"{prefix}/{self.model}"

    @property
    def key_env(self) -> str | None:
        return self.api_key_env or _DEFAULT_KEY_ENV[self.kind]

    @property
    def api_base(self) -> str | None:
        if self.base_url:
            return self.base_url.rstrip("/")
        if self.kind is ProviderKind.OLLAMA:
            return _OLLAMA_DEFAULT_BASE
        return None


class Provider:
    """Capability interface: ``embed``, ``complete``, ``rerank``."""

    def __init__(self, spec: ProviderSpec) -> None:
        self.spec = spec

    def __repr__(self) -> str:
        return f"Provider({self.spec.kind.value}, model={self.spec.model!r})"

    @property
    def is_local(self) -> bool:
        return self.spec.kind is ProviderKind.LOCAL

    def validate(self) -> None:
        """Raise ConfigError if the model, endpoint, or API key is missing."""
        if self.is_local:
            return
        if not self.spec.model:
            raise ConfigError(f"No model configured for the {self.spec.kind.value} provider.")
        if self.spec.kind is ProviderKind.CUSTOM and not self.spec.base_url:
            raise ConfigError("The custom provider requires base_url.")
        env_var = self.spec.key_env
        if env_var and not os.getenv(env_var):
            raise ConfigError(
                f"API key not found for provider '{self.spec.kind.value}'. "
                f"Set the {env_var} environment variable."
            )

    def _call_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.spec.litellm_model,
            "timeout": self.spec.timeout,
            "num_retries": self.spec.num_retries,
        }
        if self.spec.api_base:
            kwargs["api_base"] = self.spec.api_base
        env_var = self.spec.key_env
        if env_var and os.getenv(env_var):
            kwargs["api_key"] = os.environ[env_var]
        elif self.spec.kind is ProviderKind.CUSTOM:
            # OpenAI-compatible servers without auth still expect a key string.
            kwargs["api_key"] = "none"
        return kwargs

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts* in one request, returning vectors in input order.

        Raises:
            ProviderError: On network/HTTP failure or a malformed response.
        """
        if self.is_local:
            raise ProviderError("The local provider cannot compute embeddings.")
        try:
            response = litellm.embedding(input=texts, **self._call_kwargs())
            data = list(response.data)
        except Exception as exc:
            raise ProviderError(f"Embedding request failed ({self.spec.model}): {exc}") from exc
        if len(data) != len(texts):
            raise ProviderError(
                f"Embedding response has {len(data)} vectors for {len(texts)} inputs"
            )
        if all(_field(item, "index") is not None for item in data):
            data.sort(key=lambda item: _field(item, "index"))
        return [list(_field(item, "embedding")) for item in data]

    def complete(
        self,
        messages: list[dict],
        max_tokens: int = 512,
        temperature: float = 0.0,
    ) -> str:
        """Return the text of the first completion choice.

        Raises:
            ProviderError: On network/HTTP failure.
        """
        if self.is_local:
            raise ProviderError("The local provider cannot run completions.")
        try:
            response = litellm.completion(
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                **self._call_kwargs(),
            )
        except Exception as exc:
            raise ProviderError(f"Completion request failed ({self.spec.model}): {exc}") from exc
        return response.choices[0].message.content or ""

    def rerank(
        self, query: str, documents: list[str], top_n: int | None = None
    ) -> list[tuple[int, float]]:
        """Score *documents* against *query* with a rerank model.

        Returns:
            ``(document_index, relevance_score)`` pairs, best-first.

        Raises:
            ProviderError: On network/HTTP failure or a malformed response.
        """
        if self.is_local:
            raise ProviderError("The local provider has no rerank model.")
        try:
            response = litellm.rerank(
                query=query,
                documents=documents,
                top_n=top_n or len(documents),
                **self._call_kwargs(),
            )
            results = [
                (int(_field(r, "index")), float(_field(r, "relevance_score")))
                for r in response.results
            ]
        except Exception as exc:
            raise ProviderError(f"Rerank request failed ({self.spec.model}): {exc}") from exc
        results.sort(key=lambda pair: pair[1], reverse=True)
        return results


def _field(item: Any, name: str) -> Any:
    """Read *name* from a dict-like or attribute-style LiteLLM result item."""
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


# ------------------------------------------------------------------
# Construction from configuration
# ------------------------------------------------------------------


def _spec_from_cfg(cfg: EmbeddingCfg | LLMCfg | RerankCfg) -> ProviderSpec:
    try:
        kind = ProviderKind(cfg.provider)
    except ValueError as exc:
        raise ConfigError(f"Unknown provider '{cfg.provider}'") from exc
    return ProviderSpec(
        kind=kind,
        model=cfg.model,
        base_url=cfg.base_url,
        api_key_env=cfg.api_key_env,
        timeout=cfg.timeout,
    )


def embedding_provider(cfg: EmbeddingCfg) -> Provider:
    return Provider(_spec_from_cfg(cfg))


def completion_provider(cfg: LLMCfg) -> Provider | None:
    """Return the chat provider, or None when no LLM model is configured."""
    if not cfg.model:
        return None
    return Provider(_spec_from_cfg(cfg))


def rerank_provider(cfg: RerankCfg) -> Provider:
    return Provider(_spec_from_cfg(cfg))


def count_tokens(model: str, text: str) -> int:
    """Count tokens in *text* for *model* using LiteLLM's provider-aware counter.

    Falls back to character-based approximation (4 chars ≈ 1 token) if the model
    is not supported by litellm.token_counter().
    """
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception:
        return max(1, len(text) // 4)
