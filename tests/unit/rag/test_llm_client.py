"""Tests for the LiteLLM-backed Provider."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from scholarkb.config import EmbeddingCfg, LLMCfg
from scholarkb.errors import ConfigError, ProviderError
from scholarkb.rag.llm_client import (
    Provider,
    ProviderKind,
    ProviderSpec,
    completion_provider,
    count_tokens,
    embedding_provider,
)

# ------------------------------------------------------------------
# ProviderSpec
# ------------------------------------------------------------------


@pytest.mark.parametrize(
    "kind, model, expected",
    [
        (ProviderKind.OPENAI, "text-embedding-3-small", "openai/text-embedding-3-small"),
        (ProviderKind.OPENAI, "openai/gpt-4o", "openai/gpt-4o"),
        (ProviderKind.OPENAI, "azure/my-deployment", "azure/my-deployment"),
        (ProviderKind.OLLAMA, "nomic-embed-text", "ollama/nomic-embed-text"),
        (ProviderKind.CUSTOM, "bge-m3", "openai/bge-m3"),
        (ProviderKind.JINA, "jina-reranker-v2", "jina_ai/jina-reranker-v2"),
        (ProviderKind.LOCAL, "", ""),
    ],
)
def test_litellm_model_prefix(kind, model, expected):
    assert ProviderSpec(kind=kind, model=model).litellm_model == expected


def test_ollama_default_base_url():
    assert ProviderSpec(kind=ProviderKind.OLLAMA).api_base == "http://localhost:11434"


def test_base_url_trailing_slash_stripped():
    spec = ProviderSpec(kind=ProviderKind.CUSTOM, base_url="http://gpu-box:8000/v1/")
    assert spec.api_base == "http://gpu-box:8000/v1"


def test_api_key_env_override():
    spec = ProviderSpec(kind=ProviderKind.OPENAI, api_key_env="MY_KEY")
    assert spec.key_env == "MY_KEY"
    assert ProviderSpec(kind=ProviderKind.COHERE).key_env == "COHERE_API_KEY"


# ------------------------------------------------------------------
# validate
# ------------------------------------------------------------------


def test_validate_missing_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    provider = Provider(ProviderSpec(kind=ProviderKind.OPENAI, model="gpt-4o-mini"))
    with pytest.raises(ConfigError, match="OPENAI_API_KEY"):
        provider.validate()


def test_validate_missing_model(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    with pytest.raises(ConfigError, match="No model"):
        Provider(ProviderSpec(kind=ProviderKind.OPENAI)).validate()


def test_validate_custom_requires_base_url():
    with pytest.raises(ConfigError, match="base_url"):
        Provider(ProviderSpec(kind=ProviderKind.CUSTOM, model="m")).validate()


def test_validate_ollama_needs_no_key():
    Provider(ProviderSpec(kind=ProviderKind.OLLAMA, model="nomic-embed-text")).validate()


def test_validate_local_always_ok():
    Provider(ProviderSpec(kind=ProviderKind.LOCAL)).validate()


# ------------------------------------------------------------------
# embed
# ------------------------------------------------------------------


@pytest.fixture
def openai_provider(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    return Provider(ProviderSpec(kind=ProviderKind.OPENAI, model="text-embedding-3-small"))


def test_embed_orders_by_index(openai_provider):
    response = MagicMock()
    response.data = [{"embedding": [0.2], "index": 1}, {"embedding": [0.1], "index": 0}]
    with patch("scholarkb.rag.llm_client.litellm.embedding", return_value=response) as mock:
        vectors = openai_provider.embed(["a", "b"])

    assert vectors == [[0.1], [0.2]]
    kwargs = mock.call_args.kwargs
    assert kwargs["api_key"] == "sk-test"
    assert kwargs["timeout"] == 30.0
    assert kwargs["input"] == ["a", "b"]


def test_embed_accepts_attribute_items(openai_provider):
    item = MagicMock(embedding=[0.5, 0.5], index=0)
    response = MagicMock(data=[item])
    with patch("scholarkb.rag.llm_client.litellm.embedding", return_value=response):
        assert openai_provider.embed(["a"]) == [[0.5, 0.5]]


def test_embed_count_mismatch(openai_provider):
    response = MagicMock(data=[{"embedding": [0.1], "index": 0}])
    with patch("scholarkb.rag.llm_client.litellm.embedding", return_value=response):
        with pytest.raises(ProviderError, match="1 vectors for 2 inputs"):
            openai_provider.embed(["a", "b"])


def test_embed_wraps_failures(openai_provider):
    with patch(
        "scholarkb.rag.llm_client.litellm.embedding", side_effect=RuntimeError("timeout")
    ):
        with pytest.raises(ProviderError, match="timeout"):
            openai_provider.embed(["a"])


def test_local_provider_cannot_embed():
    with pytest.raises(ProviderError):
        Provider(ProviderSpec(kind=ProviderKind.LOCAL)).embed(["a"])


# ------------------------------------------------------------------
# complete / rerank
# ------------------------------------------------------------------


def test_complete_returns_first_choice(openai_provider):
    response = MagicMock()
    response.choices[0].message.content = "answer"
    with patch("scholarkb.rag.llm_client.litellm.completion", return_value=response) as mock:
        text = openai_provider.complete([{"role": "user", "content": "q"}], max_tokens=10)
    assert text == "answer"
    assert mock.call_args.kwargs["max_tokens"] == 10


def test_complete_wraps_failures(openai_provider):
    with patch("scholarkb.rag.llm_client.litellm.completion", side_effect=RuntimeError("429")):
        with pytest.raises(ProviderError, match="429"):
            openai_provider.complete([{"role": "user", "content": "q"}])


def test_rerank_sorted_best_first(monkeypatch):
    monkeypatch.setenv("COHERE_API_KEY", "co-test")
    provider = Provider(ProviderSpec(kind=ProviderKind.COHERE, model="rerank-english-v3.0"))
    response = MagicMock()
    response.results = [
        {"index": 0, "relevance_score": 0.2},
        {"index": 1, "relevance_score": 0.9},
    ]
    with patch("scholarkb.rag.llm_client.litellm.rerank", return_value=response) as mock:
        ranked = provider.rerank("q", ["a", "b"], top_n=2)
    assert ranked == [(1, 0.9), (0, 0.2)]
    assert mock.call_args.kwargs["model"] == "cohere/rerank-english-v3.0"


# ------------------------------------------------------------------
# Construction and token counting
# ------------------------------------------------------------------


def test_completion_provider_none_without_model():
    assert completion_provider(LLMCfg(model="")) is None
    assert completion_provider(LLMCfg(model="gpt-4o-mini")).spec.timeout == 60.0


def test_embedding_provider_unknown_kind():
    with pytest.raises(ConfigError, match="magic"):
        embedding_provider(EmbeddingCfg(provider="magic"))


def test_count_tokens_uses_litellm():
    with patch("scholarkb.rag.llm_client.litellm.token_counter", return_value=7):
        assert count_tokens("gpt-4o-mini", "some text") == 7


def test_count_tokens_fallback():
    with patch(
        "scholarkb.rag.llm_client.litellm.token_counter", side_effect=ValueError("unknown")
    ):
        assert count_tokens("mystery", "abcdefgh") == 2
        assert count_tokens("mystery", "") == 1
