"""Tests for the entity/embedding gateway and its SDK clients."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest

from eem.core.config import EmbeddingConfig, LLMConfig
from eem.core.errors import GatewayError, RetryExhaustedError, TransientError
from eem.core.resilience import RetryPolicy
from eem.gateway.embeddings import EmbeddingProvider
from eem.gateway.gateway import Gateway, parse_entities
from eem.gateway.llm_client import LLMClient, LLMResponse

FAST_POLICY = RetryPolicy("test", max_attempts=2, base_delay=0.0, max_delay=0.0, timeout=None)


def _response(text: str) -> LLMResponse:
    return LLMResponse(content=text, model="m", input_tokens=1, output_tokens=1, total_tokens=2)


class TestParseEntities:
    def test_fenced_json_array(self):
        """Entities inside a ```json fence are parsed."""
        text = 'Here you go:\n```json\n[{"name": "parser.py", "type": "file", "relevance": 0.9}]\n```'
        entities = parse_entities(text)
        assert len(entities) == 1
        assert entities[0].name == "parser.py"
        assert entities[0].type == "file"
        assert entities[0].relevance == 0.9

    def test_object_with_entities_key(self):
        entities = parse_entities('{"entities": [{"name": "SQLAlchemy", "type": "library"}]}')
        assert [e.name for e in entities] == ["SQLAlchemy"]
        assert entities[0].relevance == 1.0

    def test_plain_strings(self):
        entities = parse_entities('["Lexer", "  ", "Parser"]')
        assert [e.name for e in entities] == ["Lexer", "Parser"]
        assert all(e.type == "concept" for e in entities)

    def test_relevance_clamped_and_bad_values_defaulted(self):
        entities = parse_entities('[{"name": "a", "relevance": 3}, {"name": "b", "relevance": "high"}]')
        assert [e.relevance for e in entities] == [1.0, 1.0]

    def test_malformed_json_raises(self):
        with pytest.raises(GatewayError, match="malformed"):
            parse_entities("not json at all")

    def test_non_list_raises(self):
        with pytest.raises(GatewayError, match="list"):
            parse_entities('"just a string"')


class TestGateway:
    def test_complete_returns_content(self):
        llm = MagicMock()
        llm.complete.return_value = _response("done")
        gateway = Gateway(llm_client=llm, policy=FAST_POLICY)
        assert gateway.complete([{"role": "user", "content": "hi"}]) == "done"
        llm.complete.assert_called_once_with([{"role": "user", "content": "hi"}], None, None)

    def test_extract_entities(self):
        """extract_entities prompts the completion service and parses its answer."""
        llm = MagicMock()
        llm.complete.return_value = _response('["Flow", "Graph"]')
        gateway = Gateway(llm_client=llm, policy=FAST_POLICY)

        entities = gateway.extract_entities("Built the Flow Graph")

        assert [e.name for e in entities] == ["Flow", "Graph"]
        prompt = llm.complete.call_args[0][0][0]["content"]
        assert "Built the Flow Graph" in prompt

    def test_embed_delegates_to_embedder(self):
        embedder = MagicMock()
        embedder.embed.return_value = [0.1, 0.2]
        gateway = Gateway(embedder=embedder, policy=FAST_POLICY)
        assert gateway.embed("text") == [0.1, 0.2]

    def test_transient_failures_are_retried(self):
        embedder = MagicMock()
        embedder.embed.side_effect = [TransientError("busy"), [1.0]]
        gateway = Gateway(embedder=embedder, policy=FAST_POLICY)
        assert gateway.embed("text") == [1.0]
        assert embedder.embed.call_count == 2

    def test_persistent_failure_exhausts(self):
        llm = MagicMock()
        llm.complete.side_effect = TransientError("busy")
        gateway = Gateway(llm_client=llm, policy=FAST_POLICY)
        with pytest.raises(RetryExhaustedError):
            gateway.complete([{"role": "user", "content": "hi"}])

    def test_clients_created_lazily(self, monkeypatch):
        """Constructing a gateway touches neither SDK."""
        mock_anthropic_cls = MagicMock()
        monkeypatch.setattr("anthropic.Anthropic", mock_anthropic_cls)
        gateway = Gateway(llm_config=LLMConfig(provider="anthropic", api_key="k"))
        mock_anthropic_cls.assert_not_called()
        assert isinstance(gateway.llm, LLMClient)
        mock_anthropic_cls.assert_called_once_with(api_key="k")


class TestLLMClient:
    def test_anthropic_completion(self, monkeypatch):
        response = MagicMock()
        response.content = [MagicMock(text="Hello")]
        response.model = "claude"
        response.usage = MagicMock(input_tokens=5, output_tokens=7)
        mock_client = MagicMock()
        mock_client.messages.create.return_value = response
        monkeypatch.setattr("anthropic.Anthropic", lambda **kwargs: mock_client)

        client = LLMClient(LLMConfig(provider="anthropic", max_tokens=99))
        result = client.complete([{"role": "user", "content": "hi"}])

        assert result.content == "Hello"
        assert result.total_tokens == 12
        assert mock_client.messages.create.call_args[1]["max_tokens"] == 99

    def test_openai_completion(self, monkeypatch):
        response = MagicMock()
        response.choices = [MagicMock(message=MagicMock(content="Hi there"))]
        response.model = "gpt"
        response.usage = MagicMock(prompt_tokens=3, completion_tokens=4, total_tokens=7)
        mock_client = MagicMock()
        mock_client.chat.completions.create.return_value = response
        monkeypatch.setattr("openai.OpenAI", lambda **kwargs: mock_client)

        client = LLMClient(LLMConfig(provider="openai", api_key="k"))
        result = client.complete([{"role": "user", "content": "hi"}], temperature=0.9)

        assert result.content == "Hi there"
        assert result.total_tokens == 7
        assert mock_client.chat.completions.create.call_args[1]["temperature"] == 0.9

    def test_openai_compatible_requires_base_url(self, monkeypatch):
        monkeypatch.setattr("openai.OpenAI", MagicMock())
        with pytest.raises(ValueError, match="base_url"):
            LLMClient(LLMConfig(provider="openai-compatible"))

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown LLM provider"):
            LLMClient(LLMConfig(provider="bedrock"))

    def test_client_creation_logs_redacted_key(self, monkeypatch, caplog):
        """The resolved key is logged only in redacted form."""
        monkeypatch.setattr("anthropic.Anthropic", MagicMock())
        with caplog.at_level(logging.DEBUG, logger="eem.gateway.llm_client"):
            LLMClient(LLMConfig(provider="anthropic", api_key="sk-ant-0123456789"))
        assert "sk-a...6789" in caplog.text
        assert "sk-ant-0123456789" not in caplog.text


class TestEmbeddingProvider:
    def test_cache_hits_skip_backend(self):
        """The same text is sent to the backend once."""
        provider = EmbeddingProvider(EmbeddingConfig())
        backend = MagicMock()
        backend.embed.return_value = [0.5, 0.5]
        provider._backend = backend

        assert provider.embed("same") == [0.5, 0.5]
        assert provider.embed("same") == [0.5, 0.5]
        backend.embed.assert_called_once_with("same")

    def test_embed_batch_only_sends_missing(self):
        provider = EmbeddingProvider(EmbeddingConfig())
        backend = MagicMock()
        backend.embed.return_value = [1.0]
        backend.embed_batch.return_value = [[2.0], [3.0]]
        provider._backend = backend

        provider.embed("a")
        result = provider.embed_batch(["a", "b", "c"])

        assert result == [[1.0], [2.0], [3.0]]
        backend.embed_batch.assert_called_once_with(["b", "c"])

    def test_unknown_provider(self):
        provider = EmbeddingProvider(EmbeddingConfig(provider="word2vec"))
        with pytest.raises(ValueError, match="Unknown embedding provider"):
            provider.embed("x")

    def test_cache_key_includes_model(self):
        a = EmbeddingProvider(EmbeddingConfig(model="m1"))
        b = EmbeddingProvider(EmbeddingConfig(model="m2"))
        assert a.content_hash("text") != b.content_hash("text")
