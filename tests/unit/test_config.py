"""Tests for Settings and the gateway provider configs."""

from __future__ import annotations

from pathlib import Path

from eem.config import Settings, get_settings, reset_settings
from eem.core.config import EmbeddingConfig, LLMConfig, redact_api_key


class TestSettings:
    def test_defaults(self, monkeypatch):
        """Settings defaults match the documented configuration."""
        for var in ("EEM_STORAGE_DIR", "EEM_CORRELATION_THRESHOLD", "EEM_RETENTION_DAYS"):
            monkeypatch.delenv(var, raising=False)
        settings = Settings(_env_file=None)
        assert settings.storage_dir == Path(".eem")
        assert settings.enable_flow_processing is True
        assert settings.enable_correlation_analysis is True
        assert settings.retention_days == 90
        assert settings.max_events_per_activity == 1000
        assert settings.correlation_threshold == 0.75
        assert settings.context_min_score == 0.5
        assert settings.event_buffer_size == 100

    def test_env_prefix(self, monkeypatch, tmp_path):
        """EEM_* environment variables override defaults."""
        monkeypatch.setenv("EEM_STORAGE_DIR", str(tmp_path / "store"))
        monkeypatch.setenv("EEM_ENABLE_FLOW_PROCESSING", "false")
        monkeypatch.setenv("EEM_CORRELATION_THRESHOLD", "0.9")
        settings = Settings(_env_file=None)
        assert settings.storage_dir == tmp_path / "store"
        assert settings.enable_flow_processing is False
        assert settings.correlation_threshold == 0.9

    def test_derived_paths(self, tmp_path):
        settings = Settings(storage_dir=tmp_path, _env_file=None)
        assert settings.database_path == tmp_path / "eem.db"
        assert settings.database_url == f"sqlite:///{tmp_path / 'eem.db'}"
        assert settings.logs_dir == tmp_path / "logs"

    def test_ensure_storage_dir(self, tmp_path):
        """ensure_storage_dir creates nested directories."""
        settings = Settings(storage_dir=tmp_path / "a" / "b", _env_file=None)
        settings.ensure_storage_dir()
        assert (tmp_path / "a" / "b").is_dir()

    def test_get_settings_is_cached(self, monkeypatch, tmp_path):
        """get_settings returns the same instance until reset_settings is called."""
        reset_settings()
        monkeypatch.setenv("EEM_STORAGE_DIR", str(tmp_path / "one"))
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("EEM_STORAGE_DIR", str(tmp_path / "two"))
        assert get_settings().storage_dir == tmp_path / "one"
        reset_settings()
        assert get_settings().storage_dir == tmp_path / "two"
        reset_settings()


class TestLLMConfig:
    def test_defaults(self):
        config = LLMConfig()
        assert config.provider == "anthropic"
        assert config.temperature == 0.3
        assert config.max_tokens == 1024
        assert config.base_url is None

    def test_from_dict(self):
        config = LLMConfig.from_dict({"provider": "openai", "model": "gpt-4o", "temperature": 0.0})
        assert config.provider == "openai"
        assert config.model == "gpt-4o"
        assert config.temperature == 0.0

    def test_env_overrides(self, monkeypatch):
        """EEM_LLM_* env vars apply when the dict is silent."""
        monkeypatch.setenv("EEM_LLM_PROVIDER", "openai-compatible")
        monkeypatch.setenv("EEM_LLM_MODEL", "llama3")
        monkeypatch.setenv("EEM_LLM_BASE_URL", "http://localhost:11434/v1")
        config = LLMConfig.from_dict({})
        assert config.provider == "openai-compatible"
        assert config.model == "llama3"
        assert config.base_url == "http://localhost:11434/v1"

    def test_dict_beats_env(self, monkeypatch):
        """Explicit dict values take precedence over env vars."""
        monkeypatch.setenv("EEM_LLM_MODEL", "env-model")
        config = LLMConfig.from_dict({"model": "dict-model"})
        assert config.model == "dict-model"

    def test_resolve_api_key_per_provider(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "ant-key")
        monkeypatch.setenv("OPENAI_API_KEY", "oai-key")
        assert LLMConfig(provider="anthropic").resolve_api_key() == "ant-key"
        assert LLMConfig(provider="openai").resolve_api_key() == "oai-key"
        assert LLMConfig(provider="openai", api_key="explicit").resolve_api_key() == "explicit"

    def test_resolve_api_key_missing(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        assert LLMConfig(provider="anthropic").resolve_api_key() is None


class TestEmbeddingConfig:
    def test_defaults(self):
        config = EmbeddingConfig()
        assert config.provider == "fastembed"
        assert config.model == "BAAI/bge-small-en-v1.5"
        assert config.dimensions == 384
        assert config.batch_size == 64

    def test_from_dict_ignores_unknown_keys(self):
        config = EmbeddingConfig.from_dict({"provider": "openai", "dimensions": 1536, "colour": "blue"})
        assert config.provider == "openai"
        assert config.dimensions == 1536
        assert not hasattr(config, "colour")

    def test_resolve_api_key_env(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "oai-key")
        assert EmbeddingConfig().resolve_api_key() == "oai-key"


class TestRedactApiKey:
    def test_none(self):
        assert redact_api_key(None) is None

    def test_short_key_fully_hidden(self):
        assert redact_api_key("abcd1234") == "****"

    def test_long_key_shows_ends(self):
        assert redact_api_key("sk-ant-0123456789") == "sk-a...6789"
