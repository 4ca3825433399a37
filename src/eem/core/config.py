"""Provider configuration: explicit config > env > defaults."""

from __future__ import annotations

import os
from dataclasses import dataclass


def redact_api_key(key: str | None) -> str | None:
    """Redact an API key, showing only the first 4 and last 4 characters.

    Returns None if the key is None, or the redacted string otherwise.
    Short keys (8 chars or fewer) are fully redacted as '****'.
    """
    if key is None:
        return None
    if len(key) <= 8:
        return "****"
    return f"{key[:4]}...{key[-4:]}"


@dataclass
class LLMConfig:
    """Configuration for the text-completion side of the gateway.

    Supports three providers:
    - "anthropic": Anthropic Claude models (default)
    - "openai": OpenAI GPT models
    - "openai-compatible": Any OpenAI-compatible API (Ollama, vLLM, etc.)

    Environment variables:
    - EEM_LLM_PROVIDER: override provider
    - EEM_LLM_MODEL: override model
    - EEM_LLM_BASE_URL: override base_url
    - ANTHROPIC_API_KEY: API key for Anthropic provider
    - OPENAI_API_KEY: API key for OpenAI / OpenAI-compatible providers
    """

    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    temperature: float = 0.3
    max_tokens: int = 1024
    base_url: str | None = None  # For OpenAI-compatible APIs (Ollama, vLLM)
    api_key: str | None = None   # Override; defaults to env var

    @classmethod
    def from_dict(cls, data: dict) -> LLMConfig:
        """Create LLMConfig from a dict, applying env var overrides.

        Config precedence: explicit dict values > env vars > class defaults.
        """
        config = cls()

        env_provider = os.environ.get("EEM_LLM_PROVIDER")
        if env_provider:
            config.provider = env_provider
        env_model = os.environ.get("EEM_LLM_MODEL")
        if env_model:
            config.model = env_model
        env_base_url = os.environ.get("EEM_LLM_BASE_URL")
        if env_base_url:
            config.base_url = env_base_url

        for key in ("provider", "model", "temperature", "max_tokens", "base_url", "api_key"):
            if key in data:
                setattr(config, key, data[key])

        return config

    def resolve_api_key(self) -> str | None:
        """Resolve the API key: explicit > env var per provider."""
        if self.api_key:
            return self.api_key
        if self.provider == "anthropic":
            return os.environ.get("ANTHROPIC_API_KEY")
        return os.environ.get("OPENAI_API_KEY")


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding side of the gateway.

    Supports two backends:
    - "fastembed": Local ONNX-based embeddings (default, no API key needed)
    - "openai": OpenAI API embeddings (requires OPENAI_API_KEY)
    """

    provider: str = "fastembed"
    model: str = "BAAI/bge-small-en-v1.5"
    dimensions: int = 384
    base_url: str | None = None
    api_key: str | None = None
    batch_size: int = 64

    @classmethod
    def from_dict(cls, data: dict) -> EmbeddingConfig:
        """Create EmbeddingConfig from a dict."""
        config = cls()
        for key in ("provider", "model", "dimensions", "base_url", "api_key", "batch_size"):
            if key in data:
                setattr(config, key, data[key])
        return config

    def resolve_api_key(self) -> str | None:
        """Resolve the API key: explicit > env var."""
        if self.api_key:
            return self.api_key
        return os.environ.get("OPENAI_API_KEY")
