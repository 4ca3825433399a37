"""Embedding generation with dual backend (FastEmbed + OpenAI) and an in-memory cache."""

from __future__ import annotations

import hashlib
import os
import threading
import warnings

from eem.core.config import EmbeddingConfig
from eem.core.errors import GatewayError, TransientError


def _suppress_hf_warnings() -> None:
    """Suppress noisy HuggingFace/tokenizers warnings during embedding model load."""
    os.environ.setdefault("TOKENIZERS_PARALLELISM", "false")
    os.environ.setdefault("HF_HUB_DISABLE_PROGRESS_BARS", "1")
    warnings.filterwarnings("ignore", message=".*huggingface.*", category=FutureWarning)
    warnings.filterwarnings("ignore", module="huggingface_hub")


class FastEmbedBackend:
    """Local embedding backend using FastEmbed (ONNX Runtime)."""

    _model_cache: dict[str, object] = {}  # class-level cache for model instances

    def __init__(self, config: EmbeddingConfig):
        self.model_name = config.model
        self.batch_size = config.batch_size

    def _get_model(self):
        if self.model_name not in self._model_cache:
            _suppress_hf_warnings()
            from fastembed import TextEmbedding

            self._model_cache[self.model_name] = TextEmbedding(model_name=self.model_name)
        return self._model_cache[self.model_name]

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        model = self._get_model()
        results: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            chunk = texts[i : i + self.batch_size]
            results.extend(e.tolist() for e in model.embed(chunk))
        return results


class OpenAIBackend:
    """Remote embedding backend using OpenAI-compatible API."""

    def __init__(self, config: EmbeddingConfig):
        self.config = config
        self.batch_size = config.batch_size
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI

            kwargs: dict = {}
            api_key = self.config.resolve_api_key()
            if api_key:
                kwargs["api_key"] = api_key
            if self.config.base_url:
                kwargs["base_url"] = self.config.base_url
            self._client = OpenAI(**kwargs)
        return self._client

    def _embed_chunk(self, texts: list[str]) -> list[list[float]]:
        import openai

        kwargs: dict = {"model": self.config.model, "input": texts}
        if self.config.dimensions:
            kwargs["dimensions"] = self.config.dimensions
        try:
            response = self._get_client().embeddings.create(**kwargs)
        except (openai.RateLimitError, openai.APIConnectionError, openai.APITimeoutError) as exc:
            raise TransientError(f"Transient embedding error: {exc}") from exc
        except openai.APIError as exc:
            raise GatewayError(f"Embedding API error: {exc}") from exc
        sorted_data = sorted(response.data, key=lambda d: d.index)
        return [d.embedding for d in sorted_data]

    def embed(self, text: str) -> list[float]:
        return self._embed_chunk([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        results: list[list[float]] = []
        for i in range(0, len(texts), self.batch_size):
            results.extend(self._embed_chunk(texts[i : i + self.batch_size]))
        return results


class EmbeddingProvider:
    """Generates embeddings using FastEmbed (local) or OpenAI API.

    Embeddings are cached in memory by content hash for the lifetime of the
    provider, so one text is sent to the backend at most once.
    """

    def __init__(self, config: EmbeddingConfig):
        self.config = config
        self._backend: FastEmbedBackend | OpenAIBackend | None = None
        self._cache: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def _get_backend(self) -> FastEmbedBackend | OpenAIBackend:
        """Lazily create the embedding backend."""
        if self._backend is None:
            if self.config.provider == "fastembed":
                self._backend = FastEmbedBackend(self.config)
            elif self.config.provider in ("openai", "openai-compatible"):
                self._backend = OpenAIBackend(self.config)
            else:
                raise ValueError(
                    f"Unknown embedding provider: {self.config.provider!r}. "
                    f"Supported: 'fastembed', 'openai', 'openai-compatible'"
                )
        return self._backend

    def content_hash(self, text: str) -> str:
        """Cache key for ``text``; includes provider and model."""
        key = f"{self.config.provider}:{self.config.model}:{text}"
        return hashlib.sha256(key.encode()).hexdigest()

    def embed(self, text: str) -> list[float]:
        ch = self.content_hash(text)
        with self._lock:
            cached = self._cache.get(ch)
        if cached is not None:
            return cached
        embedding = self._get_backend().embed(text)
        with self._lock:
            self._cache[ch] = embedding
        return embedding

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts, sending only uncached ones to the backend. Order is preserved."""
        hashes = [self.content_hash(t) for t in texts]
        with self._lock:
            results = [self._cache.get(ch) for ch in hashes]
        missing = [i for i, r in enumerate(results) if r is None]
        if missing:
            fresh = self._get_backend().embed_batch([texts[i] for i in missing])
            with self._lock:
                for i, emb in zip(missing, fresh):
                    self._cache[hashes[i]] = emb
                    results[i] = emb
        return results  # type: ignore[return-value]
