"""Unified LLM client wrapping both Anthropic and OpenAI SDKs."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from eem.core.config import LLMConfig, redact_api_key
from eem.core.errors import GatewayError, TransientError

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from an LLM completion call."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int


class LLMClient:
    """Unified LLM client that dispatches to Anthropic or OpenAI SDKs.

    Supports three providers:
    - "anthropic": Uses the anthropic SDK
    - "openai": Uses the openai SDK with OpenAI's default base URL
    - "openai-compatible": Uses the openai SDK with a custom base_url
      (for Ollama, vLLM, DeepSeek, etc.)

    Rate limit, connection and timeout errors are raised as TransientError
    so the caller's retry policy can act on them; every other API error is
    raised as GatewayError.
    """

    def __init__(self, config: LLMConfig) -> None:
        self.config = config
        self._client = self._create_client()

    def _create_client(self):
        """Create the underlying SDK client based on provider."""
        api_key = self.config.resolve_api_key()
        logger.debug(
            "Creating %s client for %s (api key: %s)",
            self.config.provider, self.config.model, redact_api_key(api_key) or "unset",
        )

        if self.config.provider == "anthropic":
            import anthropic

            kwargs = {}
            if api_key:
                kwargs["api_key"] = api_key
            if self.config.base_url:
                kwargs["base_url"] = self.config.base_url
            return anthropic.Anthropic(**kwargs)

        elif self.config.provider in ("openai", "openai-compatible"):
            import openai

            kwargs = {}
            if api_key:
                kwargs["api_key"] = api_key
            if self.config.base_url:
                kwargs["base_url"] = self.config.base_url
            elif self.config.provider == "openai-compatible":
                raise ValueError(
                    "openai-compatible provider requires base_url to be set"
                )
            return openai.OpenAI(**kwargs)

        else:
            raise ValueError(
                f"Unknown LLM provider: {self.config.provider!r}. "
                f"Supported: 'anthropic', 'openai', 'openai-compatible'"
            )

    def complete(
        self,
        messages: list[dict],
        max_tokens: int | None = None,
        temperature: float | None = None,
        desc: str = "completion",
    ) -> LLMResponse:
        """Send one completion request.

        Args:
            messages: List of message dicts with 'role' and 'content' keys.
            max_tokens: Override max_tokens from config.
            temperature: Override temperature from config.
            desc: Human-readable description for error messages.
        """
        resolved_max_tokens = max_tokens if max_tokens is not None else self.config.max_tokens
        resolved_temperature = temperature if temperature is not None else self.config.temperature

        if self.config.provider == "anthropic":
            return self._complete_anthropic(messages, resolved_max_tokens, resolved_temperature, desc)
        return self._complete_openai(messages, resolved_max_tokens, resolved_temperature, desc)

    def _complete_anthropic(
        self,
        messages: list[dict],
        max_tokens: int,
        temperature: float,
        desc: str,
    ) -> LLMResponse:
        import anthropic

        try:
            response = self._client.messages.create(
                model=self.config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=messages,
            )
        except (
            anthropic.RateLimitError,
            anthropic.APIConnectionError,
            anthropic.APITimeoutError,
        ) as exc:
            raise TransientError(f"Transient error during {desc}: {exc}") from exc
        except anthropic.APIError as exc:
            raise GatewayError(f"LLM API error during {desc}: {exc}") from exc

        input_tokens = getattr(response.usage, "input_tokens", 0)
        output_tokens = getattr(response.usage, "output_tokens", 0)
        return LLMResponse(
            content=response.content[0].text,
            model=response.model if hasattr(response, "model") else self.config.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
        )

    def _complete_openai(
        self,
        messages: list[dict],
        max_tokens: int,
        temperature: float,
        desc: str,
    ) -> LLMResponse:
        import openai

        try:
            response = self._client.chat.completions.create(
                model=self.config.model,
                max_tokens=max_tokens,
                temperature=temperature,
                messages=messages,
            )
        except (openai.RateLimitError, openai.APIConnectionError, openai.APITimeoutError) as exc:
            raise TransientError(f"Transient error during {desc}: {exc}") from exc
        except openai.APIError as exc:
            raise GatewayError(f"LLM API error during {desc}: {exc}") from exc

        choice = response.choices[0]
        usage = response.usage
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model if response.model else self.config.model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
        )
