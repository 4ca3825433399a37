"""Entity and embedding gateway: the single seam to the text-completion and embedding services."""

from __future__ import annotations

import json
import logging
import re

from eem.core.config import EmbeddingConfig, LLMConfig
from eem.core.errors import GatewayError
from eem.core.models import Entity
from eem.core.resilience import AI_POLICY, RetryPolicy, call_with_policy
from eem.gateway.embeddings import EmbeddingProvider
from eem.gateway.llm_client import LLMClient

logger = logging.getLogger(__name__)

ENTITY_PROMPT = """Extract the named entities mentioned in the developer activity below.

Return ONLY a JSON array. Each element must be an object with the keys
"name" (string), "type" (one of: file, function, class, library, concept, tool, person, other)
and "relevance" (number between 0 and 1).

Activity:
{text}"""

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL)


def parse_entities(response_text: str) -> list[Entity]:
    """Parse an entity list from LLM output (JSON in a code block or raw).

    Accepts either a bare array or an object with an ``entities`` array.
    Raises GatewayError when the output is not usable.
    """
    match = _FENCE_RE.search(response_text)
    text = match.group(1).strip() if match else response_text.strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise GatewayError(f"Entity extraction returned malformed JSON: {exc}") from exc

    if isinstance(data, dict):
        data = data.get("entities", [])
    if not isinstance(data, list):
        raise GatewayError("Entity extraction did not return a list")

    entities: list[Entity] = []
    for item in data:
        if isinstance(item, str):
            name, etype, relevance = item, "concept", 1.0
        elif isinstance(item, dict):
            name = str(item.get("name", ""))
            etype = str(item.get("type") or "concept")
            try:
                relevance = float(item.get("relevance", 1.0))
            except (TypeError, ValueError):
                relevance = 1.0
        else:
            continue
        name = name.strip()
        if name:
            entities.append(Entity(name=name, type=etype, relevance=min(1.0, max(0.0, relevance))))
    return entities


class Gateway:
    """Embedding and completion calls, each run under the AI retry policy.

    The LLM client and embedding provider are created lazily so a gateway
    can be constructed without credentials when only one side is used.
    """

    def __init__(
        self,
        llm_config: LLMConfig | None = None,
        embedding_config: EmbeddingConfig | None = None,
        policy: RetryPolicy = AI_POLICY,
        llm_client: LLMClient | None = None,
        embedder: EmbeddingProvider | None = None,
    ):
        self.llm_config = llm_config or LLMConfig()
        self.embedding_config = embedding_config or EmbeddingConfig()
        self.policy = policy
        self._llm = llm_client
        self._embedder = embedder

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = LLMClient(self.llm_config)
        return self._llm

    @property
    def embedder(self) -> EmbeddingProvider:
        if self._embedder is None:
            self._embedder = EmbeddingProvider(self.embedding_config)
        return self._embedder

    def embed(self, text: str) -> list[float]:
        """Return a fixed-length embedding vector for ``text``."""
        return call_with_policy(self.policy, self.embedder.embed, text, operation="embed")

    def complete(
        self,
        messages: list[dict],
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> str:
        """Return the generated text for ``messages``."""
        response = call_with_policy(
            self.policy,
            self.llm.complete,
            messages,
            max_tokens,
            temperature,
            operation="complete",
        )
        return response.content

    def extract_entities(self, text: str) -> list[Entity]:
        """Ask the completion service for the entities mentioned in ``text``."""
        content = self.complete(
            [{"role": "user", "content": ENTITY_PROMPT.format(text=text)}],
            max_tokens=512,
            temperature=0.0,
        )
        entities = parse_entities(content)
        logger.debug("Extracted %d entities", len(entities))
        return entities
