"""Wiring of stores, gateway and processing components from Settings."""

from __future__ import annotations

from dataclasses import dataclass, field

from sqlalchemy.orm import Session, sessionmaker

from eem.config import Settings, get_settings
from eem.core.config import EmbeddingConfig, LLMConfig
from eem.core.logging import EemLogger
from eem.correlation.detector import CorrelationDetector
from eem.flow.synthesizer import FlowSynthesizer
from eem.gateway.gateway import Gateway
from eem.retrieval.context import ContextBuilder
from eem.script.buffer import EventBuffer
from eem.script.interpreter import ScriptInterpreter
from eem.script.processor import ScriptProcessor
from eem.script.transforms import default_transforms
from eem.storage.blob_store import ResilientBlobStore, SqlBlobStore
from eem.storage.engine import get_session_factory
from eem.storage.repositories import (
    ActivityRepository,
    FlowRepository,
    RelationRepository,
    ScriptRepository,
)
from eem.storage.semantic_index import ResilientSemanticIndex, SqlSemanticIndex


@dataclass
class EemContext:
    """Every collaborator a command or test needs, built from one Settings object."""

    settings: Settings
    gateway: Gateway
    activities: ActivityRepository
    relations: RelationRepository
    flows: FlowRepository
    scripts: ScriptRepository
    buffer: EventBuffer
    run_logger: EemLogger | None = None
    _cache: dict[str, object] = field(default_factory=dict, repr=False)

    @property
    def synthesizer(self) -> FlowSynthesizer:
        if "synthesizer" not in self._cache:
            self._cache["synthesizer"] = FlowSynthesizer(
                self.activities,
                self.relations,
                self.flows,
                enabled=self.settings.enable_flow_processing,
                max_activities=self.settings.max_events_per_activity,
                run_logger=self.run_logger,
            )
        return self._cache["synthesizer"]  # type: ignore[return-value]

    @property
    def detector(self) -> CorrelationDetector:
        if "detector" not in self._cache:
            self._cache["detector"] = CorrelationDetector(
                self.gateway,
                self.activities,
                self.relations,
                threshold=self.settings.correlation_threshold,
                max_entities=self.settings.max_entities,
                max_activities=self.settings.max_events_per_activity,
                concurrency=self.settings.concurrency,
                enabled=self.settings.enable_correlation_analysis,
                run_logger=self.run_logger,
            )
        return self._cache["detector"]  # type: ignore[return-value]

    @property
    def interpreter(self) -> ScriptInterpreter:
        if "interpreter" not in self._cache:
            self._cache["interpreter"] = ScriptInterpreter(
                self.activities,
                self.relations,
                self.flows,
                default_transforms(self.gateway),
                buffer=self.buffer,
                max_events=self.settings.max_events_per_activity,
                run_logger=self.run_logger,
            )
        return self._cache["interpreter"]  # type: ignore[return-value]

    @property
    def processor(self) -> ScriptProcessor:
        if "processor" not in self._cache:
            self._cache["processor"] = ScriptProcessor(self.scripts, self.interpreter)
        return self._cache["processor"]  # type: ignore[return-value]

    @property
    def context_builder(self) -> ContextBuilder:
        if "context_builder" not in self._cache:
            self._cache["context_builder"] = ContextBuilder(
                self.activities,
                self.relations,
                self.flows,
                min_score=self.settings.context_min_score,
            )
        return self._cache["context_builder"]  # type: ignore[return-value]


def gateway_from_settings(settings: Settings) -> Gateway:
    llm_config = LLMConfig.from_dict({"provider": settings.llm_provider, "model": settings.llm_model})
    embedding_config = EmbeddingConfig.from_dict(
        {"provider": settings.embedding_provider, "model": settings.embedding_model}
    )
    return Gateway(llm_config, embedding_config)


def build_context(
    settings: Settings | None = None,
    gateway: Gateway | None = None,
    run_logger: EemLogger | None = None,
    session_factory: sessionmaker[Session] | None = None,
) -> EemContext:
    """Build an EemContext.

    Storage goes through the resilient wrappers. When ``index_embeddings``
    is on, the semantic index embeds text through the gateway.
    """
    settings = settings or get_settings()
    gateway = gateway or gateway_from_settings(settings)
    factory = session_factory or get_session_factory(settings)

    blobs = ResilientBlobStore(SqlBlobStore(factory))
    embed = gateway.embed if settings.index_embeddings else None
    index = ResilientSemanticIndex(SqlSemanticIndex(factory, embed=embed))

    return EemContext(
        settings=settings,
        gateway=gateway,
        activities=ActivityRepository(blobs, index),
        relations=RelationRepository(blobs, index),
        flows=FlowRepository(blobs, index),
        scripts=ScriptRepository(blobs),
        buffer=EventBuffer(settings.event_buffer_size),
        run_logger=run_logger,
    )
