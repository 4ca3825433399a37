"""Correlation detection between the entities mentioned in activities.

The detector extracts entities per activity, embeds each distinct entity
name once, compares every pair of names by cosine similarity and records a
``semantic_similarity`` relation for each pair strictly above the threshold.
Per-activity and per-record failures are collected as ItemResults and never
abort the rest of the batch.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable
from concurrent.futures import CancelledError, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from eem.core.logging import EemLogger
from eem.core.models import ActivityEvent, Entity, EntityCorrelation, ItemResult, RelationEvent, utcnow
from eem.correlation.similarity import cosine_similarity
from eem.storage.repositories import ActivityRepository, RelationRepository

if TYPE_CHECKING:
    from eem.gateway.gateway import Gateway

logger = logging.getLogger(__name__)

SEMANTIC_SIMILARITY = "semantic_similarity"
ENTITY_LEVEL_TAG = "entity-level"
ACTIVITY_LEVEL_TAG = "activity-level"
STAGE = "correlate"

DEFAULT_THRESHOLD = 0.75
DEFAULT_TEMPORAL_WINDOW = 300.0

NO_CORRELATIONS_MESSAGE = "No correlations found to generate insights from."

INSIGHTS_PROMPT = """You are analyzing correlations detected between a developer's activities.

Correlations (strongest first):
{lines}

Write 3-5 concise insights about the developer's work patterns, recurring topics
and how their activities connect. Return them as a numbered list."""


@dataclass
class CorrelationReport:
    """Everything one detection run produced, including per-item failures."""

    activities: list[ActivityEvent] = field(default_factory=list)
    extractions: list[ItemResult[list[Entity]]] = field(default_factory=list)
    entities: list[Entity] = field(default_factory=list)
    mentions: dict[str, list[str]] = field(default_factory=dict)
    dropped_entities: list[str] = field(default_factory=list)
    embedding_failures: list[ItemResult[list[float]]] = field(default_factory=list)
    correlations: list[EntityCorrelation] = field(default_factory=list)
    persisted: list[ItemResult[RelationEvent]] = field(default_factory=list)
    session_id: str = ""
    cancelled: bool = False

    @property
    def failed_extractions(self) -> list[ItemResult[list[Entity]]]:
        return [r for r in self.extractions if not r.ok]

    @property
    def relations(self) -> list[RelationEvent]:
        return [r.value for r in self.persisted if r.ok and r.value is not None]


class CorrelationDetector:
    """Finds semantic and temporal correlations and stores them as relations."""

    def __init__(
        self,
        gateway: Gateway,
        activities: ActivityRepository,
        relations: RelationRepository,
        threshold: float = DEFAULT_THRESHOLD,
        max_entities: int = 200,
        max_activities: int = 1000,
        concurrency: int = 4,
        enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
        run_logger: EemLogger | None = None,
    ):
        self.gateway = gateway
        self.activities = activities
        self.relations = relations
        self.threshold = threshold
        self.max_entities = max_entities
        self.max_activities = max_activities
        self.concurrency = max(1, concurrency)
        self.enabled = enabled
        self.clock = clock
        self.run_logger = run_logger

    # -- helpers --

    def _fetch_activities(
        self, session_id: str | None, window_minutes: float, max_activities: int
    ) -> list[ActivityEvent]:
        end = self.clock()
        start = end - timedelta(minutes=window_minutes)
        if session_id:
            selected = [a for a in self.activities.for_session(session_id) if start <= a.timestamp <= end]
        else:
            selected = self.activities.in_time_range(start, end)
        return selected[-max_activities:] if max_activities > 0 else []

    def _item_failed(self, item: str, error: BaseException | str) -> None:
        logger.warning("Correlation item %s failed: %s", item, error)
        if self.run_logger:
            self.run_logger.item_failed(STAGE, item, error)

    def extract_all(
        self,
        activities: list[ActivityEvent],
        cancel_event: threading.Event | None = None,
    ) -> list[ItemResult[list[Entity]]]:
        """Extract entities for every activity on a bounded worker pool.

        Results come back in input order. Work not yet started when
        ``cancel_event`` is set is recorded as cancelled.
        """

        def _extract(activity: ActivityEvent) -> ItemResult[list[Entity]]:
            if cancel_event is not None and cancel_event.is_set():
                return ItemResult(key=activity.id, error=CancelledError("cancelled"))
            if not activity.content or not activity.content.strip():
                return ItemResult(key=activity.id, value=[])
            try:
                return ItemResult(key=activity.id, value=self.gateway.extract_entities(activity.content))
            except Exception as exc:
                return ItemResult(key=activity.id, error=exc)

        if not activities:
            return []
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="eem-extract") as pool:
            results = list(pool.map(_extract, activities))
        for result in results:
            if not result.ok:
                self._item_failed(f"extract:{result.key}", result.error)
        return results

    def _working_set(
        self, extractions: list[ItemResult[list[Entity]]]
    ) -> tuple[list[Entity], dict[str, list[str]], list[str]]:
        """Deduplicate entity names across the batch and apply the size cap."""
        totals: dict[str, float] = {}
        first: dict[str, Entity] = {}
        mentions: dict[str, list[str]] = {}
        for result in extractions:
            if not result.ok or not result.value:
                continue
            for entity in result.value:
                if entity.name not in first:
                    first[entity.name] = entity
                    totals[entity.name] = 0.0
                    mentions[entity.name] = []
                totals[entity.name] += entity.relevance
                if result.key not in mentions[entity.name]:
                    mentions[entity.name].append(result.key)

        names = list(first)
        dropped: list[str] = []
        if len(names) > self.max_entities:
            order = {name: i for i, name in enumerate(names)}
            ranked = sorted(names, key=lambda n: (-totals[n], order[n]))
            keep = set(ranked[: self.max_entities])
            dropped = [n for n in names if n not in keep]
            names = [n for n in names if n in keep]
            logger.warning(
                "Entity set capped at %d; dropped %d lowest-relevance entities",
                self.max_entities, len(dropped),
            )
        entities = [
            Entity(name=n, type=first[n].type, relevance=min(1.0, totals[n])) for n in names
        ]
        return entities, {n: mentions[n] for n in names}, dropped

    def _persist(self, relation: RelationEvent, item: str) -> ItemResult[RelationEvent]:
        try:
            self.relations.save(relation)
        except Exception as exc:
            self._item_failed(item, exc)
            return ItemResult(key=relation.id, error=exc)
        return ItemResult(key=relation.id, value=relation)

    # -- semantic detection --

    def detect(
        self,
        session_id: str | None = None,
        window_minutes: float = 60,
        max_activities: int | None = None,
        activities: list[ActivityEvent] | None = None,
        threshold: float | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CorrelationReport:
        """Run one detection pass and persist every emitted correlation."""
        report = CorrelationReport(session_id=session_id or "")
        if not self.enabled:
            logger.info("Correlation analysis is disabled; skipping detection")
            return report

        threshold = self.threshold if threshold is None else threshold
        limit = self.max_activities if max_activities is None else max_activities
        if activities is None:
            activities = self._fetch_activities(session_id, window_minutes, limit)
        else:
            activities = activities[-limit:] if limit > 0 else []
        report.activities = activities

        if self.run_logger:
            self.run_logger.stage_start(STAGE)

        report.extractions = self.extract_all(activities, cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            report.cancelled = True
        report.entities, report.mentions, report.dropped_entities = self._working_set(
            report.extractions
        )

        embeddings: dict[str, list[float]] = {}
        for entity in report.entities:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                break
            if entity.name in embeddings:
                continue
            try:
                embeddings[entity.name] = self.gateway.embed(entity.name)
            except Exception as exc:
                self._item_failed(f"embed:{entity.name}", exc)
                report.embedding_failures.append(ItemResult(key=entity.name, error=exc))

        names = [e.name for e in report.entities if e.name in embeddings]
        for a, b in itertools.combinations(names, 2):
            similarity = cosine_similarity(embeddings[a], embeddings[b])
            if similarity > threshold:
                report.correlations.append(EntityCorrelation(entity_a=a, entity_b=b, similarity=similarity))

        for correlation in report.correlations:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                break
            relation = RelationEvent(
                relation_type=SEMANTIC_SIMILARITY,
                related_event_ids=[correlation.entity_a, correlation.entity_b],
                strength=correlation.similarity,
                description=(
                    f"Entities '{correlation.entity_a}' and '{correlation.entity_b}' "
                    f"are semantically similar ({correlation.similarity:.2f})"
                ),
                tags=[ENTITY_LEVEL_TAG, "auto-detected", "semantic"],
                session_id=report.session_id,
                timestamp=correlation.timestamp,
            )
            report.persisted.append(
                self._persist(relation, f"persist:{correlation.entity_a}~{correlation.entity_b}")
            )

        if report.cancelled:
            logger.info("Correlation detection cancelled")
        logger.info(
            "Detected %d correlations among %d entities from %d activities",
            len(report.correlations), len(report.entities), len(activities),
        )
        if self.run_logger:
            self.run_logger.stage_finish(
                STAGE,
                "failed" if report.cancelled else "completed",
                items=len(report.correlations),
                details=f"{len(report.entities)} entities, {len(report.correlations)} correlations",
            )
        return report

    def map_to_activity_relations(self, report: CorrelationReport, persist: bool = True) -> list[RelationEvent]:
        """Turn entity-level correlations into relations between activity ids.

        The ids of activities mentioning entity A come first, followed by
        those mentioning entity B. Pairs that resolve to fewer than two
        distinct activities are skipped.
        """
        mapped: list[RelationEvent] = []
        for correlation in report.correlations:
            ids = report.mentions.get(correlation.entity_a, []) + report.mentions.get(correlation.entity_b, [])
            relation = RelationEvent(
                relation_type=SEMANTIC_SIMILARITY,
                related_event_ids=ids,
                strength=correlation.similarity,
                description=f"Activities mentioning '{correlation.entity_a}' and '{correlation.entity_b}'",
                tags=[ACTIVITY_LEVEL_TAG, "auto-detected", "semantic"],
                session_id=report.session_id,
            )
            if len(relation.related_event_ids) < 2:
                continue
            if persist and not self._persist(relation, f"map:{relation.id}").ok:
                continue
            mapped.append(relation)
        return mapped

    # -- other correlation kinds --

    def detect_temporal(
        self,
        activities: list[ActivityEvent],
        window_seconds: float = DEFAULT_TEMPORAL_WINDOW,
        threshold: float = 0.0,
        persist: bool = False,
    ) -> list[RelationEvent]:
        """Relate consecutive activities less than ``window_seconds`` apart.

        Strength is ``1 - dt / window`` and must reach ``threshold``.
        """
        ordered = sorted(activities, key=lambda a: a.timestamp)
        found: list[RelationEvent] = []
        for current, nxt in zip(ordered, ordered[1:]):
            dt = (nxt.timestamp - current.timestamp).total_seconds()
            if dt > window_seconds:
                continue
            strength = 1.0 - dt / window_seconds
            if strength < threshold:
                continue
            found.append(RelationEvent(
                relation_type="temporal",
                related_event_ids=[current.id, nxt.id],
                strength=strength,
                description=f"Sequential activities {dt:.1f} seconds apart",
                tags=["auto-detected", "temporal"],
                session_id=current.session_id,
            ))
        if persist:
            found = [r for r in found if self._persist(r, f"temporal:{r.id}").ok]
        return found

    def create_manual_correlation(
        self,
        event_ids: list[str],
        relation_type: str = "manual",
        description: str = "",
        strength: float = 1.0,
        tags: list[str] | None = None,
        session_id: str = "",
    ) -> RelationEvent:
        """Record a user-declared correlation between at least two activities."""
        relation = RelationEvent(
            relation_type=relation_type or "manual",
            related_event_ids=[i.strip() for i in event_ids if i and i.strip()],
            strength=strength,
            description=description,
            tags=["manual", *(tags or [])],
            session_id=session_id,
        )
        if len(relation.related_event_ids) < 2:
            raise ValueError("A correlation needs at least two distinct activity ids")
        self.relations.save(relation)
        return relation

    def correlations_for_activities(
        self, event_ids: list[str], relation_type: str | None = None
    ) -> list[RelationEvent]:
        if not relation_type:
            return self.relations.for_events(event_ids)
        wanted = relation_type.lower()

        def _matches(relation: RelationEvent) -> bool:
            return relation.relation_type.lower() == wanted

        return self.relations.for_events(event_ids, _matches)

    def search_correlations(self, query: str, limit: int = 10) -> list[RelationEvent]:
        return self.relations.search(query, limit)

    # -- insights --

    def generate_insights(self, limit: int = 10) -> str:
        """Ask the gateway for 3-5 insights drawn from the strongest recent correlations."""
        recent = self.relations.recent(max(limit * 5, 50))
        top = sorted(recent, key=lambda r: -r.strength)[:limit]
        if not top:
            return NO_CORRELATIONS_MESSAGE
        lines = "\n".join(
            f"{i}. {r.relation_type} (strength {r.strength:.2f}): "
            f"{r.description or ', '.join(r.related_event_ids)}"
            for i, r in enumerate(top, 1)
        )
        if self.run_logger:
            started = self.run_logger.gateway_call_start("insights", f"{len(top)} correlations")
        text = self.gateway.complete(
            [{"role": "user", "content": INSIGHTS_PROMPT.format(lines=lines)}],
            max_tokens=800,
        )
        if self.run_logger:
            self.run_logger.gateway_call_finish("insights", f"{len(top)} correlations", started)
        return text.strip()
