"""Transform verbs available in the ``transform`` stage.

Every verb has the signature ``fn(value, *args, **kwargs) -> Value``.
Arguments arrive already evaluated: names are bound Values, literals are
plain Python values. A verb given a value kind it does not handle logs a
warning and returns the value unchanged.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import re
from collections import Counter
from collections.abc import Callable
from functools import partial
from typing import TYPE_CHECKING, Any

from eem.core.models import Entity, RelationEvent
from eem.script.values import (
    ClusterMap,
    EmbeddingMap,
    EntityList,
    EventList,
    RelationList,
    ScalarList,
    TextValue,
    Value,
    describe,
)
from eem.storage.semantic_index import keyword_score

if TYPE_CHECKING:
    from eem.gateway.gateway import Gateway

logger = logging.getLogger(__name__)

TransformFn = Callable[..., Value]

DEFAULT_CORRELATION_WINDOW = 300.0

STOPWORDS = frozenset(
    "a an the and or but if then else when at from by with about against between into "
    "through during before after above below to of in on for is are was were be been it "
    "this that these those not no yes as its our your their".split()
)
_TERM_RE = re.compile(r"[A-Za-z0-9_]+")


def significant_terms(text: str) -> list[str]:
    """Lowercased words of at least three characters, minus stopwords."""
    return [t for t in (w.lower() for w in _TERM_RE.findall(text or "")) if len(t) >= 3 and t not in STOPWORDS]


def _unsupported(verb: str, value: Value) -> Value:
    logger.warning("%s does not apply to %s; passing input through", verb, type(value).__name__)
    return value


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


def extract_entities(gateway: Gateway, value: Value, **kwargs: Any) -> Value:
    """Ask the gateway for the entities each record mentions.

    Extraction is best-effort per record: a failure is logged and that
    record contributes nothing.
    """
    if isinstance(value, EventList):
        items = [(e.id, e.content) for e in value.events]
    elif isinstance(value, TextValue):
        items = [("text", value.text)]
    else:
        return _unsupported("extract_entities", value)

    by_name: dict[str, Entity] = {}
    mentions: dict[str, list[str]] = {}
    for key, text in items:
        if not text or not text.strip():
            continue
        try:
            found = gateway.extract_entities(text)
        except Exception as exc:
            logger.warning("Entity extraction failed for %s: %s", key, exc)
            continue
        for entity in found:
            known = by_name.get(entity.name)
            if known is None or entity.relevance > known.relevance:
                by_name[entity.name] = entity
            ids = mentions.setdefault(entity.name, [])
            if key not in ids:
                ids.append(key)
    return EntityList(entities=list(by_name.values()), mentions=mentions)


def extract_key_concepts(value: Value, top_n: int = 3, **kwargs: Any) -> Value:
    """Most frequent significant terms, per cluster or over a whole record set."""
    groups: list[tuple[list[str], list[str]]] = []
    if isinstance(value, ClusterMap):
        for members in value.clusters.values():
            groups.append((members, [value.texts.get(m, "") for m in members]))
    elif isinstance(value, EventList):
        groups.append(([e.id for e in value.events], [e.content for e in value.events]))
    elif isinstance(value, TextValue):
        groups.append((["text"], [value.text]))
    elif isinstance(value, EntityList):
        return value
    else:
        return _unsupported("extract_key_concepts", value)

    scored: dict[str, int] = {}
    mentions: dict[str, list[str]] = {}
    for keys, texts in groups:
        counts: Counter[str] = Counter()
        term_keys: dict[str, list[str]] = {}
        for key, text in zip(keys, texts):
            for term in significant_terms(text):
                counts[term] += 1
                owners = term_keys.setdefault(term, [])
                if key not in owners:
                    owners.append(key)
        for term, count in counts.most_common(top_n):
            scored[term] = max(scored.get(term, 0), count)
            ids = mentions.setdefault(term, [])
            ids.extend(k for k in term_keys[term] if k not in ids)

    if not scored:
        return EntityList()
    top = max(scored.values())
    entities = [Entity(name=term, type="concept", relevance=count / top) for term, count in scored.items()]
    return EntityList(entities=entities, mentions=mentions)


# ---------------------------------------------------------------------------
# Context and correlation
# ---------------------------------------------------------------------------


def enrich_with_context(value: Value, **kwargs: Any) -> Value:
    """Attach session context to each event's metadata.

    Adds ``sessionEventCount`` (events of the same session in this set) and
    ``previousEventId`` (the preceding event of that session, by timestamp).
    """
    if not isinstance(value, EventList):
        return _unsupported("enrich_with_context", value)

    by_session: dict[str, list] = {}
    for event in sorted(value.events, key=lambda e: e.timestamp):
        by_session.setdefault(event.session_id, []).append(event)

    previous: dict[str, str | None] = {}
    for events in by_session.values():
        for i, event in enumerate(events):
            previous[event.id] = events[i - 1].id if i > 0 else None

    enriched = []
    for event in value.events:
        metadata = dict(event.metadata)
        metadata["sessionEventCount"] = len(by_session[event.session_id])
        metadata["previousEventId"] = previous[event.id]
        enriched.append(dataclasses.replace(event, metadata=metadata))
    return EventList(events=enriched)


def correlate_with(
    value: Value,
    other: Value | None = None,
    window_seconds: float = DEFAULT_CORRELATION_WINDOW,
    **kwargs: Any,
) -> Value:
    """Relate records of this dataset to records of ``other``.

    Events are related when they happened within ``window_seconds`` of each
    other, with strength ``1 - dt / window``. Entity lists are related
    through the entity names they share.
    """
    if isinstance(value, EventList) and isinstance(other, EventList):
        relations = []
        for a in value.events:
            for b in other.events:
                if a.id == b.id:
                    continue
                dt = abs((b.timestamp - a.timestamp).total_seconds())
                if dt > window_seconds:
                    continue
                relations.append(RelationEvent(
                    relation_type="contextual",
                    related_event_ids=[a.id, b.id],
                    strength=1.0 - dt / window_seconds if window_seconds > 0 else 1.0,
                    description=f"{a.activity_type} and {b.activity_type} within {dt:.0f}s",
                    tags=["script", "correlate_with"],
                    session_id=a.session_id,
                ))
        return RelationList(relations=relations)

    if isinstance(value, EntityList) and isinstance(other, EntityList):
        other_names = {e.name for e in other.entities}
        relations = []
        for entity in value.entities:
            if entity.name not in other_names:
                continue
            ids = value.mentions.get(entity.name, []) + other.mentions.get(entity.name, [])
            relations.append(RelationEvent(
                relation_type="semantic",
                related_event_ids=ids,
                strength=entity.relevance,
                description=f"shared entity {entity.name}",
                tags=["script", "correlate_with", "entity-level"],
            ))
        return RelationList(relations=relations)

    logger.warning(
        "correlate_with cannot relate %s to %s; passing input through",
        type(value).__name__, type(other).__name__,
    )
    return value


# ---------------------------------------------------------------------------
# Scoring and ranking
# ---------------------------------------------------------------------------


def compute_relevance(value: Value, query: str | None = None, **kwargs: Any) -> Value:
    """Score records.

    Events get a recency score in [0, 1] (or, given ``query``, the share of
    query words they contain). Entities are scored by their relevance.
    Relations keep their strength as relevance and come back strongest first.
    """
    if isinstance(value, RelationList):
        ordered = sorted(value.relations, key=lambda r: (-r.strength, r.timestamp))
        return RelationList(relations=ordered)
    if isinstance(value, EntityList):
        return ScalarList(
            values=[e.relevance for e in value.entities],
            labels=[e.name for e in value.entities],
        )
    if isinstance(value, EventList):
        events = value.events
        if query:
            scores = [keyword_score(query, e.content) for e in events]
        elif events:
            first = min(e.timestamp for e in events)
            span = (max(e.timestamp for e in events) - first).total_seconds()
            scores = [
                (e.timestamp - first).total_seconds() / span if span > 0 else 1.0
                for e in events
            ]
        else:
            scores = []
        return ScalarList(values=scores, labels=[e.id for e in events])
    return _unsupported("compute_relevance", value)


def rank_by_relevance(value: Value, limit: int | None = None, **kwargs: Any) -> Value:
    """Order by relevance (or strength), highest first, optionally keeping the top ``limit``."""
    if isinstance(value, EntityList):
        ranked = sorted(value.entities, key=lambda e: (-e.relevance, e.name))[:limit]
        names = {e.name for e in ranked}
        return EntityList(
            entities=ranked,
            mentions={k: v for k, v in value.mentions.items() if k in names},
        )
    if isinstance(value, RelationList):
        return RelationList(relations=sorted(value.relations, key=lambda r: -r.strength)[:limit])
    if isinstance(value, ScalarList):
        pairs = sorted(zip(value.values, value.labels), key=lambda p: -p[0])[:limit]
        return ScalarList(values=[v for v, _ in pairs], labels=[label for _, label in pairs])
    return _unsupported("rank_by_relevance", value)


# ---------------------------------------------------------------------------
# Embeddings and clustering
# ---------------------------------------------------------------------------


def compute_embeddings(gateway: Gateway, value: Value, model: str | None = None, **kwargs: Any) -> Value:
    """Embed each record's text. Failures are logged per record and skipped."""
    if isinstance(value, EventList):
        items = [(e.id, e.content) for e in value.events]
    elif isinstance(value, EntityList):
        items = [(e.name, e.name) for e in value.entities]
    elif isinstance(value, TextValue):
        items = [("text", value.text)]
    else:
        return _unsupported("compute_embeddings", value)

    configured = getattr(getattr(gateway, "embedding_config", None), "model", None)
    if model and configured and model != configured:
        logger.info("compute_embeddings requested model %s; using configured model %s", model, configured)

    result = EmbeddingMap()
    for key, text in items:
        if not text:
            continue
        try:
            result.vectors[key] = gateway.embed(text)
        except Exception as exc:
            logger.warning("Embedding failed for %s: %s", key, exc)
            continue
        result.texts[key] = text
    return result


def _distance(a: list[float], b: list[float]) -> float:
    return math.sqrt(sum((x - y) ** 2 for x, y in zip(a, b)))


def _mean(vectors: list[list[float]]) -> list[float]:
    return [sum(column) / len(vectors) for column in zip(*vectors)]


def kmeans(vectors: dict[str, list[float]], k: int, iterations: int = 10) -> list[list[str]]:
    """Deterministic k-means over keyed vectors.

    Centroids are seeded farthest-first starting from the smallest key, so
    the same input always yields the same clusters.
    """
    keys = sorted(vectors)
    if not keys:
        return []
    k = max(1, min(k, len(keys)))

    centroids = [vectors[keys[0]]]
    while len(centroids) < k:
        farthest = max(keys, key=lambda key: min(_distance(vectors[key], c) for c in centroids))
        centroids.append(vectors[farthest])

    assignment: dict[str, int] = {}
    for _ in range(iterations):
        changed = False
        for key in keys:
            best = min(range(len(centroids)), key=lambda i: _distance(vectors[key], centroids[i]))
            if assignment.get(key) != best:
                assignment[key] = best
                changed = True
        for i in range(len(centroids)):
            members = [vectors[key] for key in keys if assignment[key] == i]
            if members:
                centroids[i] = _mean(members)
        if not changed:
            break

    clusters = [[key for key in keys if assignment[key] == i] for i in range(len(centroids))]
    return [c for c in clusters if c]


def cluster(value: Value, algorithm: str = "kmeans", k: int = 5, **kwargs: Any) -> Value:
    """Group embeddings into at most ``k`` clusters."""
    if not isinstance(value, EmbeddingMap):
        return _unsupported("cluster", value)
    if algorithm != "kmeans":
        logger.warning("Unknown clustering algorithm %r; using kmeans", algorithm)
    groups = kmeans(value.vectors, int(k))
    return ClusterMap(
        clusters={f"cluster-{i}": members for i, members in enumerate(groups)},
        texts=dict(value.texts),
    )


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------

SUMMARY_PROMPT = """Summarize the following development activity data in a short paragraph.
Focus on what the developer was working on and how the pieces relate.

Data ({size}):
{lines}"""

MAX_SUMMARY_LINES = 50


def _summary_lines(value: Value) -> list[str]:
    if isinstance(value, EventList):
        return [f"- [{e.activity_type}] {e.content}" for e in value.events]
    if isinstance(value, RelationList):
        return [f"- {r.relation_type} ({r.strength:.2f}): {r.description}" for r in value.relations]
    if isinstance(value, EntityList):
        return [f"- {e.name} ({e.type}, relevance {e.relevance:.2f})" for e in value.entities]
    if isinstance(value, ClusterMap):
        return [
            f"- {label}: " + "; ".join(value.texts.get(m, m) for m in members)
            for label, members in value.clusters.items()
        ]
    if isinstance(value, ScalarList):
        return [f"- {label}: {v:.2f}" for v, label in zip(value.values, value.labels)]
    if isinstance(value, TextValue):
        return [value.text]
    if isinstance(value, EmbeddingMap):
        return [f"- {value.texts.get(k, k)}" for k in value.vectors]
    return [f"- {f.name}: {f.summary}" for f in getattr(value, "flows", [])]


def generate_summary(gateway: Gateway, value: Value, max_tokens: int = 300, **kwargs: Any) -> Value:
    """Ask the gateway for a short natural-language summary of the value."""
    lines = _summary_lines(value)
    if not lines:
        return TextValue("")
    prompt = SUMMARY_PROMPT.format(size=describe(value), lines="\n".join(lines[:MAX_SUMMARY_LINES]))
    text = gateway.complete([{"role": "user", "content": prompt}], max_tokens=int(max_tokens))
    return TextValue(text.strip())


def default_transforms(gateway: Gateway) -> dict[str, TransformFn]:
    """The standard verb table, with gateway-backed verbs bound to ``gateway``."""
    return {
        "extract_entities": partial(extract_entities, gateway),
        "enrich_with_context": enrich_with_context,
        "correlate_with": correlate_with,
        "compute_relevance": compute_relevance,
        "compute_embeddings": partial(compute_embeddings, gateway),
        "cluster": cluster,
        "extract_key_concepts": extract_key_concepts,
        "rank_by_relevance": rank_by_relevance,
        "generate_summary": partial(generate_summary, gateway),
    }
