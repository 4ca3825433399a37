"""Relevant-context retrieval: what an assistant should remember for a query.

Activities, relations and flows are ranked against the query through their
semantic index entries. When search alone finds too little, the most recent
records of the look-back window fill the remaining slots at a fixed, lower
score so they always rank below real matches.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from eem.core.models import ActivityEvent, Flow, RelationEvent, utcnow
from eem.flow.synthesizer import make_label
from eem.script.interpreter import ACTIVITY, FLOW, RELATION, container_kind
from eem.storage.repositories import ActivityRepository, FlowRepository, RelationRepository

logger = logging.getLogger(__name__)

MAX_CONTEXT_RESULTS = 20
ALL_KINDS = (ACTIVITY, RELATION, FLOW)

# Scores given to recent records that did not match the query.
RECENT_SCORES = {ACTIVITY: 0.4, RELATION: 0.3, FLOW: 0.3}

MAX_CONTENT_LENGTH = 200


def normalize_kinds(search_in: str | None) -> tuple[str, ...]:
    """Parse ``"aje,e"``-style record kinds; empty, ``all`` or ``*`` means every kind.

    Unknown names are dropped. If nothing valid remains every kind is searched.
    """
    if not search_in or search_in.strip().lower() in ("all", "*"):
        return ALL_KINDS
    kinds = [container_kind(part) for part in search_in.split(",")]
    wanted = [k for k in ALL_KINDS if k in kinds]
    return tuple(wanted) or ALL_KINDS


def relevance_score(activity: ActivityEvent, query: str, now: datetime) -> float:
    """Heuristic relevance of one activity: recency plus a literal query match, capped at 0.95."""
    score = 0.5
    age = now - activity.timestamp
    if age < timedelta(hours=1):
        score += 0.3
    elif age < timedelta(hours=4):
        score += 0.2
    elif age < timedelta(hours=24):
        score += 0.1
    if query and query.lower() in activity.content.lower():
        score += 0.2
    return min(0.95, round(score, 4))


def _clip(text: str) -> str:
    text = " ".join(text.split())
    if len(text) > MAX_CONTENT_LENGTH:
        return text[:MAX_CONTENT_LENGTH - 3] + "..."
    return text


@dataclass
class ContextItem:
    """One ranked record in a context digest."""

    id: str
    kind: str
    score: float
    title: str
    content: str
    timestamp: datetime
    session_id: str = ""
    matched: bool = True

    @classmethod
    def from_activity(cls, activity: ActivityEvent, score: float, matched: bool = True) -> ContextItem:
        return cls(
            id=activity.id,
            kind=ACTIVITY,
            score=score,
            title=make_label(activity.activity_type, activity.content),
            content=_clip(activity.content),
            timestamp=activity.timestamp,
            session_id=activity.session_id,
            matched=matched,
        )

    @classmethod
    def from_relation(cls, relation: RelationEvent, score: float, matched: bool = True) -> ContextItem:
        return cls(
            id=relation.id,
            kind=RELATION,
            score=score,
            title=f"{relation.relation_type} ({relation.strength:.0%})",
            content=_clip(relation.description or ", ".join(relation.related_event_ids)),
            timestamp=relation.timestamp,
            session_id=relation.session_id,
            matched=matched,
        )

    @classmethod
    def from_flow(cls, flow: Flow, score: float, matched: bool = True) -> ContextItem:
        return cls(
            id=flow.id,
            kind=FLOW,
            score=score,
            title=flow.name,
            content=_clip(flow.summary),
            timestamp=flow.timestamp,
            session_id=flow.session_id,
            matched=matched,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "score": self.score,
            "title": self.title,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "sessionId": self.session_id,
            "matched": self.matched,
        }


@dataclass
class ContextDigest:
    """Ranked context for a query, best first."""

    query: str
    items: list[ContextItem] = field(default_factory=list)
    session_id: str | None = None
    generated_at: datetime = field(default_factory=utcnow)

    def of_kind(self, kind: str) -> list[ContextItem]:
        return [item for item in self.items if item.kind == kind]

    def to_dict(self) -> dict[str, Any]:
        return {
            "query": self.query,
            "sessionId": self.session_id,
            "generatedAt": self.generated_at.isoformat(),
            "items": [item.to_dict() for item in self.items],
        }

    def to_markdown(self) -> str:
        """Render the digest as markdown, grouped by record kind."""
        if not self.items:
            return f'No relevant context found for "{self.query}".'
        lines = [
            f'# Context for "{self.query}"',
            "",
            f"Generated at {self.generated_at:%Y-%m-%d %H:%M:%S} UTC",
        ]
        if self.session_id:
            lines.append(f"Session: {self.session_id}")
        for kind, heading in ((ACTIVITY, "Activities"), (RELATION, "Relations"), (FLOW, "Flows")):
            items = self.of_kind(kind)
            if not items:
                continue
            lines += ["", f"## {heading}", ""]
            for item in items:
                lines.append(f"- **{item.title}** [{item.score:.2f}] {item.timestamp:%Y-%m-%d %H:%M} `{item.id}`")
                if item.content:
                    lines.append(f"  {item.content}")
        return "\n".join(lines)


class ContextBuilder:
    """Assembles ranked context from stored activities, relations and flows.

    Args:
        min_score: Lowest search score that counts as a match.
        clock: Source of "now" for the look-back window and recency scoring.
    """

    def __init__(
        self,
        activities: ActivityRepository,
        relations: RelationRepository,
        flows: FlowRepository,
        min_score: float = 0.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.activities = activities
        self.relations = relations
        self.flows = flows
        self.min_score = min_score
        self.clock = clock

    def relevant_context(
        self,
        query: str,
        session_id: str | None = None,
        limit: int = 5,
        search_in: str | None = None,
        window_hours: float = 24,
    ) -> ContextDigest:
        """Rank records of the requested kinds against ``query``.

        ``limit`` is clamped to 1..20. ``window_hours`` bounds the recent
        records used to fill up a short result list; 0 means no bound.
        """
        limit = max(1, min(limit, MAX_CONTEXT_RESULTS))
        kinds = normalize_kinds(search_in)
        now = self.clock()
        logger.info("Retrieving context for %r (kinds=%s, limit=%d)", query, ",".join(kinds), limit)

        items = self._search(query, kinds, limit, session_id)
        if len(items) < limit:
            start = now - timedelta(hours=window_hours) if window_hours > 0 else None
            self._fill_recent(items, kinds, limit, session_id, start, now)

        logger.debug("Context for %r: %d item(s)", query, len(items))
        return ContextDigest(query=query, items=items, session_id=session_id, generated_at=now)

    def relevance_scores(self, query: str, session_id: str, limit: int = 5) -> dict[str, float]:
        """Heuristic relevance of a session's activities matching ``query``, highest first."""
        now = self.clock()
        matches = [
            a for a in self.activities.search(query, limit=limit * 2, min_score=self.min_score)
            if a.session_id == session_id
        ][:limit]
        scores = {a.id: relevance_score(a, query, now) for a in matches}
        ranked = sorted(scores.items(), key=lambda kv: kv[1], reverse=True)
        return dict(ranked[:limit])

    def _search(self, query: str, kinds: tuple[str, ...], limit: int, session_id: str | None) -> list[ContextItem]:
        # Session filtering happens after the search, so fetch extra.
        fetch = limit * 2 if session_id else limit
        items: list[ContextItem] = []
        if ACTIVITY in kinds:
            for activity, score in self.activities.search_scored(query, fetch, self.min_score):
                items.append(ContextItem.from_activity(activity, score))
        if RELATION in kinds:
            for relation, score in self.relations.search_scored(query, fetch, self.min_score):
                items.append(ContextItem.from_relation(relation, score))
        if FLOW in kinds:
            for flow, score in self.flows.search_scored(query, fetch, self.min_score):
                items.append(ContextItem.from_flow(flow, score))
        if session_id:
            items = [item for item in items if item.session_id == session_id]
        items.sort(key=lambda item: item.score, reverse=True)
        return items[:limit]

    def _fill_recent(
        self,
        items: list[ContextItem],
        kinds: tuple[str, ...],
        limit: int,
        session_id: str | None,
        start: datetime | None,
        end: datetime,
    ) -> None:
        seen = {item.id for item in items}
        candidates: list[ContextItem] = []
        if ACTIVITY in kinds:
            candidates += [
                ContextItem.from_activity(a, RECENT_SCORES[ACTIVITY], matched=False)
                for a in reversed(self.activities.in_time_range(start, end))
            ]
        if RELATION in kinds:
            candidates += [
                ContextItem.from_relation(r, RECENT_SCORES[RELATION], matched=False)
                for r in reversed(self.relations.in_time_range(start, end))
            ]
        if FLOW in kinds:
            candidates += [
                ContextItem.from_flow(f, RECENT_SCORES[FLOW], matched=False)
                for f in reversed(self.flows.in_time_range(start, end))
            ]
        for candidate in candidates:
            if len(items) >= limit:
                break
            if candidate.id in seen or (session_id and candidate.session_id != session_id):
                continue
            seen.add(candidate.id)
            items.append(candidate)
