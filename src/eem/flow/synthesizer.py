"""Flow synthesis: activities plus the relations between them become a directed graph.

Edge policy is decided once per flow. Relations whose ids all resolve to
nodes of the flow are chained in id order. Only when no such edge exists
are the nodes linked in activity-timestamp order with ``temporal_sequence``
edges.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from eem.core.errors import NoActivitiesError, ProcessingDisabledError
from eem.core.logging import EemLogger
from eem.core.models import (
    NOT_FOUND,
    ActivityEvent,
    Flow,
    FlowEdge,
    FlowNode,
    Missing,
    RelationEvent,
    utcnow,
)
from eem.flow.export import render
from eem.storage.repositories import ActivityRepository, FlowRepository, RelationRepository

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=24)
TEMPORAL_SEQUENCE = "temporal_sequence"

MAX_LABEL_LENGTH = 50
TRUNCATED_LENGTH = 47

LABEL_PREFIXES = {
    "edit": "Edit: ",
    "coding": "Edit: ",
    "navigation": "Nav: ",
    "search": "Search: ",
    "query": "Search: ",
    "execution": "Run: ",
    "run": "Run: ",
}

SUMMARY_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def make_label(activity_type: str, content: str) -> str:
    """Node label: one-line content, at most 50 characters, behind a type prefix."""
    body = (content or "").replace("\r", "").replace("\n", " ")
    if len(body) > MAX_LABEL_LENGTH:
        body = body[:TRUNCATED_LENGTH] + "..."
    prefix = LABEL_PREFIXES.get(activity_type.lower(), f"{activity_type}: ")
    return prefix + body


def format_duration(delta: timedelta) -> str:
    """``Xd Yh Zm``, ``Yh Zm``, ``Zm Ss`` or ``Ss`` depending on magnitude."""
    total = max(0, int(delta.total_seconds()))
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def _plural(count: int, noun: str) -> str:
    if count == 1:
        return f"1 {noun}"
    if noun == "activity":
        return f"{count} activities"
    return f"{count} {noun}s"


def build_summary(activities: list[ActivityEvent], relation_count: int = 0) -> str:
    """Deterministic digest of the flow's activities."""
    if not activities:
        return "Empty flow"
    first = min(a.timestamp for a in activities)
    last = max(a.timestamp for a in activities)
    text = f"Flow of {_plural(len(activities), 'activity')}"
    if relation_count:
        text += f" with {_plural(relation_count, 'relation')}"
    text += (
        f" from {first.strftime(SUMMARY_TIME_FORMAT)} to {last.strftime(SUMMARY_TIME_FORMAT)}"
        f" (duration: {format_duration(last - first)})."
    )
    top = Counter(a.activity_type for a in activities).most_common(3)
    text += " Top types: " + ", ".join(f"{t} ({n})" for t, n in top)
    return text


def _dedupe_activities(activities: Iterable[ActivityEvent]) -> list[ActivityEvent]:
    seen: set[str] = set()
    unique = []
    for activity in activities:
        if activity.id not in seen:
            seen.add(activity.id)
            unique.append(activity)
    return unique


def build_flow(
    name: str,
    activities: list[ActivityEvent],
    relations: list[RelationEvent],
    session_id: str = "",
    categories: list[str] | None = None,
) -> Flow:
    """Build a Flow from activities (in iteration order) and candidate relations."""
    activities = _dedupe_activities(activities)
    nodes = [
        FlowNode(
            node_type=a.activity_type,
            event_id=a.id,
            label=make_label(a.activity_type, a.content),
            metadata={"timestamp": a.timestamp.isoformat(), "source": a.source},
        )
        for a in activities
    ]
    node_for_event = {node.event_id: node for node in nodes}

    edges: list[FlowEdge] = []
    used_relations = 0
    for relation in relations:
        ids = relation.related_event_ids
        if len(ids) < 2 or not all(i in node_for_event for i in ids):
            continue
        used_relations += 1
        for a, b in zip(ids, ids[1:]):
            edges.append(FlowEdge(
                source_id=node_for_event[a].id,
                target_id=node_for_event[b].id,
                relation_type=relation.relation_type,
                weight=relation.strength,
            ))

    if not edges and len(nodes) > 1:
        timestamp_of = {a.id: a.timestamp for a in activities}
        ordered = sorted(nodes, key=lambda n: timestamp_of[n.event_id])
        edges = [
            FlowEdge(source_id=a.id, target_id=b.id, relation_type=TEMPORAL_SEQUENCE, weight=1.0)
            for a, b in zip(ordered, ordered[1:])
        ]

    if categories is None:
        categories = [a.activity_type for a in activities]

    flow = Flow(
        name=name,
        session_id=session_id,
        summary=build_summary(activities, used_relations),
        categories=categories,
        nodes=nodes,
        edges=edges,
    )
    flow.validate_edges()
    return flow


# ---------------------------------------------------------------------------
# Synthesizer
# ---------------------------------------------------------------------------


class FlowSynthesizer:
    """Reads activities and relations from storage and persists synthesized flows."""

    def __init__(
        self,
        activities: ActivityRepository,
        relations: RelationRepository,
        flows: FlowRepository,
        enabled: bool = True,
        max_activities: int = 1000,
        clock: Callable[[], datetime] = utcnow,
        run_logger: EemLogger | None = None,
    ):
        self.activities = activities
        self.relations = relations
        self.flows = flows
        self.enabled = enabled
        self.max_activities = max_activities
        self.clock = clock
        self.run_logger = run_logger

    def _select_activities(
        self,
        session_id: str | None,
        window_minutes: float | None,
        event_ids: list[str] | None,
    ) -> list[ActivityEvent]:
        if event_ids:
            found = [self.activities.get(i) for i in dict.fromkeys(event_ids)]
            return [a for a in found if a is not None]
        end = self.clock()
        window = timedelta(minutes=window_minutes) if window_minutes else DEFAULT_WINDOW
        start = end - window
        if session_id:
            return [
                a for a in self.activities.for_session(session_id)
                if start <= a.timestamp <= end
            ][-self.max_activities:]
        return self.activities.in_time_range(start, end, self.max_activities)

    def _with_focus(
        self,
        selected: list[ActivityEvent],
        focus_topic: str | None,
        session_id: str | None,
    ) -> list[ActivityEvent]:
        if focus_topic:
            extra = self.activities.search(focus_topic, limit=self.max_activities)
            if session_id:
                extra = [a for a in extra if a.session_id == session_id]
            selected = _dedupe_activities([*selected, *extra])
        return sorted(selected, key=lambda a: a.timestamp)

    def collect_activities(
        self,
        session_id: str | None = None,
        window_minutes: float | None = None,
        focus_topic: str | None = None,
        event_ids: list[str] | None = None,
    ) -> list[ActivityEvent]:
        """Activities a flow would be built from, oldest first.

        Focus-topic matches only widen a non-empty selection and stay
        inside ``session_id`` when one is given.
        """
        selected = self._select_activities(session_id, window_minutes, event_ids)
        if not selected:
            return []
        return self._with_focus(selected, focus_topic, session_id)

    def generate_flow(
        self,
        name: str,
        session_id: str | None = None,
        window_minutes: float | None = None,
        focus_topic: str | None = None,
        categories: list[str] | None = None,
        event_ids: list[str] | None = None,
    ) -> Flow:
        """Synthesize, persist and return one Flow.

        Raises:
            ProcessingDisabledError: flow processing is switched off.
            NoActivitiesError: nothing qualified; nothing is persisted.
        """
        if not self.enabled:
            raise ProcessingDisabledError("Flow processing is disabled")

        if self.run_logger:
            self.run_logger.stage_start("flow")
        activities = self.collect_activities(session_id, window_minutes, focus_topic, event_ids)
        if not activities:
            if self.run_logger:
                self.run_logger.stage_finish("flow", "failed", details="no activities")
            scope = f"session {session_id!r}" if session_id else "the requested window"
            raise NoActivitiesError(f"No activities found for {scope}")

        relations = self.relations.for_events(a.id for a in activities)
        flow = build_flow(name, activities, relations, session_id or "", categories)
        self.flows.save(flow)
        logger.info("Generated flow %s with %d nodes and %d edges", flow.id, len(flow.nodes), len(flow.edges))
        if self.run_logger:
            self.run_logger.stage_finish(
                "flow", "completed", items=len(flow.nodes),
                details=f"{len(flow.nodes)} nodes, {len(flow.edges)} edges",
            )
        return flow

    def get_flow(self, flow_id: str) -> Flow | None:
        return self.flows.get_by_id(flow_id)

    def search_flows(self, query: str, limit: int = 10) -> list[Flow]:
        return self.flows.search(query, limit)

    def flows_in_range(self, start: datetime, end: datetime, limit: int | None = None) -> list[Flow]:
        return self.flows.in_range(start, end, limit)

    def export_flow(self, flow_id: str, fmt: str = "json") -> str | Missing:
        """Render a stored flow; NOT_FOUND when no flow has that id."""
        flow = self.get_flow(flow_id)
        if flow is None:
            logger.warning("Flow not found: %s", flow_id)
            return NOT_FOUND
        return render(flow, fmt)
