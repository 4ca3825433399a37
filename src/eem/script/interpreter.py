"""Execution of parsed pipeline scripts.

Stages always run in the order source, transform, sink. Each stage adds
one ExecutionStep to the result. The first failing stage stops the run and
everything recorded up to that point stays in the result.
"""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from eem.core.errors import (
    EemError,
    ScriptError,
    UndefinedDatasetError,
    UnresolvedReferenceError,
)
from eem.core.logging import EemLogger
from eem.core.models import (
    ExecutionStatus,
    ExecutionStep,
    Flow,
    FlowEdge,
    FlowNode,
    PipelineExecutionResult,
    RelationEvent,
    StepStatus,
    utcnow,
)
from eem.flow.synthesizer import build_flow, make_label
from eem.script.buffer import EventBuffer
from eem.script.parser import parse
from eem.script.syntax import (
    STAGE_ORDER,
    Assignment,
    Attribute,
    BinaryOp,
    Call,
    CallStatement,
    Expr,
    Literal,
    MapLiteral,
    Name,
    PipeChain,
    Script,
    Stage,
    unparse,
)
from eem.script.transforms import TransformFn
from eem.script.values import (
    VALUE_TYPES,
    ClusterMap,
    EntityList,
    EventList,
    FlowList,
    RelationList,
    ScalarList,
    TextValue,
    Value,
    describe,
)
from eem.storage.repositories import ActivityRepository, FlowRepository, RelationRepository

logger = logging.getLogger(__name__)

ACTIVITY = "activity"
RELATION = "relation"
FLOW = "flow"
GENERIC = "generic"

CONTAINER_KINDS = {
    "aje": ACTIVITY,
    "activity": ACTIVITY,
    "activities": ACTIVITY,
    "re": RELATION,
    "ire": RELATION,
    "relation": RELATION,
    "relations": RELATION,
    "e": FLOW,
    "flow": FLOW,
    "flows": FLOW,
}

DERIVED = "derived"
CANCELLED = "cancelled"

_NAME_RE = re.compile(r'\bflow\s+"([^"]*)"')


def container_kind(tag: str) -> str:
    """Logical container for a tag; unknown tags are ``generic``."""
    return CONTAINER_KINDS.get(tag.strip().lower(), GENERIC)


@dataclass
class RecordFilter:
    """Filter parsed from the second argument of ``read``."""

    time_bounds: list[tuple[str, datetime]] = field(default_factory=list)
    session_id: str | None = None
    record_type: str | None = None

    @property
    def start(self) -> datetime | None:
        lows = [v for op, v in self.time_bounds if op in (">", ">=")]
        return max(lows) if lows else None

    @property
    def end(self) -> datetime | None:
        highs = [v for op, v in self.time_bounds if op in ("<", "<=")]
        return min(highs) if highs else None

    def matches_time(self, ts: datetime) -> bool:
        for op, bound in self.time_bounds:
            if op == ">" and not ts > bound:
                return False
            if op == ">=" and not ts >= bound:
                return False
            if op == "<" and not ts < bound:
                return False
            if op == "<=" and not ts <= bound:
                return False
        return True


@dataclass
class _Run:
    """Mutable state of one execution."""

    script: Script
    now: datetime
    env: dict[str, Value] = field(default_factory=dict)


class ScriptInterpreter:
    """Runs scripts against the stores, the live event buffer and a table of transform verbs."""

    def __init__(
        self,
        activities: ActivityRepository,
        relations: RelationRepository,
        flows: FlowRepository,
        transforms: dict[str, TransformFn],
        buffer: EventBuffer | None = None,
        max_events: int = 1000,
        clock: Callable[[], datetime] = utcnow,
        run_logger: EemLogger | None = None,
    ):
        self.activities = activities
        self.relations = relations
        self.flows = flows
        self.transforms = dict(transforms)
        self.buffer = buffer if buffer is not None else EventBuffer()
        self.max_events = max_events
        self.clock = clock
        self.run_logger = run_logger

    # -- entry points --

    def execute(self, text: str, cancel_event: threading.Event | None = None) -> PipelineExecutionResult:
        """Parse and run script text.

        Syntax errors produce a Failed result with no steps: nothing runs.
        """
        try:
            script = parse(text)
        except ScriptError as exc:
            match = _NAME_RE.search(text or "")
            result = PipelineExecutionResult(flow_name=match.group(1) if match else "")
            result.status = ExecutionStatus.FAILED
            result.error_message = str(exc)
            result.end_time = utcnow()
            logger.warning("Script rejected: %s", exc)
            return result
        return self.run(script, cancel_event)

    def run(self, script: Script, cancel_event: threading.Event | None = None) -> PipelineExecutionResult:
        """Run an already parsed script."""
        result = PipelineExecutionResult(flow_name=script.name)
        state = _Run(script=script, now=self.clock())
        if self.run_logger:
            self.run_logger.run_start(script.name, len(script.stages))

        runners = {"source": self._run_source, "transform": self._run_transform, "sink": self._run_sink}
        for index, kind in enumerate(STAGE_ORDER):
            if cancel_event is not None and cancel_event.is_set():
                for remaining in STAGE_ORDER[index:]:
                    result.steps.append(ExecutionStep(remaining, StepStatus.SKIPPED, CANCELLED))
                self._fail(result, CANCELLED)
                break

            stage = script.stage(kind)
            if stage is None:
                result.steps.append(ExecutionStep(kind, StepStatus.SKIPPED, "stage not present"))
                if self.run_logger:
                    self.run_logger.stage_finish(kind, StepStatus.SKIPPED.value, details="not present")
                continue

            if self.run_logger:
                self.run_logger.stage_start(kind)
            notes: list[str] = []
            try:
                runners[kind](stage, state, notes)
            except Exception as exc:
                if not isinstance(exc, EemError):
                    logger.exception("Unexpected error in %s stage of %s", kind, script.name)
                details = "; ".join([*notes, f"error: {exc}"])
                result.steps.append(ExecutionStep(kind, StepStatus.FAILED, details))
                if self.run_logger:
                    self.run_logger.stage_finish(kind, StepStatus.FAILED.value, details=str(exc))
                self._fail(result, str(exc))
                break

            details = "; ".join(notes)
            result.steps.append(ExecutionStep(kind, StepStatus.COMPLETED, details))
            if self.run_logger:
                self.run_logger.stage_finish(kind, StepStatus.COMPLETED.value, items=len(notes), details=details)

        result.end_time = utcnow()
        if self.run_logger:
            self.run_logger.run_finish(result.status.value)
        return result

    @staticmethod
    def _fail(result: PipelineExecutionResult, message: str) -> None:
        result.status = ExecutionStatus.FAILED
        result.error_message = message

    # -- expressions --

    def evaluate(self, expr: Expr, state: _Run) -> Any:
        """Evaluate an argument expression to a Value or a plain Python value."""
        if isinstance(expr, Literal):
            return expr.value
        if isinstance(expr, MapLiteral):
            return {key: self.evaluate(value, state) for key, value in expr.items}
        if isinstance(expr, Name):
            if expr.id not in state.env:
                raise UnresolvedReferenceError(expr.id)
            return state.env[expr.id]
        if isinstance(expr, Call):
            if expr.func == "now" and not expr.args:
                return state.now
            raise ScriptError(f"line {expr.line}: {expr.func}() cannot be used as an argument")
        if isinstance(expr, BinaryOp) and expr.op in ("+", "-"):
            left = self.evaluate(expr.left, state)
            right = self.evaluate(expr.right, state)
            try:
                return left + right if expr.op == "+" else left - right
            except TypeError as exc:
                raise ScriptError(f"line {expr.line}: cannot evaluate {unparse(expr)}") from exc
        if isinstance(expr, (BinaryOp, Attribute, PipeChain)):
            raise ScriptError(f"line {expr.line}: unsupported expression {unparse(expr)}")
        raise ScriptError(f"unsupported expression {expr!r}")

    def build_filter(self, expr: Expr | None, state: _Run) -> RecordFilter:
        """Translate a ``read`` filter. Unsupported filters are ignored with a warning."""
        record_filter = RecordFilter()
        if expr is None:
            return record_filter
        if not (isinstance(expr, BinaryOp) and isinstance(expr.left, Name)):
            logger.warning("Unsupported read filter %r ignored", unparse(expr))
            return record_filter

        field_name = expr.left.id.lower()
        if field_name == "time" and expr.op in (">", ">=", "<", "<="):
            bound = self.evaluate(expr.right, state)
            if isinstance(bound, datetime):
                record_filter.time_bounds.append((expr.op, bound))
                return record_filter
        elif field_name == "session" and expr.op == "==":
            value = self.evaluate(expr.right, state)
            if isinstance(value, str):
                record_filter.session_id = value
                return record_filter
        elif field_name == "type" and expr.op == "==":
            value = self.evaluate(expr.right, state)
            if isinstance(value, str):
                record_filter.record_type = value
                return record_filter
        logger.warning("Unsupported read filter %r ignored", unparse(expr))
        return record_filter

    # -- source --

    def _run_source(self, stage: Stage, state: _Run, notes: list[str]) -> None:
        for statement in stage.statements:
            if not isinstance(statement, Assignment) or not isinstance(statement.value, Call):
                raise ScriptError(f"line {statement.line}: source statements must be name = read(...) or listen(...)")
            call = statement.value
            if call.func == "listen":
                value = self._listen(call, state)
            else:
                value = self._read(call, state)
            state.env[statement.target] = value
            notes.append(f"{statement.target}: {describe(value)}")

    def _string_arg(self, call: Call, state: _Run, index: int = 0) -> str:
        if len(call.args) <= index:
            raise ScriptError(f"line {call.line}: {call.func}() needs a string argument")
        value = self.evaluate(call.args[index], state)
        if not isinstance(value, str):
            raise ScriptError(f"line {call.line}: {call.func}() expects a string, got {unparse(call.args[index])}")
        return value

    def _listen(self, call: Call, state: _Run) -> EventList:
        tag = self._string_arg(call, state)
        return EventList(events=self.buffer.recent(tag, self.max_events))

    def _read(self, call: Call, state: _Run) -> Value:
        tag = self._string_arg(call, state)
        record_filter = self.build_filter(call.args[1] if len(call.args) > 1 else None, state)
        kind = container_kind(tag)

        if kind == ACTIVITY:
            if record_filter.session_id is not None:
                events = self.activities.for_session(record_filter.session_id)
            else:
                events = self.activities.in_time_range(record_filter.start, record_filter.end)
            events = [
                e for e in events
                if record_filter.matches_time(e.timestamp)
                and (record_filter.session_id is None or e.session_id == record_filter.session_id)
                and (record_filter.record_type is None or e.activity_type == record_filter.record_type)
            ]
            return EventList(events=events[-self.max_events:])

        if kind == RELATION:
            relations = self.relations.in_time_range(record_filter.start, record_filter.end)
            relations = [
                r for r in relations
                if record_filter.matches_time(r.timestamp)
                and (record_filter.session_id is None or r.session_id == record_filter.session_id)
                and (record_filter.record_type is None or r.relation_type == record_filter.record_type)
            ]
            return RelationList(relations=relations[-self.max_events:])

        if kind == FLOW:
            flows = self.flows.in_time_range(record_filter.start, record_filter.end)
            flows = [
                f for f in flows
                if record_filter.matches_time(f.timestamp)
                and (record_filter.session_id is None or f.session_id == record_filter.session_id)
                and (record_filter.record_type is None or record_filter.record_type in f.categories)
            ]
            return FlowList(flows=flows[-self.max_events:])

        logger.warning("read(%r): unknown container, returning no records", tag)
        return EventList()

    # -- transform --

    def _run_transform(self, stage: Stage, state: _Run, notes: list[str]) -> None:
        for statement in stage.statements:
            if not isinstance(statement, Assignment):
                raise ScriptError(f"line {statement.line}: transform statements must be assignments")
            value = self.apply_chain(statement.value, state)
            state.env[statement.target] = value
            notes.append(f"{statement.target}: {describe(value)}")

    def apply_chain(self, expr: Expr, state: _Run) -> Value:
        """Resolve the chain's base name and apply each verb left to right."""
        chain = expr if isinstance(expr, PipeChain) else PipeChain(base=expr)
        base = chain.base
        if not isinstance(base, Name):
            raise ScriptError(f"line {chain.line}: a pipe chain must start from a dataset name")
        if base.id not in state.env:
            raise UnresolvedReferenceError(base.id)
        value = state.env[base.id]
        for call in chain.calls:
            value = self.apply_transform(call, value, state)
        return value

    def apply_transform(self, call: Call, value: Value, state: _Run) -> Value:
        fn = self.transforms.get(call.func)
        if fn is None:
            logger.warning("Unknown transform %r; passing input through unchanged", call.func)
            return value
        args = [self.evaluate(a, state) for a in call.args]
        kwargs = {k.name: self.evaluate(k.value, state) for k in call.kwargs}
        result = fn(value, *args, **kwargs)
        if not isinstance(result, VALUE_TYPES):
            raise ScriptError(f"line {call.line}: transform {call.func} returned {type(result).__name__}")
        return result

    # -- sink --

    def _run_sink(self, stage: Stage, state: _Run, notes: list[str]) -> None:
        for statement in stage.statements:
            if not isinstance(statement, CallStatement):
                raise ScriptError(f"line {statement.line}: sink statements must be calls")
            call = statement.call
            if call.func == "store":
                notes.append(self._store(call, state))
            elif call.func == "notify_if":
                predicate = ", ".join(unparse(a) for a in call.args)
                logger.info("notify_if(%s) in flow %s", predicate, state.script.name)
                if self.run_logger:
                    self.run_logger.notice("sink", f"notify_if({predicate})")
                notes.append(f"notify_if({predicate})")
            else:
                logger.warning("Unknown sink verb %r ignored", call.func)
                notes.append(f"ignored {call.func}()")

    def _store(self, call: Call, state: _Run) -> str:
        if not call.args or not isinstance(call.args[0], Name):
            raise ScriptError(f"line {call.line}: store() expects a dataset name as first argument")
        name = call.args[0].id
        if name not in state.env:
            raise UndefinedDatasetError(name)
        tag = self._string_arg(call, state, 1)
        value = state.env[name]
        kind = container_kind(tag)

        if kind == ACTIVITY:
            stored = self._store_activities(name, value)
        elif kind == RELATION:
            stored = self._store_relations(name, value, state)
        elif kind == FLOW:
            stored = self._store_flows(name, value, state)
        else:
            logger.warning("store(%s, %r): unknown container, nothing stored", name, tag)
            return f"{name}: nothing stored (unknown container {tag!r})"
        return f"{name}: stored {stored} in {kind}"

    def _store_activities(self, name: str, value: Value) -> int:
        if not isinstance(value, EventList):
            logger.warning("store(%s): %s cannot be stored as activities", name, type(value).__name__)
            return 0
        for event in value.events:
            self.activities.save(event)
        return len(value.events)

    def _store_relations(self, name: str, value: Value, state: _Run) -> int:
        relations = derived_relations(name, value, state.script.name)
        if relations is None:
            logger.warning("store(%s): %s cannot be stored as relations", name, type(value).__name__)
            return 0
        for relation in relations:
            self.relations.save(relation)
        return len(relations)

    def _store_flows(self, name: str, value: Value, state: _Run) -> int:
        flow_name = f"{state.script.name}:{name}"
        if isinstance(value, FlowList):
            flows = value.flows
        elif isinstance(value, EventList) and value.events:
            relations = self.relations.for_events(e.id for e in value.events)
            flows = [build_flow(flow_name, value.events, relations)]
        elif isinstance(value, ClusterMap) and value.clusters:
            flows = [cluster_flow(flow_name, value)]
        else:
            logger.warning("store(%s): %s cannot be stored as flows", name, type(value).__name__)
            return 0
        for flow in flows:
            self.flows.save(flow)
        return len(flows)


def derived_relations(name: str, value: Value, script_name: str) -> list[RelationEvent] | None:
    """Convert a value to relation records; None when it has no relation form."""
    tags = [DERIVED, f"dataset:{name}", f"script:{script_name}"]
    if isinstance(value, RelationList):
        return list(value.relations)
    if isinstance(value, EntityList):
        return [
            RelationEvent(
                relation_type=DERIVED,
                related_event_ids=value.mentions.get(e.name, []),
                strength=e.relevance,
                description=e.name,
                tags=[*tags, "entity", e.type],
            )
            for e in value.entities
        ]
    if isinstance(value, ClusterMap):
        return [
            RelationEvent(
                relation_type=DERIVED,
                related_event_ids=members,
                description=f"{label} ({len(members)} members)",
                tags=[*tags, "cluster"],
            )
            for label, members in value.clusters.items()
        ]
    if isinstance(value, ScalarList):
        return [
            RelationEvent(
                relation_type=DERIVED,
                related_event_ids=[label],
                strength=score,
                description=f"score {score:.2f}",
                tags=[*tags, "score"],
            )
            for score, label in zip(value.values, value.labels)
        ]
    if isinstance(value, TextValue):
        if not value.text:
            return []
        return [RelationEvent(relation_type=DERIVED, description=value.text, tags=[*tags, "text"])]
    if isinstance(value, EventList):
        if len(value.events) < 2:
            return []
        return [RelationEvent(
            relation_type=DERIVED,
            related_event_ids=[e.id for e in value.events],
            description=f"{len(value.events)} events grouped by {script_name}",
            tags=[*tags, "events"],
        )]
    return None


def cluster_flow(name: str, clusters: ClusterMap) -> Flow:
    """One flow holding every cluster; members of a cluster are chained together."""
    nodes: list[FlowNode] = []
    edges: list[FlowEdge] = []
    for label, members in clusters.clusters.items():
        cluster_nodes = [
            FlowNode(
                node_type=label,
                event_id=member,
                label=make_label(label, clusters.texts.get(member, member)),
            )
            for member in members
        ]
        nodes.extend(cluster_nodes)
        edges.extend(
            FlowEdge(source_id=a.id, target_id=b.id, relation_type="cluster")
            for a, b in zip(cluster_nodes, cluster_nodes[1:])
        )
    flow = Flow(
        name=name,
        summary=f"{len(clusters.clusters)} clusters of {len(nodes)} items",
        categories=list(clusters.clusters),
        nodes=nodes,
        edges=edges,
    )
    flow.validate_edges()
    return flow
