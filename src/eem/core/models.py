"""Core data models for Eem.

Every record serializes to a dict with the camelCase wire names used by the
stored artifacts (``activityType``, ``sessionId``, ``relatedEventIds``...).
Field order in ``to_dict`` is fixed so exports are reproducible.
"""

from __future__ import annotations

import base64
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, TypeVar
from uuid import uuid4

from eem.core.errors import FlowIntegrityError

T = TypeVar("T")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def parse_timestamp(value: str | datetime | None) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC for naive values."""
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in values:
        if v not in seen:
            seen.add(v)
            out.append(v)
    return out


@dataclass
class ActivityEvent:
    """One captured unit of user/tool behavior."""

    activity_type: str
    content: str
    session_id: str = ""
    source: str = ""
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)
    associated_file: str | None = None
    content_hash: str | None = None

    def compute_content_hash(self) -> str | None:
        """Compute and store the base64 SHA-256 digest of content.

        Returns None (and clears the hash) for empty content.
        """
        if not self.content:
            self.content_hash = None
            return None
        digest = hashlib.sha256(self.content.encode("utf-8")).digest()
        self.content_hash = base64.b64encode(digest).decode("ascii")
        return self.content_hash

    def add_metadata(self, key: str, value: Any) -> None:
        """Append a metadata entry, the only mutation allowed after capture."""
        if not key:
            raise ValueError("Metadata key must not be empty")
        self.metadata[key] = value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "activityType": self.activity_type,
            "content": self.content,
            "source": self.source,
            "sessionId": self.session_id,
            "metadata": dict(self.metadata),
            "associatedFile": self.associated_file,
            "contentHash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ActivityEvent:
        return cls(
            id=data.get("id") or new_id(),
            timestamp=parse_timestamp(data.get("timestamp")),
            activity_type=data.get("activityType", ""),
            content=data.get("content", ""),
            source=data.get("source", ""),
            session_id=data.get("sessionId", ""),
            metadata=dict(data.get("metadata") or {}),
            associated_file=data.get("associatedFile"),
            content_hash=data.get("contentHash"),
        )


@dataclass
class RelationEvent:
    """A detected or declared link between activities (or entities)."""

    relation_type: str
    related_event_ids: list[str] = field(default_factory=list)
    strength: float = 1.0
    description: str = ""
    tags: list[str] = field(default_factory=list)
    session_id: str = ""
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.related_event_ids = _dedupe(list(self.related_event_ids))
        self.tags = _dedupe(list(self.tags))
        self.strength = min(1.0, max(0.0, float(self.strength)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "relationType": self.relation_type,
            "relatedEventIds": list(self.related_event_ids),
            "strength": self.strength,
            "description": self.description,
            "tags": list(self.tags),
            "sessionId": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RelationEvent:
        return cls(
            id=data.get("id") or new_id(),
            timestamp=parse_timestamp(data.get("timestamp")),
            relation_type=data.get("relationType", ""),
            related_event_ids=list(data.get("relatedEventIds") or []),
            strength=data.get("strength", 1.0),
            description=data.get("description", ""),
            tags=list(data.get("tags") or []),
            session_id=data.get("sessionId", ""),
        )


@dataclass
class Entity:
    """A named entity mentioned by an activity."""

    name: str
    type: str = "concept"
    relevance: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type, "relevance": self.relevance}


@dataclass
class EntityCorrelation:
    """Semantic similarity between two entity names."""

    entity_a: str
    entity_b: str
    similarity: float
    correlation_type: str = "semantic_similarity"
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityA": self.entity_a,
            "entityB": self.entity_b,
            "similarity": self.similarity,
            "correlationType": self.correlation_type,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class FlowNode:
    """Graph node standing for one activity."""

    node_type: str
    event_id: str
    label: str
    id: str = field(default_factory=new_id)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "nodeType": self.node_type,
            "eventId": self.event_id,
            "label": self.label,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlowNode:
        return cls(
            id=data.get("id") or new_id(),
            node_type=data.get("nodeType", ""),
            event_id=data.get("eventId", ""),
            label=data.get("label", ""),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class FlowEdge:
    """Directed edge between two nodes of the same flow."""

    source_id: str
    target_id: str
    relation_type: str
    weight: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sourceId": self.source_id,
            "targetId": self.target_id,
            "relationType": self.relation_type,
            "weight": self.weight,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlowEdge:
        return cls(
            source_id=data["sourceId"],
            target_id=data["targetId"],
            relation_type=data.get("relationType", ""),
            weight=float(data.get("weight", 1.0)),
        )


@dataclass
class Flow:
    """Graph artifact synthesized for a session or time window.

    ``is_complete`` is informational only; nothing computes or enforces an
    Eulerian-path property.
    """

    name: str
    id: str = field(default_factory=new_id)
    timestamp: datetime = field(default_factory=utcnow)
    summary: str = ""
    session_id: str = ""
    categories: list[str] = field(default_factory=list)
    nodes: list[FlowNode] = field(default_factory=list)
    edges: list[FlowEdge] = field(default_factory=list)
    is_complete: bool = False

    def __post_init__(self):
        self.categories = _dedupe(list(self.categories))

    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}

    def validate_edges(self) -> None:
        """Raise FlowIntegrityError if any edge leaves the flow."""
        ids = self.node_ids()
        for edge in self.edges:
            if edge.source_id not in ids or edge.target_id not in ids:
                raise FlowIntegrityError(
                    f"Edge {edge.source_id} -> {edge.target_id} references a node outside flow {self.id}"
                )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "timestamp": self.timestamp.isoformat(),
            "summary": self.summary,
            "sessionId": self.session_id,
            "categories": list(self.categories),
            "isComplete": self.is_complete,
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Flow:
        return cls(
            id=data.get("id") or new_id(),
            name=data.get("name", ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            summary=data.get("summary", ""),
            session_id=data.get("sessionId", ""),
            categories=list(data.get("categories") or []),
            is_complete=bool(data.get("isComplete", False)),
            nodes=[FlowNode.from_dict(n) for n in data.get("nodes") or []],
            edges=[FlowEdge.from_dict(e) for e in data.get("edges") or []],
        )


@dataclass
class ScriptDefinition:
    """A stored pipeline script."""

    name: str
    text: str = ""
    id: str = field(default_factory=new_id)
    description: str = ""
    tags: list[str] = field(default_factory=list)
    enabled: bool = True
    last_run: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    modified_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.tags = _dedupe([t.strip() for t in self.tags if t and t.strip()])

    def meta_dict(self) -> dict[str, Any]:
        """Metadata without the script text (stored separately)."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "tags": list(self.tags),
            "enabled": self.enabled,
            "lastRun": self.last_run.isoformat() if self.last_run else None,
            "createdAt": self.created_at.isoformat(),
            "modifiedAt": self.modified_at.isoformat(),
        }

    @classmethod
    def from_meta(cls, data: dict[str, Any], text: str = "") -> ScriptDefinition:
        return cls(
            id=data.get("id") or new_id(),
            name=data.get("name", ""),
            text=text,
            description=data.get("description", ""),
            tags=list(data.get("tags") or []),
            enabled=bool(data.get("enabled", True)),
            last_run=parse_timestamp(data["lastRun"]) if data.get("lastRun") else None,
            created_at=parse_timestamp(data.get("createdAt")),
            modified_at=parse_timestamp(data.get("modifiedAt")),
        )


class ExecutionStatus(str, Enum):
    COMPLETED = "Completed"
    FAILED = "Failed"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class ExecutionStep:
    name: str
    status: StepStatus
    details: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "status": self.status.value, "details": self.details}


@dataclass
class PipelineExecutionResult:
    """Outcome of one script run, including the stages reached before any failure."""

    flow_name: str
    start_time: datetime = field(default_factory=utcnow)
    end_time: datetime | None = None
    status: ExecutionStatus = ExecutionStatus.COMPLETED
    error_message: str | None = None
    steps: list[ExecutionStep] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is ExecutionStatus.COMPLETED

    def to_dict(self) -> dict[str, Any]:
        return {
            "flowName": self.flow_name,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "status": self.status.value,
            "errorMessage": self.error_message,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass
class ItemResult(Generic[T]):
    """Per-item outcome of a best-effort batch step."""

    key: str
    value: T | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Missing(Enum):
    """Explicit "not found" outcome returned at the outer API boundary."""

    NOT_FOUND = "not_found"

    def __bool__(self) -> bool:
        return False


NOT_FOUND = Missing.NOT_FOUND
