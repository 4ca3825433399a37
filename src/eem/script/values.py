"""Values bound to names while a script runs.

``Value`` is a closed union; transforms and sinks dispatch on the concrete
class and treat anything they do not handle explicitly as pass-through.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from eem.core.models import ActivityEvent, Entity, Flow, RelationEvent


@dataclass
class EventList:
    events: list[ActivityEvent] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.events)


@dataclass
class RelationList:
    relations: list[RelationEvent] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.relations)


@dataclass
class FlowList:
    flows: list[Flow] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.flows)


@dataclass
class EntityList:
    """Entities plus, for each entity name, the ids of the records mentioning it."""

    entities: list[Entity] = field(default_factory=list)
    mentions: dict[str, list[str]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.entities)


@dataclass
class EmbeddingMap:
    """Embedding vector per key, with the text each vector was computed from."""

    vectors: dict[str, list[float]] = field(default_factory=dict)
    texts: dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.vectors)


@dataclass
class ClusterMap:
    """Cluster label to member keys; ``texts`` carries member text when known."""

    clusters: dict[str, list[str]] = field(default_factory=dict)
    texts: dict[str, str] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.clusters)


@dataclass
class ScalarList:
    values: list[float] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.values)


@dataclass
class TextValue:
    text: str = ""

    def __len__(self) -> int:
        return 1 if self.text else 0


Value = Union[EventList, RelationList, FlowList, EntityList, EmbeddingMap, ClusterMap, ScalarList, TextValue]

VALUE_TYPES = (EventList, RelationList, FlowList, EntityList, EmbeddingMap, ClusterMap, ScalarList, TextValue)

_NOUNS = {
    EventList: "event",
    RelationList: "relation",
    FlowList: "flow",
    EntityList: "entity",
    EmbeddingMap: "embedding",
    ClusterMap: "cluster",
    ScalarList: "score",
    TextValue: "text",
}


def describe(value: Value) -> str:
    """Short human-readable size of a value, e.g. ``12 events``."""
    noun = _NOUNS.get(type(value), "item")
    count = len(value)
    if noun == "entity":
        return f"{count} {'entity' if count == 1 else 'entities'}"
    return f"{count} {noun}{'' if count == 1 else 's'}"
