"""Record repositories over a BlobStore and a SemanticIndex.

Activities, relations and flows are stored one JSON blob per record under
a ``{scope}/{timestamp}_{id}.{ext}`` key and indexed so they can be found by
id (the index entry's ref is the blob key) and by free-text search.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Iterator
from datetime import datetime
from typing import Any, Generic, TypeVar

from eem.core.errors import StorageError
from eem.core.models import ActivityEvent, Flow, RelationEvent, ScriptDefinition
from eem.storage.blob_store import BlobStore
from eem.storage.keys import (
    ACTIVITY_EXT,
    FLOW_EXT,
    RELATION_EXT,
    artifact_key,
    parse_key,
    sanitize_segment,
)
from eem.storage.semantic_index import SemanticIndex

logger = logging.getLogger(__name__)

R = TypeVar("R", ActivityEvent, RelationEvent, Flow)


def _encode(data: dict[str, Any]) -> bytes:
    return json.dumps(data, ensure_ascii=False).encode("utf-8")


def _decode(data: bytes, location: str) -> dict[str, Any]:
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StorageError(f"Corrupt record at {location}: {e}") from e


class _KeyedRepository(Generic[R]):
    """Shared load/save/scan logic for timestamp-keyed records."""

    container: str
    collection: str
    ext: str

    def __init__(self, blobs: BlobStore, index: SemanticIndex):
        self.blobs = blobs
        self.index = index

    # -- hooks --

    def _from_dict(self, data: dict[str, Any]) -> R:
        raise NotImplementedError

    def _scope(self, record: R) -> str:
        return record.session_id

    def _index_text(self, record: R) -> tuple[str, str]:
        raise NotImplementedError

    # -- shared operations --

    def save(self, record: R) -> str:
        """Persist ``record`` and index it. Returns the blob key."""
        key = artifact_key(self._scope(record), record.timestamp, record.id, self.ext)
        self.blobs.put(self.container, key, _encode(record.to_dict()))
        text, description = self._index_text(record)
        self.index.index(self.collection, record.id, text, description, key)
        return key

    def get(self, record_id: str) -> R | None:
        """Load a record by id, or None if it is unknown."""
        key = self.index.get_by_id(self.collection, record_id)
        if key is None:
            return None
        return self._load(key)

    def _load(self, key: str) -> R | None:
        data = self.blobs.get(self.container, key)
        if data is None:
            logger.warning("Index points at missing blob %s/%s", self.container, key)
            return None
        return self._from_dict(_decode(data, f"{self.container}/{key}"))

    def _keys(self, prefix: str = "") -> Iterator[str]:
        for info in self.blobs.list(self.container, prefix):
            if info.key.endswith(f".{self.ext}"):
                yield info.key

    def _load_many(self, keys: Iterable[str]) -> list[R]:
        records = []
        for key in keys:
            record = self._load(key)
            if record is not None:
                records.append(record)
        return records

    def _keys_in_range(self, start: datetime | None, end: datetime | None) -> list[str]:
        # Key stamps have second resolution, so the lower bound is floored.
        floor = start.replace(microsecond=0) if start is not None else None
        keys = []
        for key in self._keys():
            parsed = parse_key(key)
            if parsed is None:
                continue
            stamp = parsed[1]
            if floor is not None and stamp < floor:
                continue
            if end is not None and stamp > end:
                continue
            keys.append(key)
        return keys

    def in_time_range(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        max_results: int | None = None,
    ) -> list[R]:
        """Records with start <= timestamp <= end, oldest first."""
        records = [
            r for r in self._load_many(self._keys_in_range(start, end))
            if (start is None or r.timestamp >= start) and (end is None or r.timestamp <= end)
        ]
        records.sort(key=lambda r: r.timestamp)
        if max_results is not None:
            records = records[-max_results:] if max_results > 0 else []
        return records

    def search(self, query: str, limit: int = 10, min_score: float = 0.0) -> list[R]:
        """Free-text relevance search, best match first."""
        return [record for record, _ in self.search_scored(query, limit, min_score)]

    def search_scored(self, query: str, limit: int = 10, min_score: float = 0.0) -> list[tuple[R, float]]:
        """Like search, paired with each record's relevance score."""
        scored = []
        for hit in self.index.search(self.collection, query, limit, min_score):
            record = self._load(hit.ref)
            if record is not None:
                scored.append((record, hit.score))
        return scored

    def delete(self, record_id: str) -> bool:
        key = self.index.get_by_id(self.collection, record_id)
        if key is None:
            return False
        self.blobs.delete(self.container, key)
        self.index.remove(self.collection, record_id)
        return True

    def purge_older_than(self, cutoff: datetime) -> int:
        """Delete records whose key timestamp is before ``cutoff``, blob and index entry both."""
        removed = 0
        for key in list(self._keys()):
            parsed = parse_key(key)
            if parsed is None or parsed[1] >= cutoff:
                continue
            self.blobs.delete(self.container, key)
            self.index.remove(self.collection, parsed[2])
            removed += 1
        if removed:
            logger.info("Purged %d record(s) from %s", removed, self.container)
        return removed


class ActivityRepository(_KeyedRepository[ActivityEvent]):
    container = "aje-files"
    collection = "activities"
    ext = ACTIVITY_EXT

    def _from_dict(self, data: dict[str, Any]) -> ActivityEvent:
        return ActivityEvent.from_dict(data)

    def _index_text(self, record: ActivityEvent) -> tuple[str, str]:
        return record.content, record.activity_type

    def for_session(self, session_id: str, limit: int | None = None) -> list[ActivityEvent]:
        """All activities of one session, oldest first."""
        prefix = f"{sanitize_segment(session_id)}/"
        events = [e for e in self._load_many(self._keys(prefix)) if e.session_id == session_id]
        events.sort(key=lambda e: e.timestamp)
        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events


class RelationRepository(_KeyedRepository[RelationEvent]):
    container = "ire-files"
    collection = "relations"
    ext = RELATION_EXT

    def _from_dict(self, data: dict[str, Any]) -> RelationEvent:
        return RelationEvent.from_dict(data)

    def _index_text(self, record: RelationEvent) -> tuple[str, str]:
        text = " ".join(filter(None, [record.relation_type, record.description, *record.tags]))
        return text, record.description

    def all(self) -> list[RelationEvent]:
        return sorted(self._load_many(self._keys()), key=lambda r: r.timestamp)

    def for_events(
        self,
        event_ids: Iterable[str],
        predicate: Callable[[RelationEvent], bool] | None = None,
    ) -> list[RelationEvent]:
        """Relations referencing at least one of ``event_ids``, oldest first."""
        wanted = set(event_ids)
        matches = []
        for relation in self.all():
            if not wanted.intersection(relation.related_event_ids):
                continue
            if predicate is not None and not predicate(relation):
                continue
            matches.append(relation)
        return matches

    def recent(self, limit: int = 10) -> list[RelationEvent]:
        """Most recent relations, newest first."""
        relations = self.all()
        relations.reverse()
        return relations[:limit]


class FlowRepository(_KeyedRepository[Flow]):
    container = "flows"
    collection = "flows"
    ext = FLOW_EXT

    def _from_dict(self, data: dict[str, Any]) -> Flow:
        return Flow.from_dict(data)

    def _index_text(self, record: Flow) -> tuple[str, str]:
        text = " ".join(filter(None, [record.name, record.summary, *record.categories]))
        return text, record.summary

    def get_by_id(self, flow_id: str) -> Flow | None:
        return self.get(flow_id)

    def in_range(self, start: datetime, end: datetime, limit: int | None = None) -> list[Flow]:
        return self.in_time_range(start, end, limit)


class ScriptRepository:
    """Scripts stored as ``{id}.meta`` (JSON metadata) plus ``{id}.genai`` (text)."""

    container = "scripts"

    def __init__(self, blobs: BlobStore):
        self.blobs = blobs

    def save(self, script: ScriptDefinition) -> None:
        self.blobs.put(self.container, f"{script.id}.meta", _encode(script.meta_dict()))
        self.blobs.put(self.container, f"{script.id}.genai", script.text.encode("utf-8"))

    def get(self, script_id: str) -> ScriptDefinition | None:
        meta = self.blobs.get(self.container, f"{script_id}.meta")
        if meta is None:
            return None
        text = self.blobs.get(self.container, f"{script_id}.genai") or b""
        return ScriptDefinition.from_meta(_decode(meta, f"{self.container}/{script_id}.meta"), text.decode("utf-8"))

    def list(self) -> list[ScriptDefinition]:
        scripts = []
        for info in self.blobs.list(self.container):
            if not info.key.endswith(".meta"):
                continue
            script = self.get(info.key[: -len(".meta")])
            if script is not None:
                scripts.append(script)
        scripts.sort(key=lambda s: s.name)
        return scripts

    def find_by_name(self, name: str) -> ScriptDefinition | None:
        for script in self.list():
            if script.name == name:
                return script
        return None

    def delete(self, script_id: str) -> bool:
        found = self.blobs.delete(self.container, f"{script_id}.meta")
        self.blobs.delete(self.container, f"{script_id}.genai")
        return found
