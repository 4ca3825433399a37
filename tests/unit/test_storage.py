"""Tests for blob keys, the blob store, the semantic index and repositories."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from eem.config import Settings
from eem.core.errors import RetryExhaustedError, StorageError
from eem.core.resilience import RetryPolicy
from eem.core.models import RelationEvent, ScriptDefinition
from eem.storage.blob_store import STORAGE_RETRY, ResilientBlobStore
from eem.storage.engine import get_engine, get_session_factory, reset_engines
from eem.storage.keys import artifact_key, id_from_key, parse_key, sanitize_segment
from eem.storage.semantic_index import SqlSemanticIndex, keyword_score

from tests.helpers.fakes import T0, make_activity


class TestKeys:
    def test_sanitize_segment(self):
        assert sanitize_segment('a\\b?c&d:e*f"g<h>i|j') == "a_b_c_d_e_f_g_h_i_j"
        assert sanitize_segment("") == "no-session"
        assert sanitize_segment(None) == "no-session"
        assert sanitize_segment("plain-id_1") == "plain-id_1"

    def test_artifact_key_format(self):
        key = artifact_key("sess:1", datetime(2025, 3, 15, 9, 5, 7, 123, tzinfo=timezone.utc), "abc", "aje")
        assert key == "sess_1/20250315090507_abc.aje"

    def test_key_uses_utc(self):
        ts = datetime(2025, 3, 15, 11, 0, tzinfo=timezone(timedelta(hours=2)))
        assert artifact_key("s", ts, "x", "e") == "s/20250315090000_x.e"

    def test_parse_key(self):
        scope, stamp, artifact_id, ext = parse_key("no-session/20250315090507_a-b-c.ire")
        assert scope == "no-session"
        assert stamp == datetime(2025, 3, 15, 9, 5, 7, tzinfo=timezone.utc)
        assert artifact_id == "a-b-c"
        assert ext == "ire"
        assert parse_key("scripts/x.meta") is None
        assert id_from_key("s/20250315090507_z.e") == "z"


class TestEngines:
    def test_engine_cached_per_database_path(self, tmp_path):
        """Settings pointing at different stores get different engines."""
        first = Settings(storage_dir=tmp_path / "one", _env_file=None)
        second = Settings(storage_dir=tmp_path / "two", _env_file=None)
        try:
            assert get_engine(first) is get_engine(first)
            assert get_engine(first) is not get_engine(second)
            assert str(get_engine(second).url).endswith("two/eem.db")
            assert get_session_factory(second).kw["bind"] is get_engine(second)
        finally:
            reset_engines()

    def test_reset_drops_cached_engines(self, tmp_path):
        settings = Settings(storage_dir=tmp_path / "store", _env_file=None)
        engine = get_engine(settings)
        reset_engines()
        try:
            assert get_engine(settings) is not engine
        finally:
            reset_engines()


class TestBlobStore:
    def test_put_get_overwrite(self, blobs):
        blobs.put("c", "k", b"one")
        blobs.put("c", "k", b"two")
        assert blobs.get("c", "k") == b"two"
        assert blobs.get("c", "missing") is None
        assert blobs.get("other", "k") is None

    def test_list_by_prefix_in_key_order(self, blobs):
        for key in ["b/2", "a/1", "b/1", "b_/x"]:
            blobs.put("c", key, key.encode())
        assert [info.key for info in blobs.list("c", "b/")] == ["b/1", "b/2"]
        infos = list(blobs.list("c"))
        assert [info.key for info in infos] == ["a/1", "b/1", "b/2", "b_/x"]
        assert infos[0].size == 3
        assert infos[0].created_at.tzinfo is not None

    def test_prefix_wildcards_are_literal(self, blobs):
        blobs.put("c", "a%b/1", b"x")
        blobs.put("c", "azb/1", b"x")
        assert [i.key for i in blobs.list("c", "a%b/")] == ["a%b/1"]

    def test_delete(self, blobs):
        blobs.put("c", "k", b"x")
        assert blobs.delete("c", "k") is True
        assert blobs.delete("c", "k") is False


class TestResilientBlobStore:
    def test_retries_transient_operational_error(self):
        inner = MagicMock()
        inner.get.side_effect = [OperationalError("stmt", {}, Exception("locked")), b"data"]
        policy = RetryPolicy(
            name="test", max_attempts=3, base_delay=0.0, max_delay=0.0, timeout=None,
            retry_on=STORAGE_RETRY.retry_on,
        )
        store = ResilientBlobStore(inner, policy)
        assert store.get("c", "k") == b"data"
        assert inner.get.call_count == 2

    def test_exhaustion_surfaces(self):
        inner = MagicMock()
        inner.put.side_effect = ConnectionError("down")
        policy = RetryPolicy(name="test", max_attempts=2, base_delay=0.0, max_delay=0.0, timeout=None)
        with pytest.raises(RetryExhaustedError):
            ResilientBlobStore(inner, policy).put("c", "k", b"x")
        assert inner.put.call_count == 2

    def test_non_transient_not_retried(self):
        inner = MagicMock()
        inner.delete.side_effect = ValueError("bad key")
        policy = RetryPolicy(name="test", max_attempts=5, base_delay=0.0, timeout=None)
        with pytest.raises(ValueError):
            ResilientBlobStore(inner, policy).delete("c", "k")
        assert inner.delete.call_count == 1


class TestSemanticIndex:
    def test_keyword_score(self):
        assert keyword_score("Docker compose", "docker build") == 0.5
        assert keyword_score("", "anything") == 0.0

    def test_keyword_search(self, index):
        index.index("docs", "1", "docker compose setup", "", "ref-1")
        index.index("docs", "2", "rust borrow checker", "", "ref-2")
        index.index("other", "3", "docker elsewhere", "", "ref-3")
        hits = index.search("docs", "docker setup")
        assert [(h.id, h.ref) for h in hits] == [("1", "ref-1")]
        assert hits[0].score == 1.0

    def test_min_score_and_limit(self, index):
        index.index("docs", "1", "alpha beta", "", "r1")
        index.index("docs", "2", "alpha", "", "r2")
        index.index("docs", "3", "alpha beta gamma", "", "r3")
        assert [h.id for h in index.search("docs", "alpha beta gamma", min_score=0.6)] == ["3", "1"]
        assert len(index.search("docs", "alpha", limit=2)) == 2

    def test_embedding_search(self, session_factory):
        vectors = {"cats": [1.0, 0.0], "dogs": [0.8, 0.6], "tax forms": [0.0, 1.0], "kittens": [0.9, 0.1]}
        embedded = SqlSemanticIndex(session_factory, embed=lambda text: vectors[text])
        for i, text in enumerate(["cats", "dogs", "tax forms"]):
            embedded.index("pets", str(i), text, "", f"r{i}")
        hits = embedded.search("pets", "kittens", min_score=0.5)
        assert [h.ref for h in hits] == ["r0", "r1"]

    def test_get_by_id_and_remove(self, index):
        index.index("docs", "1", "text", "", "ref-1")
        index.index("docs", "1", "new text", "", "ref-2")
        assert index.get_by_id("docs", "1") == "ref-2"
        assert index.remove("docs", "1") is True
        assert index.get_by_id("docs", "1") is None
        assert index.remove("docs", "1") is False


class TestActivityRepository:
    def test_save_and_get(self, activities, blobs):
        event = make_activity("edit main.py", session_id="sess:1", metadata={"lines": 3})
        key = activities.save(event)
        assert key.startswith("sess_1/20250315090000_")
        assert key.endswith(".aje")
        loaded = activities.get(event.id)
        assert loaded == event
        assert activities.get("unknown") is None

    def test_corrupt_blob_raises_storage_error(self, activities, blobs):
        """A record blob that is not valid JSON surfaces as StorageError."""
        event = make_activity("edit main.py")
        key = activities.save(event)
        blobs.put("aje-files", key, b"{not json")
        with pytest.raises(StorageError, match=key):
            activities.get(event.id)

    def test_for_session_oldest_first(self, activities):
        late, early = make_activity("late", 10), make_activity("early", 0)
        activities.save(late)
        activities.save(early)
        activities.save(make_activity("elsewhere", 5, session_id="T"))
        assert [e.content for e in activities.for_session("S")] == ["early", "late"]
        assert [e.content for e in activities.for_session("S", limit=1)] == ["late"]

    def test_in_time_range_bounds_and_max(self, activities):
        for minutes in (0, 10, 20, 30):
            activities.save(make_activity(f"m{minutes}", minutes))
        start, end = T0 + timedelta(minutes=10), T0 + timedelta(minutes=20)
        assert [e.content for e in activities.in_time_range(start, end)] == ["m10", "m20"]
        assert [e.content for e in activities.in_time_range(max_results=2)] == ["m20", "m30"]

    def test_sub_second_bounds_are_exact(self, activities):
        activities.save(make_activity("on the second", 0))
        start = T0 + timedelta(milliseconds=500)
        assert activities.in_time_range(start, T0 + timedelta(minutes=1)) == []

    def test_search(self, activities):
        activities.save(make_activity("configure docker network"))
        activities.save(make_activity("write unit tests"))
        assert [e.content for e in activities.search("docker")] == ["configure docker network"]

    def test_purge_removes_blob_and_index_entry(self, activities, blobs, index):
        old, new = make_activity("old", -60 * 24 * 100), make_activity("new", 0)
        activities.save(old)
        activities.save(new)
        assert activities.purge_older_than(T0 - timedelta(days=90)) == 1
        assert activities.get(old.id) is None
        assert index.get_by_id("activities", old.id) is None
        assert [e.id for e in activities.in_time_range()] == [new.id]

    def test_delete(self, activities):
        event = make_activity("x")
        activities.save(event)
        assert activities.delete(event.id) is True
        assert activities.get(event.id) is None
        assert activities.delete(event.id) is False


class TestRelationRepository:
    def test_for_events_and_recent(self, relations):
        first = RelationEvent("causal", ["a", "b"], timestamp=T0)
        second = RelationEvent("semantic", ["b", "c"], timestamp=T0 + timedelta(minutes=1))
        third = RelationEvent("temporal", ["x", "y"], timestamp=T0 + timedelta(minutes=2))
        for r in (first, second, third):
            relations.save(r)
        assert [r.id for r in relations.for_events(["b"])] == [first.id, second.id]
        assert [r.id for r in relations.for_events(["b"], lambda r: r.relation_type == "causal")] == [first.id]
        assert [r.id for r in relations.recent(2)] == [third.id, second.id]

    def test_relation_key_uses_session(self, relations):
        key = relations.save(RelationEvent("manual", ["a", "b"], session_id="S", timestamp=T0))
        assert key.startswith("S/20250315090000_")
        assert key.endswith(".ire")


class TestScriptRepository:
    def test_meta_and_text_stored_separately(self, scripts, blobs):
        script = ScriptDefinition(name="daily", text='flow "daily" { }', tags=["a", " ", "a", "b"])
        scripts.save(script)
        assert blobs.get("scripts", f"{script.id}.genai") == b'flow "daily" { }'
        loaded = scripts.get(script.id)
        assert loaded.text == script.text
        assert loaded.tags == ["a", "b"]
        assert scripts.find_by_name("daily").id == script.id

    def test_list_sorted_and_delete(self, scripts):
        b, a = ScriptDefinition(name="beta"), ScriptDefinition(name="alpha")
        scripts.save(b)
        scripts.save(a)
        assert [s.name for s in scripts.list()] == ["alpha", "beta"]
        assert scripts.delete(a.id) is True
        assert scripts.delete(a.id) is False
        assert scripts.get(a.id) is None
