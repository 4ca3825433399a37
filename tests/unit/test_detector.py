"""Tests for CorrelationDetector."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from eem.core.models import Entity
from eem.correlation.detector import (
    ENTITY_LEVEL_TAG,
    NO_CORRELATIONS_MESSAGE,
    SEMANTIC_SIMILARITY,
    CorrelationDetector,
)

from tests.helpers.fakes import T0, FakeGateway, make_activity

# cos(A, B) == 0.75 exactly: |A| = 1, |B| = 4, A.B = 3
VEC_A = [1.0, 0.0, 0.0, 0.0, 0.0]
VEC_B = [3.0, 2.0, 1.0, 1.0, 1.0]
VEC_FAR = [0.0, 0.0, 0.0, 0.0, 1.0]


def _detector(gateway, activities, relations, **kwargs):
    kwargs.setdefault("clock", lambda: T0 + timedelta(minutes=30))
    return CorrelationDetector(gateway, activities, relations, **kwargs)


@pytest.fixture
def boundary_gateway():
    return FakeGateway(
        vectors={"Alpha": VEC_A, "Beta": VEC_B, "Gamma": VEC_FAR},
        entities={
            "first": ["Alpha", "Gamma"],
            "second": ["Beta"],
        },
    )


@pytest.fixture
def boundary_activities():
    return [make_activity("first", 0), make_activity("second", 1)]


class TestThreshold:
    def test_equal_to_threshold_emits_nothing(self, boundary_gateway, boundary_activities, activities, relations):
        detector = _detector(boundary_gateway, activities, relations, threshold=0.75)
        report = detector.detect(activities=boundary_activities)
        assert [e.name for e in report.entities] == ["Alpha", "Gamma", "Beta"]
        assert report.correlations == []
        assert relations.all() == []

    def test_just_below_similarity_emits_one(self, boundary_gateway, boundary_activities, activities, relations):
        detector = _detector(boundary_gateway, activities, relations)
        report = detector.detect(activities=boundary_activities, threshold=0.7499999)
        [correlation] = report.correlations
        assert (correlation.entity_a, correlation.entity_b) == ("Alpha", "Beta")
        assert correlation.similarity == 0.75

        [stored] = relations.all()
        assert stored.relation_type == SEMANTIC_SIMILARITY
        assert stored.related_event_ids == ["Alpha", "Beta"]
        assert ENTITY_LEVEL_TAG in stored.tags
        assert stored.strength == 0.75


class TestDetect:
    def test_disabled_returns_empty_report(self, fake_gateway, activities, relations):
        detector = _detector(fake_gateway, activities, relations, enabled=False)
        report = detector.detect(activities=[make_activity("Docker")])
        assert report.activities == []
        assert fake_gateway.extract_calls == []

    def test_reads_activities_from_window(self, fake_gateway, activities, relations):
        activities.save(make_activity("Old Thing", -120))
        activities.save(make_activity("Recent Docker", 10))
        detector = _detector(fake_gateway, activities, relations)
        report = detector.detect(window_minutes=60)
        assert [a.content for a in report.activities] == ["Recent Docker"]

    def test_session_filter(self, fake_gateway, activities, relations):
        activities.save(make_activity("Mine", 1, session_id="S"))
        activities.save(make_activity("Theirs", 2, session_id="T"))
        report = _detector(fake_gateway, activities, relations).detect(session_id="S")
        assert [a.content for a in report.activities] == ["Mine"]
        assert report.session_id == "S"

    def test_extraction_failure_is_per_item(self, activities, relations):
        gateway = FakeGateway(fail_on={"Broken Input"})
        batch = [make_activity("Docker Compose"), make_activity("Broken Input"), make_activity("Rust")]
        report = _detector(gateway, activities, relations).detect(activities=batch)
        assert [r.ok for r in report.extractions] == [True, False, True]
        assert [r.key for r in report.failed_extractions] == [batch[1].id]
        assert {e.name for e in report.entities} == {"Docker", "Compose", "Rust"}

    def test_each_name_embedded_once(self, activities, relations):
        gateway = FakeGateway()
        batch = [make_activity("Docker image"), make_activity("Docker volume"), make_activity("Docker")]
        _detector(gateway, activities, relations).detect(activities=batch)
        assert gateway.embed_calls == ["Docker"]

    def test_entity_cap_drops_lowest_relevance(self, activities, relations):
        gateway = FakeGateway(entities={
            "a": [Entity("Keep", relevance=0.9), Entity("Drop", relevance=0.1)],
            "b": [Entity("Also", relevance=0.5)],
        })
        detector = _detector(gateway, activities, relations, max_entities=2)
        report = detector.detect(activities=[make_activity("a"), make_activity("b")])
        assert [e.name for e in report.entities] == ["Keep", "Also"]
        assert report.dropped_entities == ["Drop"]
        assert "Drop" not in report.mentions

    def test_cancel_stops_new_work(self, activities, relations):
        gateway = FakeGateway()
        cancel = threading.Event()
        cancel.set()
        report = _detector(gateway, activities, relations).detect(
            activities=[make_activity("Docker")], cancel_event=cancel
        )
        assert report.cancelled
        assert gateway.extract_calls == []
        assert report.correlations == []

    def test_map_to_activity_relations(self, boundary_gateway, boundary_activities, activities, relations):
        detector = _detector(boundary_gateway, activities, relations)
        report = detector.detect(activities=boundary_activities, threshold=0.5)
        mapped = detector.map_to_activity_relations(report)
        [relation] = mapped
        assert relation.related_event_ids == [a.id for a in boundary_activities]
        assert "activity-level" in relation.tags
        assert len(relations.all()) == 2


class TestOtherCorrelations:
    def test_detect_temporal(self, fake_gateway, activities, relations):
        a, b, c = make_activity("a", 0), make_activity("b", 1), make_activity("c", 20)
        found = _detector(fake_gateway, activities, relations).detect_temporal([c, a, b], window_seconds=300)
        [relation] = found
        assert relation.relation_type == "temporal"
        assert relation.related_event_ids == [a.id, b.id]
        assert relation.strength == pytest.approx(0.8)

    def test_temporal_threshold(self, fake_gateway, activities, relations):
        a, b = make_activity("a", 0), make_activity("b", 4)
        detector = _detector(fake_gateway, activities, relations)
        assert detector.detect_temporal([a, b], threshold=0.5) == []

    def test_manual_correlation(self, fake_gateway, activities, relations):
        detector = _detector(fake_gateway, activities, relations)
        relation = detector.create_manual_correlation(["x", "y", "x"], "causal", "x caused y", strength=3.0)
        assert relation.related_event_ids == ["x", "y"]
        assert relation.strength == 1.0
        assert relations.get(relation.id) is not None

    def test_manual_correlation_needs_two_ids(self, fake_gateway, activities, relations):
        with pytest.raises(ValueError, match="two"):
            _detector(fake_gateway, activities, relations).create_manual_correlation(["x", " ", "x"])

    def test_correlations_for_activities(self, fake_gateway, activities, relations):
        detector = _detector(fake_gateway, activities, relations)
        detector.create_manual_correlation(["a", "b"], "causal")
        detector.create_manual_correlation(["b", "c"], "Semantic")
        detector.create_manual_correlation(["d", "e"], "causal")
        assert len(detector.correlations_for_activities(["b"])) == 2
        [only] = detector.correlations_for_activities(["b"], relation_type="semantic")
        assert only.related_event_ids == ["b", "c"]

    def test_search_correlations(self, fake_gateway, activities, relations):
        detector = _detector(fake_gateway, activities, relations)
        detector.create_manual_correlation(["a", "b"], "causal", "deploy broke login")
        assert [r.description for r in detector.search_correlations("login")] == ["deploy broke login"]


class TestInsights:
    def test_no_correlations_skips_gateway(self, fake_gateway, activities, relations):
        detector = _detector(fake_gateway, activities, relations)
        assert detector.generate_insights() == NO_CORRELATIONS_MESSAGE
        assert fake_gateway.complete_calls == []

    def test_strongest_correlations_in_prompt(self, fake_gateway, activities, relations):
        detector = _detector(fake_gateway, activities, relations)
        detector.create_manual_correlation(["a", "b"], "causal", "weak link", strength=0.2)
        detector.create_manual_correlation(["c", "d"], "causal", "strong link", strength=0.9)
        text = detector.generate_insights(limit=1)
        assert text == "1. Insight one\n2. Insight two"
        prompt = fake_gateway.complete_calls[0][0]["content"]
        assert "strong link" in prompt
        assert "weak link" not in prompt
