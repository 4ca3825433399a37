"""Tests for ScriptInterpreter execution semantics."""

from __future__ import annotations

import threading
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from eem.core.models import ExecutionStatus, StepStatus
from eem.script.buffer import EventBuffer
from eem.script.interpreter import ScriptInterpreter, container_kind
from eem.script.transforms import default_transforms
from eem.script.values import EventList

from tests.helpers.fakes import T0, make_activity

NOW = T0 + timedelta(hours=1)


@pytest.fixture
def buffer():
    return EventBuffer(capacity=10)


@pytest.fixture
def interpreter(activities, relations, flows, fake_gateway, buffer):
    return ScriptInterpreter(
        activities, relations, flows, default_transforms(fake_gateway),
        buffer=buffer, clock=lambda: NOW,
    )


def steps(result):
    return [(s.name, s.status) for s in result.steps]


class TestContainerKind:
    @pytest.mark.parametrize(
        "tag, kind",
        [("aje", "activity"), ("Activities", "activity"), ("ire", "relation"), ("re", "relation"),
         ("e", "flow"), ("flows", "flow"), ("logs", "generic")],
    )
    def test_tags(self, tag, kind):
        assert container_kind(tag) == kind


class TestExecution:
    def test_syntax_error_runs_nothing(self, interpreter, activities):
        result = interpreter.execute('flow "broken" { source { a = listen("t") }')
        assert result.status is ExecutionStatus.FAILED
        assert result.flow_name == "broken"
        assert result.steps == []
        assert "unbalanced" in result.error_message

    def test_absent_stages_are_skipped(self, interpreter):
        result = interpreter.execute('flow "s" { source { a = listen("ide") } }')
        assert result.succeeded
        assert steps(result) == [
            ("source", StepStatus.COMPLETED),
            ("transform", StepStatus.SKIPPED),
            ("sink", StepStatus.SKIPPED),
        ]
        assert result.steps[0].details == "a: 0 events"
        assert result.end_time is not None

    def test_unresolved_reference_halts_run(self, interpreter):
        result = interpreter.execute('flow "u" { transform { a = src | extract_entities() } }')
        assert result.status is ExecutionStatus.FAILED
        assert "Unresolved reference" in result.error_message
        assert "'src'" in result.error_message
        assert steps(result) == [("source", StepStatus.SKIPPED), ("transform", StepStatus.FAILED)]

    def test_reference_must_be_bound_earlier(self, interpreter):
        text = """flow "order" {
            transform {
                b = a | rank_by_relevance()
                a = b | rank_by_relevance()
            }
        }"""
        result = interpreter.execute(text)
        assert not result.succeeded
        assert "'a'" in result.error_message

    def test_unknown_transform_is_identity(self, interpreter, buffer, activities):
        events = [make_activity("one", 0), make_activity("two", 1)]
        buffer.extend("ide", events)
        text = """flow "id" {
            source { a = listen("ide") }
            transform { b = a | frobnicate(3) }
            sink { store(b, "aje") }
        }"""
        result = interpreter.execute(text)
        assert result.succeeded
        stored = activities.in_time_range()
        assert [e.id for e in stored] == [e.id for e in events]
        assert [e.content for e in stored] == ["one", "two"]

    def test_undefined_dataset_keeps_partial_steps(self, interpreter):
        text = """flow "sink-miss" {
            source { a = listen("ide") }
            sink { store(missing, "aje") }
        }"""
        result = interpreter.execute(text)
        assert result.status is ExecutionStatus.FAILED
        assert "Undefined dataset" in result.error_message
        assert steps(result) == [
            ("source", StepStatus.COMPLETED),
            ("transform", StepStatus.SKIPPED),
            ("sink", StepStatus.FAILED),
        ]

    def test_cancelled_before_start(self, interpreter):
        cancel = threading.Event()
        cancel.set()
        result = interpreter.execute('flow "c" { source { a = listen("ide") } }', cancel)
        assert result.status is ExecutionStatus.FAILED
        assert result.error_message == "cancelled"
        assert all(s.status is StepStatus.SKIPPED and s.details == "cancelled" for s in result.steps)
        assert len(result.steps) == 3

    def test_cancel_during_run_skips_later_stages(self, activities, relations, flows, buffer):
        cancel = threading.Event()

        def stop(value, **kwargs):
            cancel.set()
            return value

        interpreter = ScriptInterpreter(activities, relations, flows, {"stop": stop}, buffer=buffer)
        text = """flow "c" {
            source { a = listen("ide") }
            transform { b = a | stop() }
            sink { store(b, "aje") }
        }"""
        result = interpreter.execute(text, cancel)
        assert steps(result) == [
            ("source", StepStatus.COMPLETED),
            ("transform", StepStatus.COMPLETED),
            ("sink", StepStatus.SKIPPED),
        ]
        assert result.error_message == "cancelled"

    def test_run_logger_receives_stage_events(self, activities, relations, flows, buffer):
        run_logger = MagicMock()
        interpreter = ScriptInterpreter(activities, relations, flows, {}, buffer=buffer, run_logger=run_logger)
        text = """flow "n" {
            source { a = listen("ide") }
            sink { notify_if(a.count > 5) }
        }"""
        result = interpreter.execute(text)
        assert result.succeeded
        run_logger.run_start.assert_called_once_with("n", 2)
        run_logger.notice.assert_called_once_with("sink", "notify_if(a.count > 5)")
        run_logger.run_finish.assert_called_once_with("Completed")


class TestSources:
    def test_read_with_time_filter(self, interpreter, activities):
        old = make_activity("old edit", -30)
        recent = make_activity("recent edit", 45)
        activities.save(old)
        activities.save(recent)
        text = """flow "r" {
            source { a = read("aje", time > now() - 30m) }
            sink { store(a, "e") }
        }"""
        result = interpreter.execute(text)
        assert result.succeeded
        assert result.steps[0].details == "a: 1 event"

    def test_read_with_session_and_type_filters(self, interpreter, activities):
        activities.save(make_activity("edit in S", 0, session_id="S"))
        activities.save(make_activity("search in S", 1, activity_type="search", session_id="S"))
        activities.save(make_activity("edit in T", 2, session_id="T"))
        text = """flow "f" {
            source {
                s = read("activity", session == "S")
                t = read("aje", type == "search")
            }
        }"""
        result = interpreter.execute(text)
        assert result.steps[0].details == "s: 2 events; t: 1 event"

    def test_unsupported_filter_is_ignored(self, interpreter, activities):
        activities.save(make_activity("x", 0))
        text = 'flow "f" { source { a = read("aje", priority == "high") } }'
        result = interpreter.execute(text)
        assert result.succeeded
        assert result.steps[0].details == "a: 1 event"

    def test_unknown_container_reads_nothing(self, interpreter):
        result = interpreter.execute('flow "g" { source { a = read("metrics") } }')
        assert result.succeeded
        assert result.steps[0].details == "a: 0 events"

    def test_listen_reads_buffer(self, interpreter, buffer):
        buffer.publish("ide", make_activity("live", 0))
        result = interpreter.execute('flow "l" { source { a = listen("ide") } }')
        assert result.steps[0].details == "a: 1 event"


class TestSinks:
    def test_store_entities_as_derived_relations(self, interpreter, buffer, relations):
        first = make_activity("Fixed Parser bug", 0)
        second = make_activity("Parser tests for Lexer", 1)
        buffer.extend("ide", [first, second])
        text = """flow "ents" {
            source { a = listen("ide") }
            transform { e = a | extract_entities() }
            sink { store(e, "ire") }
        }"""
        result = interpreter.execute(text)
        assert result.succeeded
        stored = {r.description: r for r in relations.all()}
        assert set(stored) == {"Fixed", "Parser", "Lexer"}
        assert stored["Parser"].relation_type == "derived"
        assert stored["Parser"].related_event_ids == [first.id, second.id]
        assert "script:ents" in stored["Parser"].tags

    def test_store_events_as_flow(self, interpreter, buffer, flows):
        buffer.extend("ide", [make_activity("a", 0), make_activity("b", 1), make_activity("c", 2)])
        text = """flow "to-flow" {
            source { a = listen("ide") }
            sink { store(a, "e") }
        }"""
        result = interpreter.execute(text)
        assert result.succeeded
        stored = flows.in_time_range()
        assert len(stored) == 1
        assert stored[0].name == "to-flow:a"
        assert len(stored[0].nodes) == 3
        assert [e.relation_type for e in stored[0].edges] == ["temporal_sequence"] * 2

    def test_store_relations_from_correlate_with(self, interpreter, buffer, relations):
        buffer.extend("ide", [make_activity("edit", 0)])
        buffer.extend("term", [make_activity("run tests", 2, activity_type="execution")])
        text = """flow "corr" {
            source {
                edits = listen("ide")
                runs = listen("term")
            }
            transform { related = edits | correlate_with(runs) }
            sink { store(related, "ire") }
        }"""
        result = interpreter.execute(text)
        assert result.succeeded
        [relation] = relations.all()
        assert relation.relation_type == "contextual"
        assert relation.strength == pytest.approx(1 - 120 / 300)

    def test_unknown_sink_verb_ignored(self, interpreter):
        text = """flow "x" {
            source { a = listen("ide") }
            sink { publish(a) }
        }"""
        result = interpreter.execute(text)
        assert result.succeeded
        assert result.steps[2].details == "ignored publish()"


def test_apply_chain_rejects_unbound_base(interpreter):
    from eem.core.errors import UnresolvedReferenceError
    from eem.script.interpreter import _Run
    from eem.script.parser import parse

    script = parse('flow "x" { transform { b = a | cluster() } }')
    state = _Run(script=script, now=NOW, env={"other": EventList()})
    with pytest.raises(UnresolvedReferenceError):
        interpreter.apply_chain(script.stage("transform").statements[0].value, state)


class TestHandBuiltScripts:
    """Scripts assembled in code rather than parsed are checked at run time."""

    def test_sink_assignment_fails_the_sink_stage(self, interpreter):
        from eem.script.syntax import Assignment, Name, Script, Stage

        script = Script(name="built", stages={
            "sink": Stage("sink", [Assignment("a", Name("b"), line=3)]),
        })
        result = interpreter.run(script)
        assert result.status is ExecutionStatus.FAILED
        assert result.error_message == "line 3: sink statements must be calls"
        assert steps(result)[-1] == ("sink", StepStatus.FAILED)

    def test_source_without_call_fails(self, interpreter):
        from eem.script.syntax import Assignment, Literal, Script, Stage

        script = Script(name="built", stages={
            "source": Stage("source", [Assignment("a", Literal("ide"), line=2)]),
        })
        result = interpreter.run(script)
        assert result.status is ExecutionStatus.FAILED
        assert result.error_message.startswith("line 2: source statements")

    def test_chain_from_literal_raises_script_error(self, interpreter):
        from eem.core.errors import ScriptError
        from eem.script.interpreter import _Run
        from eem.script.syntax import Call, Literal, PipeChain, Script

        chain = PipeChain(base=Literal("x"), calls=(Call("cluster"),), line=4)
        state = _Run(script=Script(name="built"), now=NOW)
        with pytest.raises(ScriptError, match="line 4"):
            interpreter.apply_chain(chain, state)
