"""Eem - event-to-flow memory pipeline for development activity.

Usage:
    from eem import build_context

    ctx = build_context()
    ctx.activities.save(ActivityEvent(activity_type="edit", content="...", session_id="s1"))
    report = ctx.detector.detect(session_id="s1")
    flow = ctx.synthesizer.generate_flow("morning", session_id="s1")
    print(ctx.synthesizer.export_flow(flow.id, "mermaid"))
"""

from eem.context import EemContext, build_context
from eem.core.models import (
    NOT_FOUND,
    ActivityEvent,
    Entity,
    EntityCorrelation,
    Flow,
    FlowEdge,
    FlowNode,
    PipelineExecutionResult,
    RelationEvent,
    ScriptDefinition,
)

__version__ = "0.1.0"

__all__ = [
    "NOT_FOUND",
    "ActivityEvent",
    "EemContext",
    "Entity",
    "EntityCorrelation",
    "Flow",
    "FlowEdge",
    "FlowNode",
    "PipelineExecutionResult",
    "RelationEvent",
    "ScriptDefinition",
    "build_context",
]
