"""Render a Flow as JSON, Graphviz DOT or a Mermaid flowchart.

Output is deterministic: nodes and edges are emitted in insertion order.
"""

from __future__ import annotations

import json
from collections.abc import Callable

from eem.core.errors import UnsupportedFormatError
from eem.core.models import Flow

DOT_FILL_COLORS = {
    "edit": "lightgreen",
    "coding": "lightgreen",
    "navigation": "lightyellow",
    "search": "lightcyan",
    "execution": "lightcoral",
}
DOT_DEFAULT_FILL = "lightblue"

DOT_EDGE_STYLES = {
    "temporal": "dashed",
    "causal": "solid",
    "semantic": "dotted",
}
DOT_DEFAULT_EDGE_STYLE = "solid"

MERMAID_NODE_FILLS = {
    "edit": "#d4ffdd",
    "coding": "#d4ffdd",
    "navigation": "#ffffd4",
    "search": "#d4f4ff",
    "execution": "#ffd4d4",
}
MERMAID_DEFAULT_FILL = "#f9f9f9"

MERMAID_LINKS = {
    "temporal": "-.->",
    "causal": "==>",
    "semantic": "-->",
}

MERMAID_CLASS_STROKES = {
    "Edit": "#28a745",
    "Coding": "#28a745",
    "Navigation": "#ffc107",
    "Search": "#17a2b8",
    "Execution": "#dc3545",
}
MERMAID_DEFAULT_STROKE = "#6c757d"


def relation_family(relation_type: str) -> str:
    """Collapse a relation type to temporal / causal / semantic / other.

    ``temporal_sequence`` is temporal, ``semantic_similarity`` is semantic.
    """
    lowered = relation_type.lower()
    for family in ("temporal", "causal", "semantic"):
        if lowered.startswith(family):
            return family
    return "other"


def _dot_escape(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"').replace("\n", " ")


def _mermaid_escape(text: str) -> str:
    return text.replace('"', "#quot;").replace("\n", " ")


def _mermaid_id(node_id: str) -> str:
    return "n" + "".join(ch for ch in node_id if ch.isalnum() or ch == "_")


def _mermaid_class(node_type: str) -> str:
    return "type" + "".join(part.capitalize() for part in node_type.split())


def render_json(flow: Flow) -> str:
    """The Flow's canonical dict form, pretty-printed."""
    return json.dumps(flow.to_dict(), indent=2, ensure_ascii=False)


def render_dot(flow: Flow) -> str:
    name = _dot_escape(flow.name)
    lines = [
        f'digraph "{name}" {{',
        "  // Graph attributes",
        '  graph [rankdir=LR, fontname="Arial", labelloc="t"];',
        f'  node [shape=box, style=filled, fillcolor={DOT_DEFAULT_FILL}, fontname="Arial"];',
        '  edge [fontname="Arial"];',
        f'  label="{name} - {_dot_escape(flow.summary)}";',
        "",
        "  // Nodes",
    ]
    for node in flow.nodes:
        color = DOT_FILL_COLORS.get(node.node_type.lower(), DOT_DEFAULT_FILL)
        lines.append(f'  "{node.id}" [label="{_dot_escape(node.label)}", fillcolor={color}];')
    lines.append("")
    lines.append("  // Edges")
    for edge in flow.edges:
        style = DOT_EDGE_STYLES.get(relation_family(edge.relation_type), DOT_DEFAULT_EDGE_STYLE)
        label = _dot_escape(f"{edge.relation_type} ({edge.weight:.2f})")
        lines.append(f'  "{edge.source_id}" -> "{edge.target_id}" [label="{label}", style={style}];')
    lines.append("}")
    return "\n".join(lines) + "\n"


def render_mermaid(flow: Flow) -> str:
    lines = [
        "```mermaid",
        "graph LR",
        f"    %% {_mermaid_escape(flow.name)} - {_mermaid_escape(flow.summary)}",
        "",
        "    %% Nodes",
    ]
    classes: list[str] = []
    for node in flow.nodes:
        mid = _mermaid_id(node.id)
        css_class = _mermaid_class(node.node_type)
        if css_class not in classes:
            classes.append(css_class)
        fill = MERMAID_NODE_FILLS.get(node.node_type.lower(), MERMAID_DEFAULT_FILL)
        lines.append(f'    {mid}["{_mermaid_escape(node.label)}"]:::{css_class}')
        lines.append(f"    style {mid} fill:{fill}")
    lines.append("")
    lines.append("    %% Edges")
    for edge in flow.edges:
        link = MERMAID_LINKS.get(relation_family(edge.relation_type), "-->")
        label = _mermaid_escape(edge.relation_type)
        lines.append(f'    {_mermaid_id(edge.source_id)} {link}|"{label}"| {_mermaid_id(edge.target_id)}')
    lines.append("")
    lines.append("    %% Class definitions")
    for name, stroke in MERMAID_CLASS_STROKES.items():
        lines.append(f"    classDef type{name} stroke:{stroke},color:#333")
    for css_class in classes:
        if css_class[len("type"):] not in MERMAID_CLASS_STROKES:
            lines.append(f"    classDef {css_class} stroke:{MERMAID_DEFAULT_STROKE},color:#333")
    lines.append("```")
    return "\n".join(lines) + "\n"


RENDERERS: dict[str, Callable[[Flow], str]] = {
    "json": render_json,
    "dot": render_dot,
    "mermaid": render_mermaid,
}


def render(flow: Flow, fmt: str) -> str:
    """Render ``flow`` in ``fmt`` (case-insensitive). Raises UnsupportedFormatError."""
    renderer = RENDERERS.get((fmt or "").strip().lower())
    if renderer is None:
        raise UnsupportedFormatError(fmt)
    return renderer(flow)
