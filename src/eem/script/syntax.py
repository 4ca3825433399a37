"""Syntax tree for pipeline scripts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Union

STAGE_ORDER = ("source", "transform", "sink")


@dataclass(frozen=True)
class Name:
    id: str
    line: int = 0


@dataclass(frozen=True)
class Literal:
    """A string, number or duration (``timedelta``) constant."""

    value: str | int | float | timedelta
    line: int = 0


@dataclass(frozen=True)
class MapLiteral:
    items: tuple[tuple[str, Expr], ...] = ()
    line: int = 0


@dataclass(frozen=True)
class Attribute:
    value: Expr
    attr: str
    line: int = 0


@dataclass(frozen=True)
class BinaryOp:
    left: Expr
    op: str
    right: Expr
    line: int = 0


@dataclass(frozen=True)
class KeywordArg:
    name: str
    value: Expr


@dataclass(frozen=True)
class Call:
    func: str
    args: tuple[Expr, ...] = ()
    kwargs: tuple[KeywordArg, ...] = ()
    line: int = 0


@dataclass(frozen=True)
class PipeChain:
    """``base | f1(...) | f2(...)``, applied left to right."""

    base: Expr
    calls: tuple[Call, ...] = ()
    line: int = 0


Expr = Union[Name, Literal, MapLiteral, Attribute, BinaryOp, Call, PipeChain]


@dataclass(frozen=True)
class Assignment:
    target: str
    value: Expr
    line: int = 0


@dataclass(frozen=True)
class CallStatement:
    call: Call
    line: int = 0


Statement = Union[Assignment, CallStatement]


@dataclass
class Stage:
    kind: str
    statements: list[Statement] = field(default_factory=list)
    line: int = 0


@dataclass
class Script:
    name: str
    stages: dict[str, Stage] = field(default_factory=dict)

    def stage(self, kind: str) -> Stage | None:
        return self.stages.get(kind)


def _format_duration(value: timedelta) -> str:
    seconds = int(value.total_seconds())
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60)):
        if seconds and seconds % size == 0:
            return f"{seconds // size}{unit}"
    return f"{seconds}s"


def unparse(node: Expr | KeywordArg) -> str:
    """Render an expression back to script syntax."""
    if isinstance(node, Name):
        return node.id
    if isinstance(node, Literal):
        if isinstance(node.value, str):
            escaped = node.value.replace("\\", "\\\\").replace('"', '\\"')
            return f'"{escaped}"'
        if isinstance(node.value, timedelta):
            return _format_duration(node.value)
        return str(node.value)
    if isinstance(node, MapLiteral):
        return "{" + ", ".join(f"{k}: {unparse(v)}" for k, v in node.items) + "}"
    if isinstance(node, Attribute):
        return f"{unparse(node.value)}.{node.attr}"
    if isinstance(node, BinaryOp):
        return f"{unparse(node.left)} {node.op} {unparse(node.right)}"
    if isinstance(node, KeywordArg):
        return f"{node.name}={unparse(node.value)}"
    if isinstance(node, Call):
        parts = [unparse(a) for a in node.args] + [unparse(k) for k in node.kwargs]
        return f"{node.func}({', '.join(parts)})"
    if isinstance(node, PipeChain):
        return " | ".join([unparse(node.base), *(unparse(c) for c in node.calls)])
    raise TypeError(f"Cannot unparse {type(node).__name__}")
