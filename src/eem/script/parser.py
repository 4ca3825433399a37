"""Validation and recursive-descent parsing of pipeline scripts.

Grammar::

    script     := 'flow' STRING '{' stage* '}'
    stage      := ('source' | 'transform' | 'sink') '{' statement* '}'
    statement  := IDENT '=' chain | call            (one per line)
    chain      := expr ('|' call)*                  ('|' may start a new line)
    expr       := sum (('>' | '<' | '>=' | '<=' | '==' | '!=') sum)?
    sum        := postfix (('+' | '-') postfix)*
    postfix    := atom ('.' IDENT)*
    atom       := call | IDENT | STRING | NUMBER | DURATION | map | '(' expr ')'
    call       := IDENT '(' [arg (',' arg)*] ')'
    arg        := IDENT '=' expr | expr
    map        := '{' [key ':' expr (',' key ':' expr)*] '}'
"""

from __future__ import annotations

import re
from datetime import timedelta

from eem.core.errors import ScriptSyntaxError
from eem.script.lexer import Token, TokenType, tokenize
from eem.script.syntax import (
    STAGE_ORDER,
    Assignment,
    Attribute,
    BinaryOp,
    Call,
    CallStatement,
    Expr,
    KeywordArg,
    Literal,
    MapLiteral,
    Name,
    PipeChain,
    Script,
    Stage,
)

SOURCE_PRIMITIVES = ("listen", "read")
COMPARISON_OPS = (">", "<", ">=", "<=", "==", "!=")

_FLOW_RE = re.compile(r"\bflow\b")
_STAGE_RE = re.compile(r"\b(?:source|transform|sink)\s*\{")

_DURATION_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def validate_script(text: str) -> None:
    """Check the raw text before tokenizing.

    A script is rejected when the ``flow`` keyword is missing, when it has
    no brace pair, when no stage keyword opens a block, or when opening and
    closing braces do not balance.
    """
    if not text or not text.strip():
        raise ScriptSyntaxError("script is empty")
    if not _FLOW_RE.search(text):
        raise ScriptSyntaxError("missing 'flow' keyword")
    if "{" not in text or "}" not in text:
        raise ScriptSyntaxError("missing '{' / '}' block")
    if not _STAGE_RE.search(text):
        raise ScriptSyntaxError("no stage found: expected at least one of source, transform, sink")
    opening, closing = text.count("{"), text.count("}")
    if opening != closing:
        raise ScriptSyntaxError(f"unbalanced braces: {opening} '{{' vs {closing} '}}'")


def parse_duration(text: str) -> timedelta:
    """Convert ``24h`` / ``15m`` / ``30s`` / ``7d`` into a timedelta."""
    return timedelta(seconds=float(text[:-1]) * _DURATION_UNITS[text[-1]])


class Parser:
    """Recursive-descent parser over the token stream of one script."""

    def __init__(self, tokens: list[Token]):
        self.tokens = tokens
        self.pos = 0

    # -- token helpers --

    @property
    def current(self) -> Token:
        return self.tokens[self.pos]

    def _peek(self, offset: int = 1) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def _advance(self) -> Token:
        token = self.current
        if token.type is not TokenType.EOF:
            self.pos += 1
        return token

    def _error(self, message: str, token: Token | None = None) -> ScriptSyntaxError:
        token = token or self.current
        found = "end of script" if token.type is TokenType.EOF else repr(token.value)
        return ScriptSyntaxError(f"{message}, found {found}", token.line)

    def _expect_op(self, op: str) -> Token:
        if not self.current.is_op(op):
            raise self._error(f"expected '{op}'")
        return self._advance()

    def _expect_ident(self, what: str = "identifier") -> Token:
        if self.current.type is not TokenType.IDENT:
            raise self._error(f"expected {what}")
        return self._advance()

    def _skip_newlines(self) -> None:
        while self.current.type is TokenType.NEWLINE:
            self._advance()

    def _end_statement(self) -> None:
        if self.current.type is TokenType.NEWLINE:
            self._skip_newlines()
        elif not self.current.is_op("}"):
            raise self._error("expected end of statement")

    # -- grammar --

    def parse_script(self) -> Script:
        self._skip_newlines()
        if not self.current.is_ident("flow"):
            raise self._error("script must start with 'flow'")
        self._advance()
        if self.current.type is not TokenType.STRING:
            raise self._error("expected flow name string")
        name = self._advance().value
        self._expect_op("{")
        script = Script(name=name)
        self._skip_newlines()
        while not self.current.is_op("}"):
            stage = self.parse_stage()
            if stage.kind in script.stages:
                raise ScriptSyntaxError(f"duplicate '{stage.kind}' stage", stage.line)
            script.stages[stage.kind] = stage
            self._skip_newlines()
        self._expect_op("}")
        self._skip_newlines()
        if self.current.type is not TokenType.EOF:
            raise self._error("unexpected content after flow block")
        if not script.stages:
            raise ScriptSyntaxError("flow has no stages")
        return script

    def parse_stage(self) -> Stage:
        token = self.current
        if not token.is_ident(*STAGE_ORDER):
            raise self._error("expected stage 'source', 'transform' or 'sink'")
        self._advance()
        stage = Stage(kind=token.value, line=token.line)
        self._expect_op("{")
        self._skip_newlines()
        while not self.current.is_op("}"):
            if self.current.type is TokenType.EOF:
                raise self._error(f"unterminated '{stage.kind}' stage")
            stage.statements.append(self.parse_statement(stage.kind))
            self._end_statement()
        self._expect_op("}")
        return stage

    def parse_statement(self, kind: str) -> Assignment | CallStatement:
        start = self.current
        if kind == "sink":
            if not (start.type is TokenType.IDENT and self._peek().is_op("(")):
                raise self._error("sink statements must be calls such as store(name, \"tag\")")
            return CallStatement(call=self.parse_call(), line=start.line)

        target = self._expect_ident("assignment target")
        self._expect_op("=")
        value = self.parse_chain()
        if kind == "source":
            if not (isinstance(value, Call) and value.func in SOURCE_PRIMITIVES):
                raise ScriptSyntaxError(
                    f"source statement for {target.value!r} must call listen(...) or read(...)",
                    target.line,
                )
        elif kind == "transform":
            base = value.base if isinstance(value, PipeChain) else value
            if not isinstance(base, Name):
                raise ScriptSyntaxError(
                    f"transform statement for {target.value!r} must start from a bound name",
                    target.line,
                )
        return Assignment(target=target.value, value=value, line=target.line)

    def parse_chain(self) -> Expr:
        line = self.current.line
        base = self.parse_expr()
        calls: list[Call] = []
        while True:
            if self.current.is_op("|"):
                self._advance()
            elif self.current.type is TokenType.NEWLINE and self._next_significant().is_op("|"):
                self._skip_newlines()
                self._advance()
            else:
                break
            self._skip_newlines()
            if not (self.current.type is TokenType.IDENT and self._peek().is_op("(")):
                raise self._error("expected a transform call after '|'")
            calls.append(self.parse_call())
        if not calls:
            return base
        return PipeChain(base=base, calls=tuple(calls), line=line)

    def _next_significant(self) -> Token:
        offset = 0
        while self._peek(offset).type is TokenType.NEWLINE:
            offset += 1
        return self._peek(offset)

    def parse_expr(self) -> Expr:
        left = self.parse_sum()
        if self.current.type is TokenType.OP and self.current.value in COMPARISON_OPS:
            op = self._advance()
            right = self.parse_sum()
            return BinaryOp(left=left, op=op.value, right=right, line=op.line)
        return left

    def parse_sum(self) -> Expr:
        left = self.parse_postfix()
        while self.current.is_op("+", "-"):
            op = self._advance()
            right = self.parse_postfix()
            left = BinaryOp(left=left, op=op.value, right=right, line=op.line)
        return left

    def parse_postfix(self) -> Expr:
        value = self.parse_atom()
        while self.current.is_op("."):
            self._advance()
            attr = self._expect_ident("attribute name")
            value = Attribute(value=value, attr=attr.value, line=attr.line)
        return value

    def parse_atom(self) -> Expr:
        token = self.current
        if token.type is TokenType.IDENT:
            if self._peek().is_op("("):
                return self.parse_call()
            self._advance()
            return Name(id=token.value, line=token.line)
        if token.type is TokenType.STRING:
            self._advance()
            return Literal(value=token.value, line=token.line)
        if token.type is TokenType.NUMBER:
            self._advance()
            number = float(token.value) if "." in token.value else int(token.value)
            return Literal(value=number, line=token.line)
        if token.type is TokenType.DURATION:
            self._advance()
            return Literal(value=parse_duration(token.value), line=token.line)
        if token.is_op("{"):
            return self.parse_map()
        if token.is_op("("):
            self._advance()
            expr = self.parse_expr()
            self._expect_op(")")
            return expr
        raise self._error("expected an expression")

    def parse_call(self) -> Call:
        name = self._expect_ident("function name")
        self._expect_op("(")
        args: list[Expr] = []
        kwargs: list[KeywordArg] = []
        while not self.current.is_op(")"):
            if self.current.type is TokenType.IDENT and self._peek().is_op("="):
                key = self._advance().value
                self._advance()
                kwargs.append(KeywordArg(name=key, value=self.parse_expr()))
            else:
                if kwargs:
                    raise self._error("positional argument after keyword argument")
                args.append(self.parse_expr())
            if self.current.is_op(","):
                self._advance()
            elif not self.current.is_op(")"):
                raise self._error(f"expected ',' or ')' in call to {name.value}")
        self._expect_op(")")
        return Call(func=name.value, args=tuple(args), kwargs=tuple(kwargs), line=name.line)

    def parse_map(self) -> MapLiteral:
        start = self._expect_op("{")
        items: list[tuple[str, Expr]] = []
        self._skip_newlines()
        while not self.current.is_op("}"):
            if self.current.type not in (TokenType.IDENT, TokenType.STRING):
                raise self._error("expected map key")
            key = self._advance().value
            self._expect_op(":")
            items.append((key, self.parse_expr()))
            self._skip_newlines()
            if self.current.is_op(","):
                self._advance()
                self._skip_newlines()
            elif not self.current.is_op("}"):
                raise self._error("expected ',' or '}' in map")
        self._expect_op("}")
        return MapLiteral(items=tuple(items), line=start.line)


def parse(text: str) -> Script:
    """Validate and parse script text into a Script tree.

    Raises ScriptSyntaxError for any malformed input.
    """
    validate_script(text)
    return Parser(tokenize(text)).parse_script()
