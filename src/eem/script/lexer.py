"""Tokenizer for pipeline scripts."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from eem.core.errors import ScriptSyntaxError


class TokenType(str, Enum):
    IDENT = "IDENT"
    STRING = "STRING"
    NUMBER = "NUMBER"
    DURATION = "DURATION"
    OP = "OP"
    NEWLINE = "NEWLINE"
    EOF = "EOF"


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: str
    line: int
    column: int

    def is_op(self, *ops: str) -> bool:
        return self.type is TokenType.OP and self.value in ops

    def is_ident(self, *names: str) -> bool:
        return self.type is TokenType.IDENT and (not names or self.value in names)


# Order matters: two-character operators before their one-character prefixes,
# durations before plain numbers.
_TOKEN_SPEC = [
    ("COMMENT", r"(?:#|//)[^\n]*"),
    ("NEWLINE", r"\r?\n"),
    ("SKIP", r"[ \t\r]+"),
    ("STRING", r'"(?:[^"\\\n]|\\.)*"'),
    ("DURATION", r"\d+(?:\.\d+)?[smhd](?![A-Za-z0-9_])"),
    ("NUMBER", r"\d+(?:\.\d+)?"),
    ("IDENT", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("OP", r">=|<=|==|!=|[=|(){},.:><+\-]"),
]
_MASTER_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\"}


def _unescape(body: str) -> str:
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def tokenize(text: str) -> list[Token]:
    """Split script text into tokens, ending with a single EOF token.

    Comments and horizontal whitespace are dropped. Consecutive newlines
    collapse into one NEWLINE token.
    """
    tokens: list[Token] = []
    line = 1
    line_start = 0
    pos = 0
    while pos < len(text):
        match = _MASTER_RE.match(text, pos)
        if match is None:
            if text[pos] == '"':
                raise ScriptSyntaxError("unterminated string literal", line)
            raise ScriptSyntaxError(f"unexpected character {text[pos]!r}", line)
        kind = match.lastgroup
        value = match.group()
        column = pos - line_start + 1
        pos = match.end()

        if kind == "NEWLINE":
            if tokens and tokens[-1].type is not TokenType.NEWLINE:
                tokens.append(Token(TokenType.NEWLINE, "\n", line, column))
            line += 1
            line_start = pos
        elif kind in ("SKIP", "COMMENT"):
            continue
        elif kind == "STRING":
            tokens.append(Token(TokenType.STRING, _unescape(value[1:-1]), line, column))
        else:
            tokens.append(Token(TokenType[kind], value, line, column))

    tokens.append(Token(TokenType.EOF, "", line, pos - line_start + 1))
    return tokens
