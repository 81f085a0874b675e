"""Minimal SQL lexer for the single-SELECT statements the agent produces.

The lexer only has to understand enough PostgreSQL to tell code apart from
string literals, quoted identifiers, dollar-quoted bodies and comments, so
that keyword, placeholder and LIMIT checks never look inside them.
Concatenating the ``text`` of all tokens reproduces the input exactly.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class TokenKind(str, Enum):
    WORD = "word"
    NUMBER = "number"
    STRING = "string"
    QUOTED_IDENT = "quoted_ident"
    DOLLAR_STRING = "dollar_string"
    LINE_COMMENT = "line_comment"
    BLOCK_COMMENT = "block_comment"
    WHITESPACE = "whitespace"
    SEMICOLON = "semicolon"
    LPAREN = "lparen"
    RPAREN = "rparen"
    CAST = "cast"
    PARAM = "param"
    NAMED_PARAM = "named_param"
    QMARK = "qmark"
    OP = "op"


TRIVIA = frozenset({TokenKind.WHITESPACE, TokenKind.LINE_COMMENT, TokenKind.BLOCK_COMMENT})
PLACEHOLDERS = frozenset({TokenKind.PARAM, TokenKind.NAMED_PARAM, TokenKind.QMARK})

_WHITESPACE_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"[^\W\d][\w$]*")
_NUMBER_RE = re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_PARAM_RE = re.compile(r"\$\d+")
_NAMED_PARAM_RE = re.compile(r":[^\W\d]\w*")
_DOLLAR_TAG_RE = re.compile(r"\$(?:[^\W\d][\w]*)?\$")


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    start: int
    terminated: bool = True

    @property
    def end(self) -> int:
        return self.start + len(self.text)

    @property
    def upper(self) -> str:
        return self.text.upper()

    @property
    def is_trivia(self) -> bool:
        return self.kind in TRIVIA

    def is_word(self, *words: str) -> bool:
        return self.kind is TokenKind.WORD and self.upper in words

    @property
    def identifier(self) -> str | None:
        """Lower-cased name for words and quoted identifiers."""
        if self.kind is TokenKind.WORD:
            return self.text.lower()
        if self.kind is TokenKind.QUOTED_IDENT:
            return self.text.strip('"').replace('""', '"').lower()
        return None

    @property
    def string_value(self) -> str | None:
        """Unquoted content of a plain or escape string literal."""
        if self.kind is not TokenKind.STRING or not self.terminated:
            return None
        body = self.text
        if body[:1] in "eE":
            body = body[1:]
        return body[1:-1].replace("''", "'")


def _scan_quoted(sql: str, start: int, quote: str, backslash_escapes: bool = False) -> tuple[int, bool]:
    """Return (end, terminated) for a quoted run opening at ``start``."""
    i = start + 1
    length = len(sql)
    while i < length:
        ch = sql[i]
        if backslash_escapes and ch == "\\":
            i += 2
            continue
        if ch == quote:
            if i + 1 < length and sql[i + 1] == quote:
                i += 2
                continue
            return i + 1, True
        i += 1
    return length, False


def _scan_block_comment(sql: str, start: int) -> tuple[int, bool]:
    # PostgreSQL block comments nest.
    depth = 0
    i = start
    length = len(sql)
    while i < length:
        if sql.startswith("/*", i):
            depth += 1
            i += 2
        elif sql.startswith("*/", i):
            depth -= 1
            i += 2
            if depth == 0:
                return i, True
        else:
            i += 1
    return length, False


def tokenize(sql: str) -> list[Token]:
    """Split ``sql`` into tokens, trivia included."""
    tokens: list[Token] = []
    i = 0
    length = len(sql)

    def emit(kind: TokenKind, end: int, terminated: bool = True) -> int:
        tokens.append(Token(kind, sql[i:end], i, terminated))
        return end

    while i < length:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < length else ""

        if ch.isspace():
            i = emit(TokenKind.WHITESPACE, _WHITESPACE_RE.match(sql, i).end())
        elif ch == "-" and nxt == "-":
            newline = sql.find("\n", i)
            i = emit(TokenKind.LINE_COMMENT, length if newline == -1 else newline)
        elif ch == "/" and nxt == "*":
            end, ok = _scan_block_comment(sql, i)
            i = emit(TokenKind.BLOCK_COMMENT, end, ok)
        elif ch in "eE" and nxt == "'":
            end, ok = _scan_quoted(sql, i + 1, "'", backslash_escapes=True)
            i = emit(TokenKind.STRING, end, ok)
        elif ch == "'":
            end, ok = _scan_quoted(sql, i, "'")
            i = emit(TokenKind.STRING, end, ok)
        elif ch == '"':
            end, ok = _scan_quoted(sql, i, '"')
            i = emit(TokenKind.QUOTED_IDENT, end, ok)
        elif ch == "$":
            param = _PARAM_RE.match(sql, i)
            tag = _DOLLAR_TAG_RE.match(sql, i)
            if param:
                i = emit(TokenKind.PARAM, param.end())
            elif tag:
                close = sql.find(tag.group(), tag.end())
                if close == -1:
                    i = emit(TokenKind.DOLLAR_STRING, length, False)
                else:
                    i = emit(TokenKind.DOLLAR_STRING, close + len(tag.group()))
            else:
                i = emit(TokenKind.OP, i + 1)
        elif ch == ":":
            named = _NAMED_PARAM_RE.match(sql, i)
            if nxt == ":":
                i = emit(TokenKind.CAST, i + 2)
            elif named:
                i = emit(TokenKind.NAMED_PARAM, named.end())
            else:
                i = emit(TokenKind.OP, i + 1)
        elif ch == "?":
            i = emit(TokenKind.QMARK, i + 1)
        elif ch == ";":
            i = emit(TokenKind.SEMICOLON, i + 1)
        elif ch == "(":
            i = emit(TokenKind.LPAREN, i + 1)
        elif ch == ")":
            i = emit(TokenKind.RPAREN, i + 1)
        elif ch.isdigit() or (ch == "." and nxt.isdigit()):
            i = emit(TokenKind.NUMBER, _NUMBER_RE.match(sql, i).end())
        elif ch.isalpha() or ch == "_":
            i = emit(TokenKind.WORD, _WORD_RE.match(sql, i).end())
        else:
            i = emit(TokenKind.OP, i + 1)

    return tokens


def significant(tokens: list[Token]) -> list[Token]:
    """Tokens that are not whitespace or comments."""
    return [token for token in tokens if not token.is_trivia]


def render(tokens: list[Token]) -> str:
    return "".join(token.text for token in tokens)
