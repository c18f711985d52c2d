"""Lexical scanning of SQL source files.

Only what the compiler needs before handing statements to the SQL parser:
comment blocks (where directives live), statement boundaries and ``:name``
parameter placeholders, all while respecting string literals and quoted
identifiers.
"""

from __future__ import annotations

import bisect
import re
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlnow.exceptions import SchemaError

_WORD = re.compile(r"[A-Za-z_][A-Za-z0-9_$]*")
_NUMBER = re.compile(r"(?:\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?|0[xX][0-9a-fA-F]+)")
_PARAM = re.compile(r":([A-Za-z_][A-Za-z0-9_]*)")
_WS = re.compile(r"\s+")

WS = "ws"
LINE_COMMENT = "line_comment"
BLOCK_COMMENT = "block_comment"
STRING = "string"
IDENT = "ident"
PARAM = "param"
WORD = "word"
NUMBER = "number"
PUNCT = "punct"
SEMICOLON = "semicolon"

COMMENTS = (LINE_COMMENT, BLOCK_COMMENT)


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    start: int
    end: int

    @property
    def upper(self) -> str:
        return self.text.upper()

    @property
    def param_name(self) -> str:
        return self.text[1:]


@dataclass
class RawStatement:
    """One statement as written, with the comments that precede it."""

    tokens: list[Token]
    source: str | None = None
    text: str = ""
    start: int = 0
    line: int = 1
    leading: list[Token] = field(default_factory=list)

    @property
    def body_tokens(self) -> list[Token]:
        """Tokens from the first keyword on, without trailing semicolon."""
        return [t for t in self.tokens if t.kind != SEMICOLON]

    @property
    def code(self) -> str:
        """Statement text without comments and surrounding whitespace."""
        return render(self.body_tokens, keep_comments=False).strip()

    def keywords(self, count: int = 3) -> list[str]:
        words = [t.upper for t in self.tokens if t.kind == WORD]
        return words[:count]


class SourceText:
    """Maps character offsets of one source to line/column positions."""

    def __init__(self, text: str, source: str | None = None) -> None:
        self.text = text
        self.source = source
        self._line_starts = [0] + [m.end() for m in re.finditer(r"\n", text)]

    def position(self, offset: int) -> tuple[int, int]:
        """Return the 1-based (line, column) of an offset."""
        index = bisect.bisect_right(self._line_starts, offset) - 1
        return index + 1, offset - self._line_starts[index] + 1


def tokenize(text: str, source: str | None = None) -> list[Token]:
    """Split SQL text into tokens.

    Raises:
        SchemaError: On an unterminated string, identifier or block comment
    """
    tokens: list[Token] = []
    pos = 0
    length = len(text)
    while pos < length:
        ch = text[pos]
        nxt = text[pos + 1] if pos + 1 < length else ""

        if ch.isspace():
            m = _WS.match(text, pos)
            assert m is not None
            tokens.append(Token(WS, m.group(), pos, m.end()))
            pos = m.end()
        elif ch == "-" and nxt == "-":
            end = text.find("\n", pos)
            end = length if end == -1 else end
            tokens.append(Token(LINE_COMMENT, text[pos:end], pos, end))
            pos = end
        elif ch == "/" and nxt == "*":
            end = text.find("*/", pos + 2)
            if end == -1:
                _unterminated("block comment", text, pos, source)
            tokens.append(Token(BLOCK_COMMENT, text[pos : end + 2], pos, end + 2))
            pos = end + 2
        elif ch in "'\"`":
            end = _quoted_end(text, pos, ch)
            if end == -1:
                _unterminated("string" if ch == "'" else "quoted identifier", text, pos, source)
            kind = STRING if ch == "'" else IDENT
            tokens.append(Token(kind, text[pos:end], pos, end))
            pos = end
        elif ch == "[":
            end = text.find("]", pos)
            if end == -1:
                _unterminated("quoted identifier", text, pos, source)
            tokens.append(Token(IDENT, text[pos : end + 1], pos, end + 1))
            pos = end + 1
        elif ch == ":" and (m := _PARAM.match(text, pos)):
            tokens.append(Token(PARAM, m.group(), pos, m.end()))
            pos = m.end()
        elif ch == ";":
            tokens.append(Token(SEMICOLON, ch, pos, pos + 1))
            pos += 1
        elif (m := _WORD.match(text, pos)) is not None:
            tokens.append(Token(WORD, m.group(), pos, m.end()))
            pos = m.end()
        elif (ch.isdigit() or (ch == "." and nxt.isdigit())) and (m := _NUMBER.match(text, pos)):
            tokens.append(Token(NUMBER, m.group(), pos, m.end()))
            pos = m.end()
        else:
            tokens.append(Token(PUNCT, ch, pos, pos + 1))
            pos += 1
    return tokens


def _quoted_end(text: str, pos: int, quote: str) -> int:
    # A doubled quote character escapes itself
    i = pos + 1
    while True:
        i = text.find(quote, i)
        if i == -1:
            return -1
        if i + 1 < len(text) and text[i + 1] == quote:
            i += 2
            continue
        return i + 1


def _unterminated(what: str, text: str, pos: int, source: str | None) -> None:
    line, column = SourceText(text, source).position(pos)
    raise SchemaError(f"{source or '<string>'}:{line}:{column}: unterminated {what}")


def split_statements(text: str, source: str | None = None) -> list[RawStatement]:
    """Split a source file into statements on top-level semicolons.

    Comments before a statement travel with it (``leading``). Trigger bodies
    (``CREATE TRIGGER ... BEGIN ... END``) are kept whole. Trailing comments
    after the last statement are dropped.
    """
    statements: list[RawStatement] = []
    pending: list[Token] = []
    current: list[Token] = []
    in_trigger = False
    depth = 0

    def finish() -> None:
        nonlocal current, pending, in_trigger, depth
        if current:
            start = current[0].start
            end = current[-1].end
            statements.append(
                RawStatement(
                    tokens=current,
                    source=source,
                    text=text[start:end],
                    start=start,
                    line=text.count("\n", 0, start) + 1,
                    leading=[t for t in pending if t.kind in COMMENTS],
                )
            )
        current = []
        pending = []
        in_trigger = False
        depth = 0

    for token in tokenize(text, source):
        if not current:
            if token.kind in COMMENTS or token.kind == WS:
                pending.append(token)
                continue
            if token.kind == SEMICOLON:
                pending = []
                continue
        current.append(token)

        if token.kind == WORD:
            word = token.upper
            if not in_trigger and word == "TRIGGER" and _first_word(current) == "CREATE":
                in_trigger = True
            elif in_trigger and word in ("BEGIN", "CASE"):
                depth += 1
            elif in_trigger and word == "END" and depth > 0:
                depth -= 1
        elif token.kind == SEMICOLON and not (in_trigger and depth > 0):
            finish()

    if any(t.kind not in COMMENTS and t.kind != WS for t in current):
        finish()
    return statements


def _first_word(tokens: list[Token]) -> str | None:
    for token in tokens:
        if token.kind == WORD:
            return token.upper
    return None


def render(
    tokens: list[Token],
    keep_comments: bool = True,
    replace_param: Callable[[Token, Token | None], str] | None = None,
) -> str:
    """Reassemble tokens into text.

    Args:
        tokens: Tokens to join
        keep_comments: When False, comments are replaced by a single space
        replace_param: Optional callback ``(param_token, previous_word) -> text``

    Returns:
        The reassembled SQL
    """
    parts: list[str] = []
    previous: Token | None = None
    for token in tokens:
        if token.kind in COMMENTS and not keep_comments:
            parts.append(" " if token.kind == BLOCK_COMMENT else "")
            continue
        if token.kind == PARAM and replace_param is not None:
            parts.append(replace_param(token, previous))
        else:
            parts.append(token.text)
        if token.kind not in (WS, LINE_COMMENT, BLOCK_COMMENT):
            previous = token
    return "".join(parts)


def strip_comments(text: str) -> str:
    """Return SQL text with all comments removed."""
    return render(tokenize(text), keep_comments=False).strip()


def parameter_names(text: str) -> list[str]:
    """Return ``:name`` parameters in order of first appearance."""
    seen: dict[str, None] = {}
    for token in tokenize(text):
        if token.kind == PARAM:
            seen.setdefault(token.param_name, None)
    return list(seen)


def unquote_identifier(name: str) -> str:
    """Strip SQL identifier quoting (``"x"``, `` `x` ``, ``[x]``)."""
    if len(name) >= 2 and name[0] == name[-1] and name[0] in "\"`":
        return name[1:-1].replace(name[0] * 2, name[0])
    if len(name) >= 2 and name[0] == "[" and name[-1] == "]":
        return name[1:-1]
    return name
