"""Directive extraction from SQL comments.

A directive is a brace-delimited block introduced by ``@@`` inside a line or
block comment::

    -- @@{ field=birth_date, propertyType=date, notNull=true }
    /* @@{ dynamicField=addresses,
           mappingType=collection,
           propertyType=list,
           sourceTable=a,
           aliasPrefix=address__ } */

Values may be quoted strings, bare scalars, ``[lists]`` or nested ``{maps}``;
``key=value``, ``key: value`` and ``key { ... }`` are all accepted. Each block
is validated against a closed set of keys for the scope it binds to.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from sqlnow.compiler import lexer
from sqlnow.compiler.lexer import RawStatement, SourceText, Token
from sqlnow.core.types import AnnotationBlock, PropertyNameGenerator, SourceLocation
from sqlnow.exceptions import AnnotationError

logger = logging.getLogger(__name__)

DIRECTIVE_MARKER = "@@{"

_KEY = re.compile(r"[A-Za-z_][A-Za-z0-9_.\-]*")
_INT = re.compile(r"[+-]?\d+")
_FLOAT = re.compile(r"[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?")
_LEADING_STAR = re.compile(r"(?m)^([ \t]*)\*(?!/)")

TABLE_SCOPE = "table"
COLUMN_SCOPE = "column"
QUERY_SCOPE = "query"
RESULT_SHAPE_SCOPE = "result_shape"


# === Directive grammar ===


class _DirectiveSyntaxError(Exception):
    def __init__(self, message: str, offset: int) -> None:
        super().__init__(message)
        self.message = message
        self.offset = offset


class _BlockParser:
    """Recursive-descent parser for one ``{...}`` block."""

    def __init__(self, text: str, pos: int) -> None:
        self.text = text
        self.pos = pos

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def error(self, message: str) -> _DirectiveSyntaxError:
        return _DirectiveSyntaxError(message, self.pos)

    def skip_inline_space(self) -> None:
        while self.peek() in (" ", "\t", "\r") and self.peek():
            self.pos += 1

    def skip_separators(self) -> None:
        while self.peek() and (self.peek().isspace() or self.peek() == ","):
            self.pos += 1

    def parse_map(self) -> dict[str, Any]:
        opened = self.pos
        self.pos += 1  # '{'
        result: dict[str, Any] = {}
        while True:
            self.skip_separators()
            ch = self.peek()
            if not ch:
                raise _DirectiveSyntaxError("unbalanced braces: missing '}'", opened)
            if ch == "}":
                self.pos += 1
                return result
            key_pos = self.pos
            key = self.parse_key()
            self.skip_inline_space()
            ch = self.peek()
            if ch == "{":
                value: Any = self.parse_map()
            elif ch in ("=", ":"):
                self.pos += 1
                self.skip_inline_space()
                value = self.parse_value()
            else:
                raise self.error(f"expected '=' or ':' after key '{key}'")
            if key in result:
                raise _DirectiveSyntaxError(f"duplicate key '{key}'", key_pos)
            result[key] = value
            self.skip_inline_space()
            if self.peek() not in (",", "\n", "}", ""):
                raise self.error(f"unexpected character {self.peek()!r} after value of '{key}'")

    def parse_list(self) -> list[Any]:
        opened = self.pos
        self.pos += 1  # '['
        items: list[Any] = []
        while True:
            self.skip_separators()
            ch = self.peek()
            if not ch:
                raise _DirectiveSyntaxError("unbalanced brackets: missing ']'", opened)
            if ch == "]":
                self.pos += 1
                return items
            if ch == "}":
                raise self.error("unbalanced braces: '}' inside a list")
            items.append(self.parse_value())

    def parse_key(self) -> str:
        if self.peek() in ('"', "'"):
            return self.parse_string()
        m = _KEY.match(self.text, self.pos)
        if m is None:
            raise self.error(f"expected a key, found {self.peek()!r}")
        self.pos = m.end()
        return m.group()

    def parse_value(self) -> Any:
        ch = self.peek()
        if ch == "{":
            return self.parse_map()
        if ch == "[":
            return self.parse_list()
        if ch in ('"', "'"):
            return self.parse_string()
        return self.parse_scalar()

    def parse_string(self) -> str:
        quote = self.peek()
        start = self.pos
        self.pos += 1
        out: list[str] = []
        while True:
            ch = self.peek()
            if not ch or ch == "\n":
                raise _DirectiveSyntaxError("unterminated string", start)
            self.pos += 1
            if ch == "\\" and self.peek():
                out.append(self.peek())
                self.pos += 1
            elif ch == quote:
                return "".join(out)
            else:
                out.append(ch)

    def parse_scalar(self) -> Any:
        start = self.pos
        while self.peek() and self.peek() not in (",", "}", "]", "\n", "{", "["):
            self.pos += 1
        raw = self.text[start : self.pos].strip()
        if not raw:
            raise _DirectiveSyntaxError("missing value", start)
        if raw == "true":
            return True
        if raw == "false":
            return False
        if raw == "null":
            return None
        if _INT.fullmatch(raw):
            return int(raw)
        if _FLOAT.fullmatch(raw):
            return float(raw)
        return raw


def parse_directive(text: str) -> dict[str, Any]:
    """Parse the body of a directive starting at its opening brace.

    Args:
        text: Text beginning with ``{``

    Returns:
        The ordered key/value mapping

    Raises:
        AnnotationError: On malformed syntax
    """
    try:
        values, _ = _parse_at(text, 0)
    except _DirectiveSyntaxError as e:
        raise AnnotationError(f"{e.message} (offset {e.offset})") from None
    return values


def _parse_at(text: str, pos: int) -> tuple[dict[str, Any], int]:
    parser = _BlockParser(text, pos)
    values = parser.parse_map()
    # A stray closing brace right after the block is an unbalanced block too
    rest = text[parser.pos :].lstrip(" \t")
    if rest.startswith("}"):
        raise _DirectiveSyntaxError("unbalanced braces: unexpected '}'", parser.pos)
    return values, parser.pos


# === Scope models ===


class _DirectiveModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    SCOPE: ClassVar[str] = ""

    @classmethod
    def allowed_keys(cls) -> list[str]:
        return [f.alias or name for name, f in cls.model_fields.items()]

    @field_validator("default_value", mode="before", check_fields=False)
    @classmethod
    def _stringify_default(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)


class CascadeNotifyDirective(_DirectiveModel):
    """``cascadeNotify { delete = [...], update = [...] }``."""

    delete: list[str] = Field(default_factory=list)
    update: list[str] = Field(default_factory=list)

    @field_validator("delete", "update", mode="before")
    @classmethod
    def _single_table(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [value]
        return value


class TableDirectives(_DirectiveModel):
    """Directives placed before a CREATE TABLE statement."""

    SCOPE: ClassVar[str] = TABLE_SCOPE

    name: str | None = None
    property_name_generator: PropertyNameGenerator | None = Field(
        None, alias="propertyNameGenerator"
    )
    cascade_notify: CascadeNotifyDirective | None = Field(None, alias="cascadeNotify")


class ColumnDirectives(_DirectiveModel):
    """Directives for one column of a table, view or query projection."""

    SCOPE: ClassVar[str] = COLUMN_SCOPE

    field: str | None = None
    property_name: str | None = Field(None, alias="propertyName")
    property_type: str | None = Field(None, alias="propertyType")
    sql_type_hint: str | None = Field(None, alias="sqlTypeHint")
    not_null: bool | None = Field(None, alias="notNull")
    default_value: str | None = Field(None, alias="defaultValue")


class QueryDirectives(_DirectiveModel):
    """Directives placed before a query or CREATE VIEW statement."""

    SCOPE: ClassVar[str] = QUERY_SCOPE

    name: str | None = None
    property_name_generator: PropertyNameGenerator | None = Field(
        None, alias="propertyNameGenerator"
    )
    shared_result: str | None = Field(None, alias="sharedResult")
    query_result: str | None = Field(None, alias="queryResult")
    map_to: str | None = Field(None, alias="mapTo")
    collection_key: str | None = Field(None, alias="collectionKey")

    @model_validator(mode="after")
    def _one_result_name(self) -> QueryDirectives:
        if self.shared_result and self.query_result and self.shared_result != self.query_result:
            raise ValueError(
                f"sharedResult '{self.shared_result}' and queryResult '{self.query_result}' "
                f"name different results; use one of them"
            )
        return self

    @property
    def result_name(self) -> str | None:
        return self.shared_result or self.query_result


class DynamicFieldDirectives(_DirectiveModel):
    """An inline result-shaping block (``dynamicField=...``)."""

    SCOPE: ClassVar[str] = RESULT_SHAPE_SCOPE

    dynamic_field: str = Field(..., alias="dynamicField")
    mapping_type: Literal["entity", "perRow", "collection"] = Field(..., alias="mappingType")
    property_type: str = Field(..., alias="propertyType")
    source_table: str = Field(..., alias="sourceTable")
    alias_prefix: str = Field(..., alias="aliasPrefix")
    collection_key: str | None = Field(None, alias="collectionKey")
    not_null: bool | None = Field(None, alias="notNull")
    default_value: str | None = Field(None, alias="defaultValue")

    @model_validator(mode="after")
    def _collection_key_only_for_collections(self) -> DynamicFieldDirectives:
        if self.collection_key and self.mapping_type != "collection":
            raise ValueError("collectionKey is only valid with mappingType=collection")
        return self


SCOPE_MODELS: dict[str, type[_DirectiveModel]] = {
    TABLE_SCOPE: TableDirectives,
    COLUMN_SCOPE: ColumnDirectives,
    QUERY_SCOPE: QueryDirectives,
    RESULT_SHAPE_SCOPE: DynamicFieldDirectives,
}


# === Extraction ===


@dataclass
class StatementDirectives:
    """Directives found on one statement, grouped by scope."""

    statement: RawStatement
    table: TableDirectives | None = None
    query: QueryDirectives | None = None
    columns: dict[str, ColumnDirectives] = field(default_factory=dict)
    dynamic_fields: list[DynamicFieldDirectives] = field(default_factory=list)
    blocks: list[AnnotationBlock] = field(default_factory=list)

    def column(self, name: str) -> ColumnDirectives | None:
        """Column directives by field name (case-insensitive)."""
        lowered = name.lower()
        for key, value in self.columns.items():
            if key.lower() == lowered:
                return value
        return None

    def location_of(self, scope: str, target: str | None = None) -> SourceLocation | None:
        for block in self.blocks:
            if block.scope == scope and (target is None or block.target == target):
                return block.location
        return None


@dataclass
class _RawBlock:
    values: dict[str, Any]
    location: SourceLocation
    offset: int
    leading: bool


class AnnotationExtractor:
    """Finds directive blocks in a source file and binds them to constructs."""

    def __init__(self, text: str, source: str | None = None) -> None:
        self.text = text
        self.source = source
        self._positions = SourceText(text, source)

    def statements(self) -> list[StatementDirectives]:
        """Split the source into statements and extract each one's directives."""
        return [self.extract(stmt) for stmt in lexer.split_statements(self.text, self.source)]

    def extract(self, statement: RawStatement) -> StatementDirectives:
        """Bind every directive block around a statement to its scope.

        Raises:
            AnnotationError: On malformed blocks, unknown keys or bad placement
        """
        result = StatementDirectives(statement=statement)
        kind = _statement_class(statement)
        blocks = self._blocks(statement.leading, leading=True)
        blocks += self._blocks(
            [t for t in statement.tokens if t.kind in lexer.COMMENTS], leading=False
        )

        for block in blocks:
            if "dynamicField" in block.values and "field" in block.values:
                self._fail("a directive cannot declare both 'field' and 'dynamicField'", block)
            if "dynamicField" in block.values:
                if kind == "table":
                    self._fail("dynamicField is not allowed on CREATE TABLE", block)
                shape = self._validate(DynamicFieldDirectives, block)
                result.dynamic_fields.append(shape)
                self._record(result, RESULT_SHAPE_SCOPE, block, shape.dynamic_field)
            elif "field" in block.values:
                directives = self._validate(ColumnDirectives, block)
                self._merge_column(result, directives.field or "", directives, block)
            elif block.leading:
                if kind == "table":
                    table = self._validate(TableDirectives, block)
                    result.table = self._merge(result.table, table, block)
                    self._record(result, TABLE_SCOPE, block)
                elif kind in ("view", "query"):
                    query = self._validate(QueryDirectives, block)
                    result.query = self._merge(result.query, query, block)
                    self._record(result, QUERY_SCOPE, block)
                else:
                    self._fail(
                        f"directives are not supported on {' '.join(statement.keywords(2))}",
                        block,
                    )
            elif kind == "table":
                column = self._next_column_name(statement, block.offset)
                if column is None:
                    self._fail(
                        "column directive without 'field' must precede a column definition",
                        block,
                    )
                directives = self._validate(ColumnDirectives, block)
                self._merge_column(result, column, directives, block)
            else:
                self._fail(
                    "a directive inside a statement must declare 'field' or 'dynamicField'",
                    block,
                )
        return result

    # --- block discovery ---

    def _blocks(self, comments: list[Token], leading: bool) -> list[_RawBlock]:
        out: list[_RawBlock] = []
        for text, offsets in self._comment_groups(comments):
            start = 0
            while (index := text.find(DIRECTIVE_MARKER, start)) != -1:
                brace = index + 2
                try:
                    values, end = _parse_at(text, brace)
                except _DirectiveSyntaxError as e:
                    line, column = self._positions.position(_map_offset(offsets, e.offset))
                    raise AnnotationError(e.message, self.source, line, column) from None
                line, column = self._positions.position(_map_offset(offsets, index))
                location = SourceLocation(source=self.source, line=line, column=column)
                out.append(_RawBlock(values, location, _map_offset(offsets, index), leading))
                start = end
        return out

    def _comment_groups(self, comments: list[Token]) -> list[tuple[str, list[tuple[int, int]]]]:
        """Join consecutive line comments; block comments stand alone.

        Returns (text, offsets) pairs where offsets maps positions in the
        joined text back to the source as (text_offset, source_offset).
        """
        groups: list[tuple[str, list[tuple[int, int]]]] = []
        run: list[Token] = []

        def flush_run() -> None:
            if not run:
                return
            parts: list[str] = []
            offsets: list[tuple[int, int]] = []
            length = 0
            for token in run:
                body = token.text[2:]
                offsets.append((length, token.start + 2))
                parts.append(body)
                length += len(body) + 1
            groups.append(("\n".join(parts), offsets))
            run.clear()

        for token in comments:
            if token.kind == lexer.LINE_COMMENT:
                if run and not self._adjacent(run[-1], token):
                    flush_run()
                run.append(token)
            else:
                flush_run()
                body = _LEADING_STAR.sub(lambda m: m.group(1) + " ", token.text[2:-2])
                groups.append((body, [(0, token.start + 2)]))
        flush_run()
        return groups

    def _adjacent(self, previous: Token, token: Token) -> bool:
        between = self.text[previous.end : token.start]
        return between.strip() == "" and between.count("\n") <= 1

    # --- binding helpers ---

    def _next_column_name(self, statement: RawStatement, offset: int) -> str | None:
        depth = 0
        previous: Token | None = None
        for token in statement.tokens:
            if token.kind in lexer.COMMENTS or token.kind == lexer.WS:
                continue
            if token.start > offset and depth == 1 and previous is not None:
                if previous.text in ("(", ",") and token.kind in (lexer.WORD, lexer.IDENT):
                    if token.upper in ("CONSTRAINT", "PRIMARY", "FOREIGN", "UNIQUE", "CHECK"):
                        return None
                    return lexer.unquote_identifier(token.text)
            if token.text == "(":
                depth += 1
            elif token.text == ")":
                depth -= 1
            previous = token
        return None

    def _validate(self, model: type[_DirectiveModel], block: _RawBlock) -> Any:
        allowed = model.allowed_keys()
        for key in block.values:
            if key not in allowed:
                self._fail(
                    f"unknown key '{key}' for {model.SCOPE} directive. "
                    f"Allowed keys: {', '.join(allowed)}",
                    block,
                )
        try:
            return model.model_validate(block.values)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or model.SCOPE}: {err['msg']}"
                for err in e.errors()
            )
            raise AnnotationError(
                f"invalid {model.SCOPE} directive: {problems}",
                self.source,
                block.location.line,
                block.location.column,
            ) from e

    def _merge(self, existing: Any, new: Any, block: _RawBlock) -> Any:
        if existing is None:
            return new
        current = existing.model_dump(exclude_unset=True)
        for key, value in new.model_dump(exclude_unset=True).items():
            if key in current and not (key == "field" and current[key] == value):
                self._fail(f"key '{key}' is declared in more than one directive", block)
            current[key] = value
        return type(existing).model_validate(current)

    def _merge_column(
        self,
        result: StatementDirectives,
        name: str,
        directives: ColumnDirectives,
        block: _RawBlock,
    ) -> None:
        if directives.field is None:
            directives = directives.model_copy(update={"field": name})
        existing = result.column(name)
        merged = self._merge(existing, directives, block) if existing else directives
        for key in list(result.columns):
            if key.lower() == name.lower():
                del result.columns[key]
        result.columns[name] = merged
        self._record(result, COLUMN_SCOPE, block, name)
        logger.debug(f"Bound column directive to '{name}' at {block.location}")

    def _record(
        self,
        result: StatementDirectives,
        scope: str,
        block: _RawBlock,
        target: str | None = None,
    ) -> None:
        result.blocks.append(
            AnnotationBlock(
                scope=scope, values=block.values, location=block.location, target=target
            )
        )

    def _fail(self, message: str, block: _RawBlock) -> None:
        raise AnnotationError(message, self.source, block.location.line, block.location.column)


def _map_offset(offsets: list[tuple[int, int]], position: int) -> int:
    source_offset = offsets[0][1]
    for text_offset, src in offsets:
        if text_offset <= position:
            source_offset = src + (position - text_offset)
        else:
            break
    return source_offset


def _statement_class(statement: RawStatement) -> str:
    words = statement.keywords(4)
    if not words:
        return "other"
    if words[0] == "CREATE":
        rest = [w for w in words[1:] if w not in ("TEMP", "TEMPORARY", "VIRTUAL")]
        if rest and rest[0] == "TABLE":
            return "table"
        if rest and rest[0] == "VIEW":
            return "view"
        return "other"
    if words[0] in ("SELECT", "WITH", "INSERT", "UPDATE", "DELETE", "REPLACE", "VALUES"):
        return "query"
    return "other"
