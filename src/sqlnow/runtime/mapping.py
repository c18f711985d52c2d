"""Turn flat result rows into nested objects described by a ResultNode."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import date, datetime
from typing import Any

from sqlnow.core.types import ResultKind, ResultNode

Row = dict[str, Any]


def _decode_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "t", "yes", "y")
    return bool(value)


def _decode_datetime(value: Any) -> Any:
    if isinstance(value, str):
        return datetime.fromisoformat(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value)
    return value


def _decode_date(value: Any) -> Any:
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value


def _encode(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


class TypeAdapters:
    """Value conversion between Python objects and SQLite storage.

    Decoders are keyed by output property type (``bool``, ``date``,
    ``datetime`` are built in). Parameters are encoded before binding:
    ``bool`` to 0/1 and dates to ISO-8601 text.
    """

    def __init__(self) -> None:
        self._decoders: dict[str, Callable[[Any], Any]] = {
            "bool": _decode_bool,
            "date": _decode_date,
            "datetime": _decode_datetime,
        }
        self._encoders: list[tuple[type, Callable[[Any], Any]]] = []

    def register(
        self,
        property_type: str,
        decoder: Callable[[Any], Any],
        python_type: type | None = None,
        encoder: Callable[[Any], Any] | None = None,
    ) -> None:
        """Add or replace the conversion for a property type.

        Args:
            property_type: Property type name as it appears in compiled results
            decoder: Converts a stored (non-NULL) value
            python_type: Parameter values of this type are passed to ``encoder``
            encoder: Converts such a parameter to a storable value
        """
        self._decoders[property_type] = decoder
        if python_type is not None and encoder is not None:
            self._encoders.insert(0, (python_type, encoder))

    def decode(self, property_type: str, value: Any) -> Any:
        if value is None:
            return None
        decoder = self._decoders.get(property_type)
        return decoder(value) if decoder is not None else value

    def encode(self, value: Any) -> Any:
        if isinstance(value, (list, tuple, set, frozenset)):
            return [self.encode(v) for v in value]
        for python_type, encoder in self._encoders:
            if isinstance(value, python_type):
                return encoder(value)
        return _encode(value)


class RowMapper:
    """Applies one result tree to the rows of one statement."""

    def __init__(self, node: ResultNode, adapters: TypeAdapters | None = None) -> None:
        self.node = node
        self.adapters = adapters or TypeAdapters()
        self._grouped = _has_collections(node)
        self._identity = _identity_labels(node)

    def map_rows(self, rows: Sequence[Row]) -> list[Row]:
        """Map every row, merging rows of one parent when the tree has collections."""
        if not self._grouped:
            return [self._build(self.node, [row]) for row in rows]

        groups: dict[Any, list[Row]] = {}
        for row in rows:
            groups.setdefault(self._parent_identity(row), []).append(row)
        return [self._build(self.node, group) for group in groups.values()]

    def _parent_identity(self, row: Row) -> Any:
        if self.node.parent_key is not None:
            return row[self.node.parent_key]
        return tuple(row[label] for label in self._identity)

    def _build(self, node: ResultNode, rows: list[Row]) -> Row:
        first = rows[0]
        obj: Row = {}
        for column in node.columns:
            obj[column.property_name] = self.adapters.decode(
                column.property_type, first[column.label]
            )
        for child in node.children:
            obj[child.name or ""] = self._child(child, rows)
        return obj

    def _child(self, node: ResultNode, rows: list[Row]) -> Any:
        if node.kind == ResultKind.COLLECTION:
            key = node.grouping_key
            assert key is not None
            elements: dict[Any, list[Row]] = {}
            for row in rows:
                value = row[key]
                # Rows without a child (outer join misses) add no element
                if value is None:
                    continue
                elements.setdefault(value, []).append(row)
            return [self._build(node, group) for group in elements.values()]

        first = rows[0]
        if node.kind == ResultKind.PER_ROW and node.nullable:
            if all(first[label] is None for label in node.labels):
                return None
        return self._build(node, rows)


def _has_collections(node: ResultNode) -> bool:
    return any(c.kind == ResultKind.COLLECTION or _has_collections(c) for c in node.children)


def _identity_labels(node: ResultNode) -> list[str]:
    """Labels of every column outside collections; together they identify a parent row."""
    labels = [c.label for c in node.columns]
    for child in node.children:
        if child.kind != ResultKind.COLLECTION:
            labels.extend(_identity_labels(child))
    return labels
