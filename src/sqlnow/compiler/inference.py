"""Type and name inference helpers shared by the schema builder and analyzer."""

from __future__ import annotations

import re

from sqlnow.core.types import PropertyNameGenerator

ANY_TYPE = "Any"

_AFFINITY_PROPERTY_TYPES = {
    "INTEGER": "int",
    "TEXT": "str",
    "BLOB": "bytes",
    "REAL": "float",
    "NUMERIC": "float",
}

_SQL_TYPE = re.compile(r"[A-Za-z][A-Za-z0-9_ ]*(\(\s*[+-]?\d+\s*(,\s*[+-]?\d+\s*)?\))?")
_WORD_SPLIT = re.compile(r"[^0-9A-Za-z]+")


def affinity(sql_type: str) -> str:
    """Return the SQLite column affinity of a declared type.

    Follows the engine's rules in order: INT, then CHAR/CLOB/TEXT, then
    BLOB (or no type), then REAL/FLOA/DOUB, else NUMERIC.
    """
    t = sql_type.upper()
    if "INT" in t:
        return "INTEGER"
    if "CHAR" in t or "CLOB" in t or "TEXT" in t:
        return "TEXT"
    if "BLOB" in t or not t.strip():
        return "BLOB"
    if "REAL" in t or "FLOA" in t or "DOUB" in t:
        return "REAL"
    return "NUMERIC"


def property_type_for(sql_type: str) -> str:
    """Map a declared SQL type to the default output property type."""
    t = sql_type.strip().upper()
    if not t:
        return ANY_TYPE
    if "BOOL" in t:
        return "bool"
    if "TIMESTAMP" in t or t.startswith("DATETIME"):
        return "datetime"
    if t == "DATE":
        return "date"
    return _AFFINITY_PROPERTY_TYPES[affinity(t)]


def is_valid_sql_type(sql_type: str) -> bool:
    """Check that a type hint looks like a SQL type name, e.g. ``VARCHAR(20)``."""
    return bool(_SQL_TYPE.fullmatch(sql_type.strip()))


def lower_camel_case(name: str) -> str:
    """``first_name`` -> ``firstName``; ``address__ID`` -> ``addressId``."""
    parts = [p for p in _WORD_SPLIT.split(name) if p]
    if not parts:
        return name
    head = parts[0].lower() if parts[0].isupper() else parts[0][0].lower() + parts[0][1:]
    tail = [p.capitalize() if p.isupper() else p[0].upper() + p[1:] for p in parts[1:]]
    return head + "".join(tail)


def property_name(label: str, generator: PropertyNameGenerator) -> str:
    """Derive an output property name from a column label."""
    if generator == PropertyNameGenerator.LOWER_CAMEL_CASE:
        return lower_camel_case(label)
    return label


def strip_prefix(label: str, prefix: str | None) -> str:
    """Remove an alias prefix (case-insensitive) from a label."""
    if prefix and label.lower().startswith(prefix.lower()) and len(label) > len(prefix):
        return label[len(prefix) :]
    return label
