"""Core types, configuration and the SQLite connection capability."""

from sqlnow.core.config import CompilerConfig, DatabaseConfig
from sqlnow.core.connection import DatabaseConnection
from sqlnow.core.types import (
    AnnotationBlock,
    CascadeNotify,
    ColumnSpec,
    CompiledDatabase,
    ForeignKeySpec,
    NamespaceModel,
    ParameterSpec,
    PropertyNameGenerator,
    QuerySpec,
    ResultColumn,
    ResultKind,
    ResultNode,
    StatementKind,
    TableSpec,
    TransactionMode,
)

__all__ = [
    "AnnotationBlock",
    "CascadeNotify",
    "ColumnSpec",
    "CompiledDatabase",
    "CompilerConfig",
    "DatabaseConfig",
    "DatabaseConnection",
    "ForeignKeySpec",
    "NamespaceModel",
    "ParameterSpec",
    "PropertyNameGenerator",
    "QuerySpec",
    "ResultColumn",
    "ResultKind",
    "ResultNode",
    "StatementKind",
    "TableSpec",
    "TransactionMode",
]
