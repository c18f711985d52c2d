"""Compiler from annotated SQL sources to typed schema and query models."""

from sqlnow.compiler.analyzer import QueryAnalyzer, SchemaCatalog
from sqlnow.compiler.compiler import SqlCompiler
from sqlnow.compiler.dependencies import DependencyExtractor, DependencyGraph
from sqlnow.compiler.directives import AnnotationExtractor, parse_directive
from sqlnow.compiler.schema import SchemaModel, SchemaModelBuilder
from sqlnow.compiler.shapes import ResultShapeResolver, SharedResultRegistry

__all__ = [
    "AnnotationExtractor",
    "DependencyExtractor",
    "DependencyGraph",
    "QueryAnalyzer",
    "ResultShapeResolver",
    "SchemaCatalog",
    "SchemaModel",
    "SchemaModelBuilder",
    "SharedResultRegistry",
    "SqlCompiler",
    "parse_directive",
]
