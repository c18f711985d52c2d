"""CLI context: source directory resolution and the shared compiler."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from sqlnow.compiler import SqlCompiler
from sqlnow.core.config import CompilerConfig
from sqlnow.core.types import CompiledDatabase, PropertyNameGenerator

SQL_DIR_ENV = "SQLNOW_SQL_DIR"


def get_sql_dir(path: str | None) -> Path:
    """Resolve the SQL source directory from a CLI argument, environment variable, or default.

    Priority:
    1. Explicit path argument
    2. SQLNOW_SQL_DIR environment variable
    3. Default: ./sql
    """
    if path:
        return Path(path)
    if env_dir := os.getenv(SQL_DIR_ENV):
        return Path(env_dir)
    return Path("sql")


@dataclass
class CLIContext:
    """Shared context for CLI commands.

    Holds output preferences and compiles each source directory at most once.
    """

    json_output: bool
    property_names: PropertyNameGenerator = PropertyNameGenerator.PLAIN
    strict_types: bool = True
    _compiled: dict[Path, CompiledDatabase] = field(default_factory=dict, init=False, repr=False)

    @property
    def config(self) -> CompilerConfig:
        return CompilerConfig(
            property_name_generator=self.property_names, strict_types=self.strict_types
        )

    def compile(self, root: str | None, name: str | None = None) -> CompiledDatabase:
        """Compile a source directory (lazily, once per directory).

        Returns:
            The compiled database
        """
        path = get_sql_dir(root).resolve()
        if path not in self._compiled:
            self._compiled[path] = SqlCompiler(self.config).compile(path, name=name)
        return self._compiled[path]
