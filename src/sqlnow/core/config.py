"""Configuration models for the compiler and the runtime."""

from __future__ import annotations

from pydantic import BaseModel, Field

from sqlnow.core.types import PropertyNameGenerator, TransactionMode


class CompilerConfig(BaseModel):
    """Options for :class:`sqlnow.compiler.SqlCompiler`."""

    property_name_generator: PropertyNameGenerator = Field(
        PropertyNameGenerator.PLAIN,
        description="Default for statements that do not set propertyNameGenerator",
    )
    strict_types: bool = Field(
        True,
        description="Raise TypeInferenceError for unresolvable column references "
        "instead of falling back to a loosely typed column",
    )


class DatabaseConfig(BaseModel):
    """Options for :class:`sqlnow.runtime.SqlNowDatabase`."""

    url: str = Field("sqlite://", description="SQLAlchemy URL; the default is in-memory")
    auto_flush: bool = Field(
        True,
        description="Snapshot after every non-transactional write and outermost commit",
    )
    echo: bool = Field(False, description="Echo SQL statements (for debugging)")
    default_transaction_mode: TransactionMode = TransactionMode.DEFERRED
    notifications_enabled: bool = True
    run_migrations: bool = True

    @property
    def is_memory(self) -> bool:
        """True when the engine cannot persist on its own."""
        url = self.url.split("?", 1)[0]
        return url in ("sqlite://", "sqlite:///:memory:") or url.endswith(":memory:")
