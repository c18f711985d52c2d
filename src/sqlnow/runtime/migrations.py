"""Schema bootstrap and numbered migrations, tracked in ``PRAGMA user_version``.

A brand-new database is marked with version -1. At -1 the schema and init
statements run and the version jumps to the latest migration number. Any
other version gets each newer migration applied in its own transaction.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import inspect

from sqlnow.core.types import TransactionMode
from sqlnow.exceptions import MigrationError

if TYPE_CHECKING:
    from sqlalchemy import Connection

    from sqlnow.core.types import CompiledDatabase
    from sqlnow.runtime.coordinator import TransactionCoordinator

logger = logging.getLogger(__name__)

FRESH_VERSION = -1


def get_user_version(conn: Connection) -> int:
    """Get the schema version stored in the database header."""
    return int(conn.exec_driver_sql("PRAGMA user_version").scalar() or 0)


def set_user_version(conn: Connection, version: int) -> None:
    """Set the schema version stored in the database header."""
    conn.exec_driver_sql(f"PRAGMA user_version = {int(version)}")


def has_user_tables(conn: Connection) -> bool:
    """Check if the database already holds tables or views of its own."""
    inspector = inspect(conn)
    return bool(inspector.get_table_names() or inspector.get_view_names())


async def _run_statements(
    coordinator: TransactionCoordinator,
    statements: list[str],
    version: int,
    description: str,
) -> None:
    async with coordinator.transaction(TransactionMode.IMMEDIATE):
        for sql in statements:
            try:
                await coordinator.run(lambda c, s=sql: c.exec_driver_sql(s), mutating=True)
            except Exception as e:
                raise MigrationError(
                    f"{description} failed on statement:\n{sql}\n{e}", version
                ) from e
        await coordinator.run(lambda c: set_user_version(c, version), mutating=True)


async def migrate(
    coordinator: TransactionCoordinator,
    compiled: CompiledDatabase,
    restored: bool = False,
) -> list[str]:
    """Bring the database up to the latest compiled version.

    Args:
        coordinator: Owner of the connection
        compiled: Compiler output holding schema, init and migration statements
        restored: Whether the database was just loaded from a snapshot

    Returns:
        Descriptions of what was applied, e.g. ``["v2: add_email"]``

    Raises:
        MigrationError: If any statement fails; that step is rolled back
    """
    current = await coordinator.run(get_user_version)
    if current == 0 and not restored and not await coordinator.run(has_user_tables):
        await coordinator.run(lambda c: set_user_version(c, FRESH_VERSION), mutating=True)
        current = FRESH_VERSION

    latest = compiled.latest_version
    logger.info(f"Current schema version: {current}, target: {latest}")
    applied: list[str] = []

    if current == FRESH_VERSION:
        statements = compiled.schema_statements + compiled.init_statements
        await _run_statements(coordinator, statements, latest, "Schema creation")
        applied.append(f"v{latest}: schema created")
        logger.info(f"Created schema for '{compiled.name}' at version {latest}")
        return applied

    for spec in sorted(compiled.migrations, key=lambda m: m.version):
        if spec.version <= current:
            continue
        description = spec.description or f"migration {spec.version}"
        logger.info(f"Applying migration {spec.version}: {description}")
        try:
            await _run_statements(
                coordinator, spec.statements, spec.version, f"Migration {spec.version}"
            )
        except MigrationError:
            logger.error(f"Migration {spec.version} failed")
            raise
        except Exception as e:
            logger.error(f"Migration {spec.version} failed: {e}")
            raise MigrationError(f"Migration {spec.version} failed: {e}", spec.version) from e
        applied.append(f"v{spec.version}: {description}")
        logger.info(f"Migration {spec.version} applied successfully")
    return applied
