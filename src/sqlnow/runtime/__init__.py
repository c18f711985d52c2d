"""Runtime: serialized execution, live queries and snapshot persistence."""

from sqlnow.runtime.coordinator import MutationCycle, TransactionCoordinator, TransactionState
from sqlnow.runtime.database import QueryRunner, SqlNowDatabase
from sqlnow.runtime.mapping import RowMapper, TypeAdapters
from sqlnow.runtime.migrations import migrate
from sqlnow.runtime.persistence import (
    DatabaseSnapshotStore,
    FileSnapshotStore,
    MemorySnapshotStore,
    NoopPersistenceController,
    PersistenceController,
    SnapshotStore,
)
from sqlnow.runtime.subscriptions import (
    LiveQueryRegistration,
    ReactiveSubscriptionManager,
    Subscription,
)

__all__ = [
    "DatabaseSnapshotStore",
    "FileSnapshotStore",
    "LiveQueryRegistration",
    "MemorySnapshotStore",
    "MutationCycle",
    "NoopPersistenceController",
    "PersistenceController",
    "QueryRunner",
    "ReactiveSubscriptionManager",
    "RowMapper",
    "SnapshotStore",
    "SqlNowDatabase",
    "Subscription",
    "TransactionCoordinator",
    "TransactionState",
    "TypeAdapters",
    "migrate",
]
