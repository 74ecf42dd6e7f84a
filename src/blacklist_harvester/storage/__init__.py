"""Storage layer - Database schemas, repositories and the denylist store."""

from blacklist_harvester.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from blacklist_harvester.storage.models import Base, BlacklistModel, SyncCursorModel
from blacklist_harvester.storage.repos import (
    BlacklistRecordDTO,
    BlacklistRepository,
    DenylistStats,
    SyncCursorDTO,
    SyncCursorRepository,
)
from blacklist_harvester.storage.store import DenylistStore, reduce_events

__all__ = [
    "Base",
    "BlacklistModel",
    "BlacklistRecordDTO",
    "BlacklistRepository",
    "DatabaseManager",
    "DenylistStats",
    "DenylistStore",
    "SyncCursorDTO",
    "SyncCursorModel",
    "SyncCursorRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
    "reduce_events",
]
