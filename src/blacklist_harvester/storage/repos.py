"""Repository pattern implementations for data access.

This module provides data access for the denylist table and the per
(network, token) sync cursors.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, case, delete, func, or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from blacklist_harvester.models import BlacklistEvent
from blacklist_harvester.storage.models import BlacklistModel, SyncCursorModel

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Rows per INSERT statement. SQLite caps bound parameters per statement.
POSTGRES_BATCH_SIZE = 500
SQLITE_BATCH_SIZE = 90


@dataclass
class BlacklistRecordDTO:
    """Data transfer object for denylist records."""

    address: str
    token: str
    network: str
    is_blacklisted: bool
    block_number: int
    log_index: int
    transaction_hash: str
    event_timestamp: int
    first_seen: datetime | None = None
    last_updated: datetime | None = None

    @classmethod
    def from_model(cls, model: BlacklistModel) -> BlacklistRecordDTO:
        """Create DTO from SQLAlchemy model."""
        return cls(
            address=model.address,
            token=model.token,
            network=model.network,
            is_blacklisted=model.is_blacklisted,
            block_number=model.block_number,
            log_index=model.log_index,
            transaction_hash=model.transaction_hash,
            event_timestamp=model.event_timestamp,
            first_seen=model.first_seen,
            last_updated=model.last_updated,
        )


@dataclass
class SyncCursorDTO:
    """Data transfer object for sync cursors."""

    network: str
    token: str
    last_synced_position: int
    last_sync_time: datetime | None = None

    @classmethod
    def from_model(cls, model: SyncCursorModel) -> SyncCursorDTO:
        return cls(
            network=model.network,
            token=model.token,
            last_synced_position=model.last_synced_position,
            last_sync_time=model.last_sync_time,
        )


@dataclass
class DenylistStats:
    """Aggregate counts over the denylist table."""

    total_records: int = 0
    currently_blacklisted: int = 0
    # "NETWORK/TOKEN" -> {"blacklisted": n, "total": m}
    by_network_token: dict[str, dict[str, int]] = field(default_factory=dict)
    cursors: list[SyncCursorDTO] = field(default_factory=list)


def _event_values(event: BlacklistEvent) -> dict[str, Any]:
    return {
        "address": event.address,
        "token": event.token,
        "network": event.network.value,
        "is_blacklisted": event.is_blacklisted,
        "block_number": event.block_number,
        "log_index": event.log_index,
        "transaction_hash": event.transaction_hash,
        "event_timestamp": event.timestamp,
    }


class BlacklistRepository:
    """Repository for denylist records."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _dialect(self) -> str:
        return self.session.get_bind().dialect.name

    async def upsert_events(self, events: Sequence[BlacklistEvent]) -> int:
        """Write one row per event, never moving a key backwards in chain order.

        Callers must pass at most one event per key. A conflicting row is only
        updated when its stored (block_number, log_index) is at or before the
        incoming event's position.

        Returns:
            Number of rows submitted.
        """
        if not events:
            return 0

        now = datetime.now(UTC)
        rows = [{**_event_values(e), "first_seen": now, "last_updated": now} for e in events]

        if self._dialect() == "postgresql":
            insert_fn: Any = pg_insert
            batch_size = POSTGRES_BATCH_SIZE
        else:
            insert_fn = sqlite_insert
            batch_size = SQLITE_BATCH_SIZE

        for start in range(0, len(rows), batch_size):
            stmt = insert_fn(BlacklistModel).values(rows[start : start + batch_size])
            excluded = stmt.excluded
            not_older = or_(
                BlacklistModel.block_number < excluded.block_number,
                and_(
                    BlacklistModel.block_number == excluded.block_number,
                    BlacklistModel.log_index <= excluded.log_index,
                ),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["address", "token", "network"],
                set_={
                    "is_blacklisted": excluded.is_blacklisted,
                    "block_number": excluded.block_number,
                    "log_index": excluded.log_index,
                    "transaction_hash": excluded.transaction_hash,
                    "event_timestamp": excluded.event_timestamp,
                    "last_updated": excluded.last_updated,
                },
                where=not_older,
            )
            await self.session.execute(stmt)

        await self.session.flush()
        return len(rows)

    async def get(self, address: str, token: str, network: str) -> BlacklistRecordDTO | None:
        result = await self.session.execute(
            select(BlacklistModel).where(
                BlacklistModel.address == address,
                BlacklistModel.token == token,
                BlacklistModel.network == network,
            )
        )
        model = result.scalar_one_or_none()
        return BlacklistRecordDTO.from_model(model) if model else None

    async def find(
        self,
        addresses: Sequence[str],
        *,
        token: str | None = None,
        network: str | None = None,
    ) -> list[BlacklistRecordDTO]:
        """Return every record for the given canonical addresses."""
        if not addresses:
            return []
        stmt = select(BlacklistModel).where(BlacklistModel.address.in_(list(addresses)))
        if token is not None:
            stmt = stmt.where(BlacklistModel.token == token)
        if network is not None:
            stmt = stmt.where(BlacklistModel.network == network)
        stmt = stmt.order_by(BlacklistModel.network, BlacklistModel.token, BlacklistModel.address)
        result = await self.session.execute(stmt)
        return [BlacklistRecordDTO.from_model(m) for m in result.scalars().all()]

    async def list_blacklisted(
        self,
        *,
        network: str | None = None,
        token: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[BlacklistRecordDTO]:
        """List currently denylisted records, newest event first."""
        stmt = select(BlacklistModel).where(BlacklistModel.is_blacklisted.is_(True))
        if network is not None:
            stmt = stmt.where(BlacklistModel.network == network)
        if token is not None:
            stmt = stmt.where(BlacklistModel.token == token)
        stmt = stmt.order_by(
            BlacklistModel.block_number.desc(),
            BlacklistModel.log_index.desc(),
            BlacklistModel.address,
        )
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [BlacklistRecordDTO.from_model(m) for m in result.scalars().all()]

    async def list_recent(self, *, limit: int = 100) -> list[BlacklistRecordDTO]:
        """List the most recently written records regardless of status."""
        stmt = (
            select(BlacklistModel)
            .order_by(BlacklistModel.last_updated.desc(), BlacklistModel.block_number.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [BlacklistRecordDTO.from_model(m) for m in result.scalars().all()]

    async def count(self, *, blacklisted_only: bool = False) -> int:
        stmt = select(func.count()).select_from(BlacklistModel)
        if blacklisted_only:
            stmt = stmt.where(BlacklistModel.is_blacklisted.is_(True))
        result = await self.session.execute(stmt)
        return int(result.scalar_one())

    async def counts_by_network_token(self) -> dict[str, dict[str, int]]:
        """Blacklisted and total record counts for each (network, token)."""
        blacklisted = func.sum(case((BlacklistModel.is_blacklisted.is_(True), 1), else_=0))
        stmt = (
            select(BlacklistModel.network, BlacklistModel.token, blacklisted, func.count())
            .group_by(BlacklistModel.network, BlacklistModel.token)
            .order_by(BlacklistModel.network, BlacklistModel.token)
        )
        result = await self.session.execute(stmt)
        return {
            f"{network}/{token}": {"blacklisted": int(listed or 0), "total": int(total)}
            for network, token, listed, total in result.all()
        }

    async def delete_for(self, *, network: str, token: str) -> int:
        """Delete every record of a (network, token). Returns rows removed."""
        result = await self.session.execute(
            delete(BlacklistModel).where(
                BlacklistModel.network == network,
                BlacklistModel.token == token,
            )
        )
        await self.session.flush()
        return int(result.rowcount or 0)


class SyncCursorRepository:
    """Repository for backfill progress cursors."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, network: str, token: str) -> SyncCursorDTO | None:
        result = await self.session.execute(
            select(SyncCursorModel).where(
                SyncCursorModel.network == network,
                SyncCursorModel.token == token,
            )
        )
        model = result.scalar_one_or_none()
        return SyncCursorDTO.from_model(model) if model else None

    async def list_all(self) -> list[SyncCursorDTO]:
        result = await self.session.execute(
            select(SyncCursorModel).order_by(SyncCursorModel.network, SyncCursorModel.token)
        )
        return [SyncCursorDTO.from_model(m) for m in result.scalars().all()]

    async def set(self, network: str, token: str, position: int) -> None:
        """Record the last committed position (insert or overwrite)."""
        now = datetime.now(UTC)
        values = {
            "network": network,
            "token": token,
            "last_synced_position": position,
            "last_sync_time": now,
        }
        if self.session.get_bind().dialect.name == "postgresql":
            stmt: Any = pg_insert(SyncCursorModel).values(**values)
        else:
            stmt = sqlite_insert(SyncCursorModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["network", "token"],
            set_={
                "last_synced_position": stmt.excluded.last_synced_position,
                "last_sync_time": stmt.excluded.last_sync_time,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def delete(self, network: str, token: str) -> None:
        await self.session.execute(
            delete(SyncCursorModel).where(
                SyncCursorModel.network == network,
                SyncCursorModel.token == token,
            )
        )
        await self.session.flush()
