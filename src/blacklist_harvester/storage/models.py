"""SQLAlchemy models for persistent storage.

Two tables: ``blacklist`` holds the current denylist state per
(address, token, network), and ``sync_cursor`` holds the last committed
position of each (network, token) backfill.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _utcnow() -> datetime:
    return datetime.now(UTC)


class BlacklistModel(Base):
    """Current denylist status of one address for one token on one network."""

    __tablename__ = "blacklist"

    address: Mapped[str] = mapped_column(String(64), primary_key=True)
    token: Mapped[str] = mapped_column(String(16), primary_key=True)
    network: Mapped[str] = mapped_column(String(16), primary_key=True)

    is_blacklisted: Mapped[bool] = mapped_column(Boolean, nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # Position inside the block; orders events that share a block.
    log_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    transaction_hash: Mapped[str] = mapped_column(String(80), nullable=False)
    # Chain time of the applied event, unix seconds.
    event_timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)

    first_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_blacklist_network_token", "network", "token"),
        Index("idx_blacklist_is_blacklisted", "is_blacklisted"),
        Index("idx_blacklist_last_updated", "last_updated"),
    )

    def __repr__(self) -> str:
        return (
            f"<BlacklistModel(address={self.address!r}, token={self.token!r}, "
            f"network={self.network!r}, is_blacklisted={self.is_blacklisted})>"
        )


class SyncCursorModel(Base):
    """Last durably committed backfill position for a (network, token)."""

    __tablename__ = "sync_cursor"

    network: Mapped[str] = mapped_column(String(16), primary_key=True)
    token: Mapped[str] = mapped_column(String(16), primary_key=True)
    last_synced_position: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_sync_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<SyncCursorModel(network={self.network!r}, token={self.token!r}, "
            f"position={self.last_synced_position})>"
        )
