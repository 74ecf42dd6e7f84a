"""Pytest configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from blacklist_harvester.models import BlacklistEvent, Direction, Network
from blacklist_harvester.storage.database import DatabaseManager
from blacklist_harvester.storage.store import DenylistStore

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20


@pytest.fixture
async def db(tmp_path) -> DatabaseManager:
    """File-backed SQLite database with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'blacklist.db'}")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()


@pytest.fixture
def store(db: DatabaseManager) -> DenylistStore:
    return DenylistStore(db)


@pytest.fixture
def make_event() -> Callable[..., BlacklistEvent]:
    """Factory for Ethereum USDT events with overridable fields."""

    def _make(
        block_number: int,
        direction: Direction = Direction.ADD,
        *,
        address: str = ALICE,
        token: str = "USDT",
        network: Network = Network.ETHEREUM,
        log_index: int = 0,
    ) -> BlacklistEvent:
        return BlacklistEvent(
            address=address,
            token=token,
            network=network,
            direction=direction,
            block_number=block_number,
            transaction_hash="0x" + f"{block_number:064x}",
            timestamp=1_600_000_000 + block_number * 12,
            log_index=log_index,
        )

    return _make
