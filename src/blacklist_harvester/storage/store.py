"""Denylist store: the write path and read contracts over the database.

``DenylistStore`` is the single handle the sync engine and the query
surfaces share. It is constructed around a ``DatabaseManager`` and passed
explicitly to whoever needs it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

from blacklist_harvester.models import (
    ETH_ADDRESS_HEX_LEN,
    TRON_ADDRESS_PREFIX,
    BlacklistEvent,
    Network,
    canonical_address,
    lookup_address,
)
from blacklist_harvester.storage.repos import (
    BlacklistRecordDTO,
    BlacklistRepository,
    DenylistStats,
    SyncCursorRepository,
)

if TYPE_CHECKING:
    from blacklist_harvester.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

MAX_LOOKUP_ADDRESSES = 100


def reduce_events(events: Iterable[BlacklistEvent]) -> list[BlacklistEvent]:
    """Collapse a batch to the last event per key in chain order.

    Events are ordered by (block_number, log_index); ties keep their input
    order, so of two events at the same position the later one wins.
    """
    latest: dict[tuple[str, str, str], BlacklistEvent] = {}
    for event in sorted(events, key=lambda e: e.position):
        latest[event.key] = event
    return list(latest.values())


def _candidate_addresses(address: str, network: Network | None) -> list[str]:
    if network is not None:
        return [canonical_address(address, network)]
    primary = lookup_address(address)
    candidates = [primary]
    body = primary[2:] if primary.startswith("0x") else ""
    if len(body) == ETH_ADDRESS_HEX_LEN:
        candidates.append(TRON_ADDRESS_PREFIX + body)
    return candidates


class DenylistStore:
    """Persistent denylist state plus backfill progress.

    Example:
        ```python
        db = DatabaseManager("sqlite+aiosqlite:///./data/blacklist.db")
        store = DenylistStore(db)
        await store.apply_window(events, Network.ETHEREUM, "USDT", cursor=18_000_000)
        records = await store.lookup("0xabc...")
        ```
    """

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def upsert(self, events: Iterable[BlacklistEvent]) -> int:
        """Apply events idempotently. Returns the number of keys written."""
        reduced = reduce_events(events)
        if not reduced:
            return 0
        async with self._db.get_async_session() as session:
            return await BlacklistRepository(session).upsert_events(reduced)

    async def apply_window(
        self,
        events: Iterable[BlacklistEvent],
        network: Network,
        token: str,
        cursor: int,
    ) -> int:
        """Upsert a window's events and advance the cursor in one transaction."""
        reduced = reduce_events(events)
        async with self._db.get_async_session() as session:
            written = await BlacklistRepository(session).upsert_events(reduced)
            await SyncCursorRepository(session).set(Network(network).value, token, cursor)
        return written

    async def get_cursor(self, network: Network, token: str) -> int | None:
        async with self._db.get_async_session() as session:
            cursor = await SyncCursorRepository(session).get(Network(network).value, token)
        return cursor.last_synced_position if cursor else None

    async def set_cursor(self, network: Network, token: str, position: int) -> None:
        async with self._db.get_async_session() as session:
            await SyncCursorRepository(session).set(Network(network).value, token, position)

    async def clear(self, network: Network, token: str) -> int:
        """Drop all records and the cursor of a (network, token) for a full resync."""
        network_value = Network(network).value
        async with self._db.get_async_session() as session:
            removed = await BlacklistRepository(session).delete_for(network=network_value, token=token)
            await SyncCursorRepository(session).delete(network_value, token)
        logger.info("Cleared %d records and cursor for %s/%s", removed, network_value, token)
        return removed

    async def lookup(
        self,
        address: str,
        token: str | None = None,
        network: Network | None = None,
    ) -> list[BlacklistRecordDTO]:
        """Return every stored record for an address.

        The address may be in any accepted form (checksummed, base58, hex).
        """
        network = Network(network) if network is not None else None
        async with self._db.get_async_session() as session:
            return await BlacklistRepository(session).find(
                _candidate_addresses(address, network),
                token=token,
                network=network.value if network else None,
            )

    async def lookup_many(
        self,
        addresses: Sequence[str],
        token: str | None = None,
        network: Network | None = None,
    ) -> dict[str, list[BlacklistRecordDTO]]:
        """Batch form of :meth:`lookup`, keyed by the addresses as given.

        Raises:
            ValueError: If more than ``MAX_LOOKUP_ADDRESSES`` are requested.
        """
        if len(addresses) > MAX_LOOKUP_ADDRESSES:
            raise ValueError(f"at most {MAX_LOOKUP_ADDRESSES} addresses per lookup")

        network = Network(network) if network is not None else None
        candidates = {a: _candidate_addresses(a, network) for a in addresses}
        flat = sorted({c for forms in candidates.values() for c in forms})

        async with self._db.get_async_session() as session:
            records = await BlacklistRepository(session).find(
                flat,
                token=token,
                network=network.value if network else None,
            )

        by_address: dict[str, list[BlacklistRecordDTO]] = {}
        for record in records:
            by_address.setdefault(record.address, []).append(record)
        return {
            a: [r for form in forms for r in by_address.get(form, [])]
            for a, forms in candidates.items()
        }

    async def list_blacklisted(
        self,
        network: Network | None = None,
        token: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[BlacklistRecordDTO]:
        async with self._db.get_async_session() as session:
            return await BlacklistRepository(session).list_blacklisted(
                network=Network(network).value if network is not None else None,
                token=token,
                limit=limit,
                offset=offset,
            )

    async def list_recent(self, limit: int = 100) -> list[BlacklistRecordDTO]:
        async with self._db.get_async_session() as session:
            return await BlacklistRepository(session).list_recent(limit=limit)

    async def stats(self) -> DenylistStats:
        async with self._db.get_async_session() as session:
            repo = BlacklistRepository(session)
            return DenylistStats(
                total_records=await repo.count(),
                currently_blacklisted=await repo.count(blacklisted_only=True),
                by_network_token=await repo.counts_by_network_token(),
                cursors=await SyncCursorRepository(session).list_all(),
            )
