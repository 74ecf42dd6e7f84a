"""Chain event sources: one retrieval model per ledger behind a common interface.

``LogEventSource`` reads Ethereum logs by block range. ``IndexerEventSource``
reads TronGrid's decoded events by millisecond time range, following the
indexer's continuation token. Both hand back ``RawEvent`` envelopes in chain
order and never retry on their own; retries live in the clients.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from blacklist_harvester.chains.errors import RangeLimitError
from blacklist_harvester.models import Network, RawEvent
from blacklist_harvester.sync.errors import PaginationStallError
from blacklist_harvester.sync.planner import PlannerConfig, Window

if TYPE_CHECKING:
    from blacklist_harvester.chains.ethereum import EthereumClient
    from blacklist_harvester.chains.tron import TronBlock, TronGridClient
    from blacklist_harvester.contracts import ContractLayout

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


class ChainEventSource(ABC):
    """Common interface over a ledger's event retrieval model."""

    network: Network

    def __init__(self, planner_config: PlannerConfig) -> None:
        self.planner_config = planner_config

    @abstractmethod
    async def head(self) -> int:
        """Latest position available on the chain."""

    @abstractmethod
    async def resume_position(self, cursor: int | None, layout: ContractLayout) -> int:
        """First position to scan given the stored cursor (None if never synced)."""

    @abstractmethod
    async def fetch(self, window: Window, layout: ContractLayout) -> list[RawEvent]:
        """Every event of ``layout`` inside ``window``, in chain order."""

    @abstractmethod
    async def cursor_position(self, window: Window) -> int:
        """Cursor value to store once ``window`` has been committed."""


class LogEventSource(ChainEventSource):
    """Ethereum source: one ``eth_getLogs`` call per block window."""

    network = Network.ETHEREUM

    def __init__(self, client: EthereumClient, planner_config: PlannerConfig) -> None:
        super().__init__(planner_config)
        self._client = client

    async def head(self) -> int:
        return await self._client.get_block_number()

    async def resume_position(self, cursor: int | None, layout: ContractLayout) -> int:
        if cursor is None:
            return layout.origin
        return max(cursor + 1, layout.origin)

    async def fetch(self, window: Window, layout: ContractLayout) -> list[RawEvent]:
        logs = await self._client.get_logs(
            address=layout.address,
            topics=[layout.signatures],
            from_block=window.start,
            to_block=window.end,
        )
        if not logs:
            return []

        logs.sort(key=lambda log: (int(log["blockNumber"]), int(log.get("logIndex") or 0)))
        timestamps = await self._client.get_block_timestamps([int(log["blockNumber"]) for log in logs])
        return [
            RawEvent(network=self.network, payload=log, timestamp=timestamps[int(log["blockNumber"])])
            for log in logs
        ]

    async def cursor_position(self, window: Window) -> int:
        return window.end


class IndexerEventSource(ChainEventSource):
    """TRON source: TronGrid event pages per event kind inside a time window.

    Positions are millisecond timestamps. The stored cursor is a block
    number, mapped to and from time through block lookups.
    """

    network = Network.TRON

    def __init__(
        self,
        client: TronGridClient,
        planner_config: PlannerConfig,
        *,
        page_size: int = 200,
        max_pages: int = 10_000,
        initial_lookback_days: int = 365,
    ) -> None:
        super().__init__(planner_config)
        self._client = client
        self._page_size = page_size
        self._max_pages = max_pages
        self._initial_lookback_ms = initial_lookback_days * DAY_MS
        self._head_block: TronBlock | None = None

    async def _latest_block(self) -> TronBlock:
        if self._head_block is None:
            self._head_block = await self._client.get_now_block()
        return self._head_block

    async def head(self) -> int:
        self._head_block = await self._client.get_now_block()
        return self._head_block.timestamp_ms

    async def resume_position(self, cursor: int | None, layout: ContractLayout) -> int:
        if cursor is None:
            latest = await self._latest_block()
            return max(latest.timestamp_ms - self._initial_lookback_ms, layout.origin)
        block = await self._client.get_block_by_number(cursor)
        return block.timestamp_ms + 1

    async def _fetch_kind(self, window: Window, layout: ContractLayout, event_name: str) -> list[dict]:
        events: list[dict] = []
        seen_tokens: set[str] = set()
        fingerprint: str | None = None

        for _ in range(self._max_pages):
            page = await self._client.get_contract_events(
                layout.address,
                event_name=event_name,
                min_timestamp=window.start,
                max_timestamp=window.end,
                limit=self._page_size,
                fingerprint=fingerprint,
            )
            events.extend(page.events)
            if not page.events or len(page.events) < self._page_size or not page.fingerprint:
                return events
            if page.fingerprint in seen_tokens:
                raise PaginationStallError(
                    f"{layout.label} {event_name}: continuation token repeated "
                    f"in window {window.start}..{window.end}"
                )
            seen_tokens.add(page.fingerprint)
            fingerprint = page.fingerprint

        # Too many pages for one window; ask the planner for a smaller one.
        raise RangeLimitError(
            f"{layout.label} {event_name}: more than {self._max_pages} pages "
            f"in window {window.start}..{window.end}"
        )

    async def fetch(self, window: Window, layout: ContractLayout) -> list[RawEvent]:
        entries: list[dict] = []
        for kind in layout.kinds:
            entries.extend(await self._fetch_kind(window, layout, kind.signature))

        entries.sort(key=lambda e: (int(e.get("block_number") or 0), int(e.get("event_index") or 0)))
        return [
            RawEvent(
                network=self.network,
                payload=entry,
                timestamp=int(entry["block_timestamp"]) // 1000 if entry.get("block_timestamp") else None,
            )
            for entry in entries
        ]

    async def cursor_position(self, window: Window) -> int:
        return await self._client.block_number_at_or_before(window.end, head=await self._latest_block())
