"""End-to-end tests for the chain driver over a real SQLite store."""

from __future__ import annotations

import dataclasses
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from blacklist_harvester.chains.ethereum import RPCError
from blacklist_harvester.contracts import ethereum_usdt_layout, event_topic
from blacklist_harvester.models import Network
from blacklist_harvester.storage.store import DenylistStore
from blacklist_harvester.sync.driver import ChainDriver, DriverState
from blacklist_harvester.sync.errors import MalformedEventError
from blacklist_harvester.sync.planner import PlannerConfig
from blacklist_harvester.sync.sources import LogEventSource

USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
ALICE = "0x" + "a1" * 20
ADDED = event_topic("AddedBlackList(address)")
REMOVED = event_topic("RemovedBlackList(address)")

CONFIG = PlannerConfig(initial_window=100, min_window=10, super_batch=1000, pacing_delay_seconds=0)
LAYOUT = dataclasses.replace(ethereum_usdt_layout(USDT), origin=0)


def _log(block: int, topic: str, address: str = ALICE) -> dict[str, Any]:
    return {
        "address": USDT,
        "topics": [topic],
        "data": "0x" + "00" * 12 + address[2:],
        "blockNumber": block,
        "transactionHash": "0x" + f"{block:064x}",
        "logIndex": 0,
    }


class FakeChain:
    """Serves ``eth_getLogs`` from an in-memory list of logs."""

    def __init__(self, logs: list[dict[str, Any]], head: int = 1000) -> None:
        self.logs = logs
        self.head = head
        self.calls: list[tuple[int, int]] = []
        self.fail_on_call: int | None = None

    async def get_logs(self, *, address: str, topics: list, from_block: int, to_block: int) -> list[dict]:
        self.calls.append((from_block, to_block))
        if self.fail_on_call is not None and len(self.calls) == self.fail_on_call:
            raise RPCError("All RPC endpoints failed after 3 attempts")
        return [dict(log) for log in self.logs if from_block <= log["blockNumber"] <= to_block]

    def client(self) -> MagicMock:
        client = MagicMock()
        client.get_block_number = AsyncMock(side_effect=lambda: self.head)
        client.get_logs = AsyncMock(side_effect=self.get_logs)
        client.get_block_timestamps = AsyncMock(side_effect=lambda blocks: {b: 1_600_000_000 + b * 12 for b in blocks})
        return client


def _driver(chain: FakeChain, store: DenylistStore) -> ChainDriver:
    return ChainDriver(Network.ETHEREUM, LogEventSource(chain.client(), CONFIG), [LAYOUT], store)


class TestBackfill:
    @pytest.mark.asyncio
    async def test_add_then_remove_ends_not_blacklisted(self, store: DenylistStore) -> None:
        chain = FakeChain([_log(450, ADDED), _log(900, REMOVED)])
        await store.set_cursor(Network.ETHEREUM, "USDT", 0)
        driver = _driver(chain, store)

        (result,) = await driver.backfill()

        (record,) = await store.lookup(ALICE)
        assert record.is_blacklisted is False
        assert record.block_number == 900
        assert await store.get_cursor(Network.ETHEREUM, "USDT") == 1000
        assert result.windows == 10
        assert result.events == 2
        assert chain.calls[0] == (1, 100)
        assert chain.calls[-1] == (901, 1000)
        assert driver.state is DriverState.IDLE

    @pytest.mark.asyncio
    async def test_up_to_date_is_a_no_op(self, store: DenylistStore) -> None:
        chain = FakeChain([], head=1000)
        await store.set_cursor(Network.ETHEREUM, "USDT", 1000)

        (result,) = await _driver(chain, store).backfill()

        assert result.up_to_date
        assert chain.calls == []

    @pytest.mark.asyncio
    async def test_resumes_after_failure_without_gaps(self, store: DenylistStore) -> None:
        chain = FakeChain([_log(150, ADDED), _log(450, ADDED, address="0x" + "b2" * 20)])
        chain.fail_on_call = 3
        await store.set_cursor(Network.ETHEREUM, "USDT", 0)
        driver = _driver(chain, store)

        report = await driver.run_pass()

        assert not report.ok
        assert isinstance(report.error, RPCError)
        assert await store.get_cursor(Network.ETHEREUM, "USDT") == 200
        assert len(await store.lookup(ALICE)) == 1

        chain.fail_on_call = None
        chain.calls.clear()
        report = await driver.run_pass()

        assert report.ok
        assert chain.calls[0] == (201, 300)
        assert await store.get_cursor(Network.ETHEREUM, "USDT") == 1000
        assert len(await store.lookup("0x" + "b2" * 20)) == 1

    @pytest.mark.asyncio
    async def test_malformed_event_fails_the_window(self, store: DenylistStore) -> None:
        bad = _log(450, ADDED) | {"data": "0x1234"}
        chain = FakeChain([_log(150, ADDED), bad])
        await store.set_cursor(Network.ETHEREUM, "USDT", 0)

        with pytest.raises(MalformedEventError):
            await _driver(chain, store).backfill()

        assert await store.get_cursor(Network.ETHEREUM, "USDT") == 400

    @pytest.mark.asyncio
    async def test_first_sync_starts_at_origin(self, store: DenylistStore) -> None:
        chain = FakeChain([], head=250)

        await _driver(chain, store).backfill()

        assert chain.calls[0] == (0, 99)
        assert await store.get_cursor(Network.ETHEREUM, "USDT") == 250

    @pytest.mark.asyncio
    async def test_full_resync_clears_and_restarts(self, store: DenylistStore) -> None:
        chain = FakeChain([_log(450, ADDED)])
        driver = _driver(chain, store)
        await driver.backfill()
        chain.logs = []
        chain.calls.clear()

        (result,) = await driver.backfill(full_resync=True)

        assert result.full_resync is True
        assert chain.calls[0] == (0, 99)
        assert await store.lookup(ALICE) == []
        assert await store.get_cursor(Network.ETHEREUM, "USDT") == 1000

    @pytest.mark.asyncio
    async def test_stop_request_finishes_current_window(self, store: DenylistStore) -> None:
        chain = FakeChain([])
        await store.set_cursor(Network.ETHEREUM, "USDT", 0)
        driver = _driver(chain, store)
        original = chain.get_logs

        async def stop_after_first(**kwargs: Any) -> list[dict]:
            driver.request_stop()
            return await original(**kwargs)

        driver._source._client.get_logs.side_effect = stop_after_first  # type: ignore[attr-defined]

        (result,) = await driver.backfill()

        assert result.stopped is True
        assert result.windows == 1
        assert await store.get_cursor(Network.ETHEREUM, "USDT") == 100
        assert driver.state is DriverState.STOPPED


class TestLiveMode:
    @pytest.mark.asyncio
    async def test_start_and_stop_live(self, store: DenylistStore) -> None:
        chain = FakeChain([])
        listener = MagicMock()
        listener.start = AsyncMock()
        listener.stop = AsyncMock()
        driver = ChainDriver(
            Network.ETHEREUM,
            LogEventSource(chain.client(), CONFIG),
            [LAYOUT],
            store,
            live_listener=listener,
            sync_interval_seconds=3600,
        )

        await driver.start_live()
        assert driver.state is DriverState.LIVE
        listener.start.assert_awaited_once()

        await driver.stop()
        assert driver.state is DriverState.STOPPED
        listener.stop.assert_awaited_once()
