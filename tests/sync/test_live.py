"""Tests for the live feed."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from blacklist_harvester.contracts import ethereum_usdt_layout, event_topic
from blacklist_harvester.models import Network, RawEvent
from blacklist_harvester.storage.store import DenylistStore
from blacklist_harvester.sync.live import (
    EthereumLogSubscriber,
    LiveConsumer,
    LiveListener,
    PollingProducer,
    RecentlySeen,
)
from blacklist_harvester.sync.planner import Window

USDT = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
LAYOUT = ethereum_usdt_layout(USDT)
ALICE = "0x" + "a1" * 20


def _raw(block: int = 100, log_index: int = 0, topic: str | None = None) -> RawEvent:
    return RawEvent(
        network=Network.ETHEREUM,
        payload={
            "address": USDT,
            "topics": [topic or event_topic("AddedBlackList(address)")],
            "data": "0x" + "00" * 12 + ALICE[2:],
            "blockNumber": block,
            "transactionHash": "0x" + f"{block:064x}",
            "logIndex": log_index,
        },
        timestamp=1_700_000_000,
    )


class TestRecentlySeen:
    def test_evicts_oldest(self) -> None:
        seen = RecentlySeen(capacity=2)
        seen.add(("a",))
        seen.add(("b",))
        seen.add(("c",))

        assert ("a",) not in seen
        assert ("b",) in seen
        assert ("c",) in seen
        assert len(seen) == 2

    def test_rejects_zero_capacity(self) -> None:
        with pytest.raises(ValueError):
            RecentlySeen(0)


class TestLiveConsumer:
    @pytest.mark.asyncio
    async def test_writes_event(self, store: DenylistStore) -> None:
        consumer = LiveConsumer(store, asyncio.Queue())

        assert await consumer.process(LAYOUT, _raw()) is True

        (record,) = await store.lookup(ALICE)
        assert record.is_blacklisted is True
        assert consumer.stats.events_applied == 1

    @pytest.mark.asyncio
    async def test_skips_duplicates(self, store: DenylistStore) -> None:
        consumer = LiveConsumer(store, asyncio.Queue())

        await consumer.process(LAYOUT, _raw())
        assert await consumer.process(LAYOUT, _raw()) is False
        assert await consumer.process(LAYOUT, _raw(log_index=1)) is True

        assert consumer.stats.duplicates_skipped == 1

    @pytest.mark.asyncio
    async def test_drops_malformed(self, store: DenylistStore) -> None:
        consumer = LiveConsumer(store, asyncio.Queue())

        assert await consumer.process(LAYOUT, _raw(topic=event_topic("Transfer(address)"))) is False

        assert consumer.stats.malformed_dropped == 1
        assert await store.lookup(ALICE) == []

    @pytest.mark.asyncio
    async def test_failed_write_not_marked_seen(self) -> None:
        store = MagicMock()
        store.upsert = AsyncMock(side_effect=[RuntimeError("database is locked"), 1])
        consumer = LiveConsumer(store, asyncio.Queue())

        with pytest.raises(RuntimeError):
            await consumer.process(LAYOUT, _raw())
        assert await consumer.process(LAYOUT, _raw()) is True


class TestPollingProducer:
    @pytest.mark.asyncio
    async def test_poll_once_reads_chain_tail(self) -> None:
        source = MagicMock()
        source.network = Network.ETHEREUM
        source.head = AsyncMock(return_value=100)
        source.fetch = AsyncMock(return_value=[_raw(95)])
        producer = PollingProducer(source, [LAYOUT], interval_seconds=1, lookback=20)
        queue: asyncio.Queue = asyncio.Queue()

        queued = await producer.poll_once(queue)

        assert queued == 1
        source.fetch.assert_awaited_once_with(Window(80, 100), LAYOUT)
        layout, raw = queue.get_nowait()
        assert layout is LAYOUT
        assert raw.payload["blockNumber"] == 95

    @pytest.mark.asyncio
    async def test_lookback_clamped_at_zero(self) -> None:
        source = MagicMock()
        source.head = AsyncMock(return_value=5)
        source.fetch = AsyncMock(return_value=[])
        producer = PollingProducer(source, [LAYOUT], interval_seconds=1, lookback=20)

        await producer.poll_once(asyncio.Queue())

        source.fetch.assert_awaited_once_with(Window(0, 5), LAYOUT)

    @pytest.mark.asyncio
    async def test_run_survives_poll_errors(self) -> None:
        source = MagicMock()
        source.network = Network.ETHEREUM
        heads = iter([RuntimeError("timeout")])

        async def head() -> int:
            error = next(heads, None)
            if error is not None:
                raise error
            return 100

        source.head = AsyncMock(side_effect=head)
        source.fetch = AsyncMock(return_value=[])
        producer = PollingProducer(source, [LAYOUT], interval_seconds=0.01, lookback=20)
        stop = asyncio.Event()

        task = asyncio.create_task(producer.run(asyncio.Queue(), stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert producer.stats.last_error == "timeout"
        assert source.head.await_count >= 2


class TestEthereumLogSubscriber:
    @pytest.mark.asyncio
    async def test_handle_log_routes_by_contract(self) -> None:
        client = MagicMock()
        client.get_block_timestamp = AsyncMock(return_value=1_700_000_000)
        subscriber = EthereumLogSubscriber("wss://node.example", client, [LAYOUT])
        queue: asyncio.Queue = asyncio.Queue()

        await subscriber._handle_log(dict(_raw().payload), queue)
        await subscriber._handle_log(dict(_raw().payload) | {"address": "0x" + "99" * 20}, queue)
        await subscriber._handle_log(dict(_raw().payload) | {"removed": True}, queue)

        assert queue.qsize() == 1
        layout, raw = queue.get_nowait()
        assert layout is LAYOUT
        assert raw.timestamp == 1_700_000_000

    def test_filter_covers_all_signatures(self) -> None:
        subscriber = EthereumLogSubscriber("wss://node.example", MagicMock(), [LAYOUT])

        params = subscriber._filter_params()

        assert params["address"] == [USDT]
        assert params["topics"] == [LAYOUT.signatures]


class TestLiveListener:
    @pytest.mark.asyncio
    async def test_events_flow_to_store(self, store: DenylistStore) -> None:
        source = MagicMock()
        source.network = Network.ETHEREUM
        source.head = AsyncMock(return_value=100)
        source.fetch = AsyncMock(return_value=[_raw(99)])
        listener = LiveListener(store, [PollingProducer(source, [LAYOUT], interval_seconds=0.01, lookback=5)])

        await listener.start()
        for _ in range(100):
            if listener.stats.events_applied:
                break
            await asyncio.sleep(0.01)
        await listener.stop()

        assert not listener.is_running
        assert listener.stats.events_applied == 1
        (record,) = await store.lookup(ALICE)
        assert record.block_number == 99
