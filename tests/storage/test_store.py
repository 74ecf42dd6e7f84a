"""Tests for the denylist store."""

from __future__ import annotations

import pytest

from blacklist_harvester.models import Direction, Network, tron_base58
from blacklist_harvester.storage.store import MAX_LOOKUP_ADDRESSES, DenylistStore, reduce_events

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
TRON_HEX = "41" + "c3" * 20


class TestReduceEvents:
    def test_keeps_last_event_per_key_in_chain_order(self, make_event) -> None:
        events = [
            make_event(900, Direction.REMOVE),
            make_event(450, Direction.ADD),
            make_event(500, Direction.ADD, address=BOB),
        ]

        reduced = {e.address: e for e in reduce_events(events)}

        assert reduced[ALICE].block_number == 900
        assert reduced[ALICE].direction is Direction.REMOVE
        assert reduced[BOB].block_number == 500

    def test_same_block_ordered_by_log_index(self, make_event) -> None:
        events = [
            make_event(100, Direction.REMOVE, log_index=7),
            make_event(100, Direction.ADD, log_index=3),
        ]

        (only,) = reduce_events(events)

        assert only.direction is Direction.REMOVE
        assert only.log_index == 7

    def test_tokens_are_separate_keys(self, make_event) -> None:
        events = [make_event(1), make_event(2, token="USDC")]

        assert len(reduce_events(events)) == 2


class TestUpsert:
    @pytest.mark.asyncio
    async def test_insert_then_lookup(self, store: DenylistStore, make_event) -> None:
        written = await store.upsert([make_event(450)])

        records = await store.lookup(ALICE)

        assert written == 1
        assert len(records) == 1
        record = records[0]
        assert record.is_blacklisted is True
        assert record.block_number == 450
        assert record.token == "USDT"
        assert record.network == "ETHEREUM"
        assert record.event_timestamp == 1_600_000_000 + 450 * 12
        assert record.first_seen is not None

    @pytest.mark.asyncio
    async def test_idempotent_reapplication(self, store: DenylistStore, make_event) -> None:
        events = [make_event(450), make_event(900, Direction.REMOVE), make_event(300, address=BOB)]

        await store.upsert(events)
        first = sorted((r.address, r.is_blacklisted, r.block_number) for r in await store.list_recent())
        await store.upsert(events)
        second = sorted((r.address, r.is_blacklisted, r.block_number) for r in await store.list_recent())

        assert first == second
        assert (await store.stats()).total_records == 2

    @pytest.mark.asyncio
    async def test_later_block_wins(self, store: DenylistStore, make_event) -> None:
        await store.upsert([make_event(450)])
        await store.upsert([make_event(900, Direction.REMOVE)])

        (record,) = await store.lookup(ALICE)

        assert record.is_blacklisted is False
        assert record.block_number == 900

    @pytest.mark.asyncio
    async def test_older_write_does_not_regress(self, store: DenylistStore, make_event) -> None:
        await store.upsert([make_event(900, Direction.REMOVE)])
        await store.upsert([make_event(450, Direction.ADD)])

        (record,) = await store.lookup(ALICE)

        assert record.is_blacklisted is False
        assert record.block_number == 900

    @pytest.mark.asyncio
    async def test_same_block_lower_log_index_does_not_regress(self, store: DenylistStore, make_event) -> None:
        await store.upsert([make_event(100, Direction.REMOVE, log_index=5)])
        await store.upsert([make_event(100, Direction.ADD, log_index=2)])

        (record,) = await store.lookup(ALICE)

        assert record.is_blacklisted is False
        assert record.log_index == 5

    @pytest.mark.asyncio
    async def test_first_seen_kept_on_update(self, store: DenylistStore, make_event) -> None:
        await store.upsert([make_event(450)])
        (before,) = await store.lookup(ALICE)

        await store.upsert([make_event(900, Direction.REMOVE)])
        (after,) = await store.lookup(ALICE)

        assert after.first_seen == before.first_seen
        assert after.last_updated >= before.last_updated

    @pytest.mark.asyncio
    async def test_empty_batch(self, store: DenylistStore) -> None:
        assert await store.upsert([]) == 0

    @pytest.mark.asyncio
    async def test_large_batch_is_chunked(self, store: DenylistStore, make_event) -> None:
        events = [make_event(i + 1, address="0x" + f"{i:040x}") for i in range(250)]

        await store.upsert(events)

        assert (await store.stats()).total_records == 250


class TestCursorAndWindows:
    @pytest.mark.asyncio
    async def test_cursor_absent_until_set(self, store: DenylistStore) -> None:
        assert await store.get_cursor(Network.ETHEREUM, "USDT") is None

        await store.set_cursor(Network.ETHEREUM, "USDT", 1234)

        assert await store.get_cursor(Network.ETHEREUM, "USDT") == 1234
        assert await store.get_cursor(Network.ETHEREUM, "USDC") is None

    @pytest.mark.asyncio
    async def test_apply_window_writes_events_and_cursor(self, store: DenylistStore, make_event) -> None:
        await store.apply_window([make_event(450)], Network.ETHEREUM, "USDT", cursor=500)

        assert await store.get_cursor(Network.ETHEREUM, "USDT") == 500
        assert len(await store.lookup(ALICE)) == 1

    @pytest.mark.asyncio
    async def test_apply_window_with_no_events_still_advances(self, store: DenylistStore) -> None:
        await store.apply_window([], Network.TRON, "USDT", cursor=77)

        assert await store.get_cursor(Network.TRON, "USDT") == 77

    @pytest.mark.asyncio
    async def test_clear_removes_records_and_cursor(self, store: DenylistStore, make_event) -> None:
        await store.apply_window([make_event(450)], Network.ETHEREUM, "USDT", cursor=500)
        await store.apply_window([make_event(460, token="USDC")], Network.ETHEREUM, "USDC", cursor=600)

        removed = await store.clear(Network.ETHEREUM, "USDT")

        assert removed == 1
        assert await store.get_cursor(Network.ETHEREUM, "USDT") is None
        assert await store.get_cursor(Network.ETHEREUM, "USDC") == 600
        assert [r.token for r in await store.lookup(ALICE)] == ["USDC"]

    @pytest.mark.asyncio
    async def test_clear_allows_regression(self, store: DenylistStore, make_event) -> None:
        await store.upsert([make_event(900, Direction.REMOVE)])
        await store.clear(Network.ETHEREUM, "USDT")

        await store.upsert([make_event(450)])

        (record,) = await store.lookup(ALICE)
        assert record.block_number == 450
        assert record.is_blacklisted is True


class TestReads:
    @pytest.mark.asyncio
    async def test_lookup_accepts_checksummed_address(self, store: DenylistStore, make_event) -> None:
        await store.upsert([make_event(450)])

        assert len(await store.lookup(ALICE.upper().replace("0X", "0x"))) == 1

    @pytest.mark.asyncio
    async def test_lookup_tron_by_base58(self, store: DenylistStore, make_event) -> None:
        await store.upsert([make_event(10, address=TRON_HEX, network=Network.TRON)])

        records = await store.lookup(tron_base58(TRON_HEX))

        assert [r.network for r in records] == ["TRON"]

    @pytest.mark.asyncio
    async def test_lookup_hex_without_network_matches_tron_form(self, store: DenylistStore, make_event) -> None:
        await store.upsert([make_event(10, address=TRON_HEX, network=Network.TRON)])

        records = await store.lookup("0x" + "c3" * 20)

        assert [r.address for r in records] == [TRON_HEX]

    @pytest.mark.asyncio
    async def test_lookup_filters(self, store: DenylistStore, make_event) -> None:
        await store.upsert([make_event(1), make_event(2, token="USDC")])

        assert len(await store.lookup(ALICE, token="USDC")) == 1
        assert len(await store.lookup(ALICE, network=Network.ETHEREUM)) == 2

    @pytest.mark.asyncio
    async def test_lookup_many(self, store: DenylistStore, make_event) -> None:
        await store.upsert([make_event(1), make_event(2, address=BOB)])

        result = await store.lookup_many([ALICE, BOB, "0x" + "00" * 20])

        assert len(result[ALICE]) == 1
        assert len(result[BOB]) == 1
        assert result["0x" + "00" * 20] == []

    @pytest.mark.asyncio
    async def test_lookup_many_rejects_oversized_batch(self, store: DenylistStore) -> None:
        addresses = ["0x" + f"{i:040x}" for i in range(MAX_LOOKUP_ADDRESSES + 1)]

        with pytest.raises(ValueError):
            await store.lookup_many(addresses)

    @pytest.mark.asyncio
    async def test_list_blacklisted_only_current(self, store: DenylistStore, make_event) -> None:
        await store.upsert(
            [
                make_event(450),
                make_event(900, Direction.REMOVE),
                make_event(300, address=BOB),
                make_event(5, address=TRON_HEX, network=Network.TRON),
            ]
        )

        everything = await store.list_blacklisted()
        eth_only = await store.list_blacklisted(network=Network.ETHEREUM)
        paged = await store.list_blacklisted(limit=1, offset=1)

        assert {r.address for r in everything} == {BOB, TRON_HEX}
        assert [r.address for r in eth_only] == [BOB]
        assert len(paged) == 1

    @pytest.mark.asyncio
    async def test_stats(self, store: DenylistStore, make_event) -> None:
        await store.apply_window(
            [make_event(450), make_event(300, address=BOB), make_event(310, Direction.REMOVE, address=BOB)],
            Network.ETHEREUM,
            "USDT",
            cursor=1000,
        )
        await store.apply_window(
            [make_event(500, Direction.REMOVE, token="USDC")], Network.ETHEREUM, "USDC", cursor=1200
        )

        stats = await store.stats()

        assert stats.total_records == 3
        assert stats.currently_blacklisted == 1
        assert stats.by_network_token == {
            "ETHEREUM/USDC": {"blacklisted": 0, "total": 1},
            "ETHEREUM/USDT": {"blacklisted": 1, "total": 2},
        }
        assert sorted((c.network, c.token, c.last_synced_position) for c in stats.cursors) == [
            ("ETHEREUM", "USDC", 1200),
            ("ETHEREUM", "USDT", 1000),
        ]
