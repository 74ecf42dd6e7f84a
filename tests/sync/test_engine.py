"""Tests for the sync engine orchestration."""

from __future__ import annotations

import dataclasses
from unittest.mock import AsyncMock, MagicMock

import pytest

from blacklist_harvester.chains.ethereum import RPCError
from blacklist_harvester.chains.tron import TronBlock
from blacklist_harvester.config import Settings
from blacklist_harvester.contracts import ethereum_usdt_layout, tron_usdt_layout
from blacklist_harvester.models import Network
from blacklist_harvester.storage.store import DenylistStore
from blacklist_harvester.sync.driver import ChainDriver
from blacklist_harvester.sync.engine import (
    HOUR_MS,
    MINUTE_MS,
    EngineState,
    SyncEngine,
    ethereum_planner_config,
    tron_planner_config,
)
from blacklist_harvester.sync.planner import PlannerConfig
from blacklist_harvester.sync.sources import IndexerEventSource, LogEventSource

CONFIG = PlannerConfig(initial_window=100, min_window=10, super_batch=1000, pacing_delay_seconds=0)


@pytest.fixture
def settings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Settings:
    monkeypatch.setenv("ETHEREUM_RPC_URL", "https://rpc.example")
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}")
    return Settings(_env_file=None)


def _eth_driver(store: DenylistStore, *, fail: bool) -> ChainDriver:
    client = MagicMock()
    client.get_block_number = AsyncMock(
        side_effect=RPCError("All RPC endpoints failed after 3 attempts") if fail else None, return_value=500
    )
    client.get_logs = AsyncMock(return_value=[])
    layout = dataclasses.replace(ethereum_usdt_layout("0xdAC17F958D2ee523a2206206994597C13D831ec7"), origin=0)
    return ChainDriver(Network.ETHEREUM, LogEventSource(client, CONFIG), [layout], store)


def _tron_driver(store: DenylistStore) -> ChainDriver:
    head = TronBlock(number=3_000, timestamp_ms=10_000)
    client = MagicMock()
    client.get_now_block = AsyncMock(return_value=head)
    client.get_contract_events = AsyncMock()
    client.block_number_at_or_before = AsyncMock(return_value=2_999)
    source = IndexerEventSource(client, CONFIG, initial_lookback_days=1)
    return ChainDriver(Network.TRON, source, [tron_usdt_layout("TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t")], store)


class TestPlannerConfigs:
    def test_ethereum_units_are_blocks(self, settings: Settings) -> None:
        config = ethereum_planner_config(settings)

        assert config.initial_window == 10_000
        assert config.min_window == 100
        assert config.super_batch == 172_800
        assert config.pacing_delay_seconds == pytest.approx(0.1)

    def test_tron_units_are_milliseconds(self, settings: Settings) -> None:
        config = tron_planner_config(settings)

        assert config.initial_window == 168 * HOUR_MS
        assert config.min_window == 10 * MINUTE_MS
        assert config.super_batch == 30 * 24 * HOUR_MS


class TestBackfillOnce:
    @pytest.mark.asyncio
    async def test_one_chain_failing_does_not_stop_the_other(self, settings: Settings, store: DenylistStore) -> None:
        tron = _tron_driver(store)
        tron._source._client.get_contract_events = AsyncMock(  # type: ignore[attr-defined]
            return_value=MagicMock(events=[], fingerprint=None)
        )
        engine = SyncEngine(
            settings,
            store=store,
            drivers={Network.ETHEREUM: _eth_driver(store, fail=True), Network.TRON: tron},
        )

        reports = await engine.run_backfill_once()

        assert not reports[Network.ETHEREUM].ok
        assert isinstance(reports[Network.ETHEREUM].error, RPCError)
        assert reports[Network.TRON].ok
        assert await store.get_cursor(Network.TRON, "USDT") == 2_999
        assert await store.get_cursor(Network.ETHEREUM, "USDT") is None
        assert engine.state is EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_healthy_chain_advances_to_head(self, settings: Settings, store: DenylistStore) -> None:
        engine = SyncEngine(settings, store=store, drivers={Network.ETHEREUM: _eth_driver(store, fail=False)})

        reports = await engine.run_backfill_once()

        assert reports[Network.ETHEREUM].ok
        assert await store.get_cursor(Network.ETHEREUM, "USDT") == 500

    @pytest.mark.asyncio
    async def test_no_drivers(self, settings: Settings, store: DenylistStore) -> None:
        engine = SyncEngine(settings, store=store, drivers={})

        assert await engine.run_backfill_once() == {}

    @pytest.mark.asyncio
    async def test_stop_stops_every_driver(self, settings: Settings, store: DenylistStore) -> None:
        driver = MagicMock()
        driver.stop = AsyncMock()
        engine = SyncEngine(settings, store=store, drivers={Network.ETHEREUM: driver})

        await engine.stop()

        driver.stop.assert_awaited_once()
        assert engine.state is EngineState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_disposes_database_without_drivers(self, settings: Settings) -> None:
        engine = SyncEngine(settings, drivers={})
        await engine.init_schema()
        assert engine._db_manager is not None

        await engine.stop()

        assert engine._db_manager is None
        assert engine.state is EngineState.STOPPED


class TestBuildDrivers:
    def test_builds_one_driver_per_configured_network(self, settings: Settings) -> None:
        engine = SyncEngine(settings)

        drivers = engine.drivers

        assert set(drivers) == {Network.ETHEREUM, Network.TRON}
        assert [layout.token for layout in drivers[Network.ETHEREUM].layouts] == ["USDT", "USDC"]
        assert [layout.token for layout in drivers[Network.TRON].layouts] == ["USDT"]

    def test_disabled_contracts_are_skipped(self, settings: Settings, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ETHEREUM_USDC_CONTRACT", "")
        monkeypatch.setenv("TRON_USDT_CONTRACT", "")
        engine = SyncEngine(Settings(_env_file=None))

        drivers = engine.drivers

        assert set(drivers) == {Network.ETHEREUM}
        assert [layout.token for layout in drivers[Network.ETHEREUM].layouts] == ["USDT"]
