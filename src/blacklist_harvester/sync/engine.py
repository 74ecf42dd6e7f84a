"""Sync engine: wires clients, sources, the store and per-chain drivers.

Example:
    ```python
    from blacklist_harvester.config import get_settings
    from blacklist_harvester.sync.engine import SyncEngine

    engine = SyncEngine(get_settings())
    reports = await engine.run_backfill_once()
    await engine.aclose()
    ```
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from redis.asyncio import Redis

from blacklist_harvester.chains.ethereum import EthereumClient
from blacklist_harvester.chains.tron import TronGridClient
from blacklist_harvester.config import Settings, get_settings
from blacklist_harvester.contracts import build_layouts
from blacklist_harvester.models import Network
from blacklist_harvester.storage.database import DatabaseManager
from blacklist_harvester.storage.store import DenylistStore
from blacklist_harvester.sync.driver import BackfillReport, ChainDriver
from blacklist_harvester.sync.live import EthereumLogSubscriber, LiveListener, LiveProducer, PollingProducer
from blacklist_harvester.sync.planner import PlannerConfig
from blacklist_harvester.sync.sources import DAY_MS, IndexerEventSource, LogEventSource
from blacklist_harvester.validation import DenylistValidator

if TYPE_CHECKING:
    from blacklist_harvester.contracts import ContractLayout

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000


class EngineState(str, Enum):
    """Engine lifecycle states."""

    STOPPED = "stopped"
    BACKFILLING = "backfilling"
    LIVE = "live"
    STOPPING = "stopping"


def ethereum_planner_config(settings: Settings) -> PlannerConfig:
    return PlannerConfig(
        initial_window=max(settings.ethereum.chunk_size, settings.sync.min_window_blocks),
        min_window=settings.sync.min_window_blocks,
        super_batch=settings.ethereum.super_batch_blocks,
        pacing_delay_seconds=settings.sync.pacing_delay_ms / 1000,
    )


def tron_planner_config(settings: Settings) -> PlannerConfig:
    min_window = settings.tron.min_window_minutes * MINUTE_MS
    return PlannerConfig(
        initial_window=max(settings.tron.window_hours * HOUR_MS, min_window),
        min_window=min_window,
        super_batch=settings.tron.super_batch_days * DAY_MS,
        pacing_delay_seconds=settings.sync.pacing_delay_ms / 1000,
    )


class SyncEngine:
    """Top-level orchestrator for both chains.

    Components are built lazily from settings on first use; tests may pass a
    prebuilt ``store`` and ``drivers`` instead.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: DenylistStore | None = None,
        drivers: Mapping[Network, ChainDriver] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._drivers: dict[Network, ChainDriver] | None = dict(drivers) if drivers is not None else None

        self._state = EngineState.STOPPED
        self._stop_event: asyncio.Event | None = None
        self._started_at: datetime | None = None

        self._db_manager: DatabaseManager | None = None
        self._redis: Redis | None = None
        self._eth_client: EthereumClient | None = None
        self._tron_client: TronGridClient | None = None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def store(self) -> DenylistStore:
        self._ensure_components()
        assert self._store is not None
        return self._store

    @property
    def drivers(self) -> dict[Network, ChainDriver]:
        self._ensure_components()
        assert self._drivers is not None
        return dict(self._drivers)

    def _ensure_components(self) -> None:
        settings = self._settings
        if self._store is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager(settings.database.url)
            self._store = DenylistStore(self._db_manager)
        if self._drivers is None:
            self._drivers = self._build_drivers(build_layouts(settings))

    def _build_drivers(self, layouts: Mapping[Network, list[ContractLayout]]) -> dict[Network, ChainDriver]:
        settings = self._settings
        assert self._store is not None
        drivers: dict[Network, ChainDriver] = {}
        interval = settings.sync.interval_minutes * 60.0

        if settings.redis.url:
            self._redis = Redis.from_url(settings.redis.url)

        eth_layouts = layouts.get(Network.ETHEREUM) or []
        if eth_layouts:
            logger.debug("Initializing Ethereum client...")
            self._eth_client = EthereumClient(
                settings.ethereum.rpc_url,
                fallback_rpc_url=settings.ethereum.fallback_rpc_url,
                redis=self._redis,
                max_requests_per_second=settings.ethereum.max_requests_per_second,
            )
            config = ethereum_planner_config(settings)
            producer: LiveProducer
            if settings.ethereum.ws_url:
                producer = EthereumLogSubscriber(settings.ethereum.ws_url, self._eth_client, eth_layouts)
            else:
                producer = PollingProducer(
                    LogEventSource(self._eth_client, config),
                    eth_layouts,
                    interval_seconds=settings.ethereum.live_poll_interval_seconds,
                    lookback=settings.ethereum.live_lookback_blocks,
                )
            drivers[Network.ETHEREUM] = ChainDriver(
                Network.ETHEREUM,
                LogEventSource(self._eth_client, config),
                eth_layouts,
                self._store,
                live_listener=LiveListener(self._store, [producer], queue_size=settings.sync.live_queue_size),
                sync_interval_seconds=interval,
            )

        tron_layouts = layouts.get(Network.TRON) or []
        if tron_layouts:
            logger.debug("Initializing TronGrid client...")
            api_key = settings.tron.api_key.get_secret_value() if settings.tron.api_key else None
            self._tron_client = TronGridClient(
                settings.tron.full_node,
                api_key=api_key,
                request_timeout=settings.tron.request_timeout_seconds,
            )
            config = tron_planner_config(settings)

            def tron_source() -> IndexerEventSource:
                assert self._tron_client is not None
                return IndexerEventSource(
                    self._tron_client,
                    config,
                    page_size=settings.tron.page_size,
                    max_pages=settings.tron.max_pages_per_window,
                    initial_lookback_days=settings.tron.initial_lookback_days,
                )

            poll = settings.tron.poll_interval_seconds
            poller = PollingProducer(
                tron_source(),
                tron_layouts,
                interval_seconds=poll,
                lookback=int(2 * poll * 1000),
            )
            drivers[Network.TRON] = ChainDriver(
                Network.TRON,
                tron_source(),
                tron_layouts,
                self._store,
                live_listener=LiveListener(self._store, [poller], queue_size=settings.sync.live_queue_size),
                sync_interval_seconds=interval,
            )

        if not drivers:
            logger.warning("No token contracts configured; nothing to sync")
        return drivers

    def build_validator(self) -> DenylistValidator:
        """Validator bound to this engine's store, layouts and clients."""
        drivers = self.drivers
        layouts = [layout for driver in drivers.values() for layout in driver.layouts]
        return DenylistValidator(
            self.store,
            layouts,
            eth_client=self._eth_client,
            tron_client=self._tron_client,
        )

    async def init_schema(self) -> None:
        """Create missing tables (no-op for tables Alembic already created)."""
        self._ensure_components()
        if self._db_manager is not None:
            await self._db_manager.init_schema_async()

    async def run_backfill_once(self, force_full_resync: bool = False) -> dict[Network, BackfillReport]:
        """Run exactly one backfill pass per chain, concurrently.

        A failure on one chain does not stop the other; each chain's outcome
        is reported separately.
        """
        drivers = self.drivers
        if not drivers:
            return {}

        previous = self._state
        if previous is EngineState.STOPPED:
            self._state = EngineState.BACKFILLING
        try:
            reports = await asyncio.gather(
                *(driver.run_pass(full_resync=force_full_resync) for driver in drivers.values())
            )
        finally:
            if self._state is EngineState.BACKFILLING:
                self._state = previous
        return {report.network: report for report in reports}

    async def start_live(self) -> None:
        """Put every chain into live mode."""
        for driver in self.drivers.values():
            await driver.start_live()
        self._state = EngineState.LIVE

    async def run(self, force_full_resync: bool = False) -> dict[Network, BackfillReport]:
        """Backfill, then stay live until ``stop()`` or SIGINT/SIGTERM."""
        if self._state not in (EngineState.STOPPED,):
            raise RuntimeError(f"Cannot run engine in state {self._state}")

        self._stop_event = asyncio.Event()
        self._started_at = datetime.now(UTC)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self._request_shutdown)

        try:
            reports = await self.run_backfill_once(force_full_resync=force_full_resync)
            for network, report in reports.items():
                if not report.ok:
                    logger.error(
                        "%s initial backfill failed; live mode and the periodic pass will keep trying",
                        network.value,
                    )

            if not self._stop_event.is_set():
                await self.start_live()
                await self._stop_event.wait()
            return reports
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                with contextlib.suppress(NotImplementedError, RuntimeError):
                    loop.remove_signal_handler(sig)
            await self.stop()

    def _request_shutdown(self) -> None:
        logger.info("Shutdown requested")
        for driver in (self._drivers or {}).values():
            driver.request_stop()
        if self._stop_event:
            self._stop_event.set()

    async def stop(self) -> None:
        """Stop live mode; in-flight windows finish committing first."""
        self._state = EngineState.STOPPING
        if self._stop_event:
            self._stop_event.set()
        for driver in (self._drivers or {}).values():
            await driver.stop()
        await self.aclose()
        self._state = EngineState.STOPPED
        logger.info("Sync engine stopped")

    async def aclose(self) -> None:
        """Release network and database resources."""
        if self._eth_client is not None:
            await self._eth_client.aclose()
            self._eth_client = None
        if self._tron_client is not None:
            await self._tron_client.aclose()
            self._tron_client = None
        if self._redis is not None:
            with contextlib.suppress(Exception):
                await self._redis.aclose()
            self._redis = None
        if self._db_manager is not None:
            await self._db_manager.dispose_async()
            self._db_manager = None
