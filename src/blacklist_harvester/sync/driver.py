"""Per-chain driver: backfill passes, live mode and the reconciling timer.

A ``ChainDriver`` owns one network. Its tokens are backfilled one after
another; each window is fetched, normalized and committed together with its
cursor before the next window is planned.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from blacklist_harvester.sync.normalizer import normalize_all
from blacklist_harvester.sync.planner import PlannerConfig, PlannerState, Window, run_windows

if TYPE_CHECKING:
    from blacklist_harvester.contracts import ContractLayout
    from blacklist_harvester.models import Network
    from blacklist_harvester.storage.store import DenylistStore
    from blacklist_harvester.sync.live import LiveListener
    from blacklist_harvester.sync.sources import ChainEventSource

logger = logging.getLogger(__name__)


class DriverState(str, Enum):
    """Chain driver lifecycle states."""

    IDLE = "idle"
    BACKFILLING = "backfilling"
    LIVE = "live"
    STOPPED = "stopped"


@dataclass
class TokenSyncResult:
    """Outcome of backfilling one token."""

    token: str
    start: int
    head: int
    windows: int = 0
    events: int = 0
    cursor: int | None = None
    full_resync: bool = False
    stopped: bool = False
    duration_seconds: float = 0.0

    @property
    def up_to_date(self) -> bool:
        return self.start > self.head


@dataclass
class BackfillReport:
    """Outcome of one backfill pass over a network."""

    network: Network
    tokens: list[TokenSyncResult] = field(default_factory=list)
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ChainDriver:
    """Drives backfill and live sync for every token on one network."""

    def __init__(
        self,
        network: Network,
        source: ChainEventSource,
        layouts: Sequence[ContractLayout],
        store: DenylistStore,
        *,
        live_listener: LiveListener | None = None,
        sync_interval_seconds: float = 600.0,
    ) -> None:
        self.network = network
        self._source = source
        self._layouts = list(layouts)
        self._store = store
        self._live = live_listener
        self._sync_interval = sync_interval_seconds

        self._state = DriverState.IDLE
        self._planner_states: dict[str, PlannerState] = {}
        self._pass_lock = asyncio.Lock()
        self._stop_requested = False
        self._stop_event: asyncio.Event | None = None
        self._periodic_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> DriverState:
        return self._state

    @property
    def layouts(self) -> list[ContractLayout]:
        return list(self._layouts)

    @property
    def planner_config(self) -> PlannerConfig:
        return self._source.planner_config

    def _should_stop(self) -> bool:
        return self._stop_requested

    async def backfill_token(self, layout: ContractLayout, *, full_resync: bool = False) -> TokenSyncResult:
        """Backfill one token from its cursor (or origin) to the current head."""
        started = time.monotonic()
        if full_resync:
            logger.info("%s full resync: clearing stored state", layout.label)
            await self._store.clear(self.network, layout.token)

        cursor = await self._store.get_cursor(self.network, layout.token)
        start = await self._source.resume_position(cursor, layout)
        head = await self._source.head()
        result = TokenSyncResult(token=layout.token, start=start, head=head, cursor=cursor, full_resync=full_resync)

        if start > head:
            logger.info("%s up to date (cursor=%s)", layout.label, cursor)
            return result

        logger.info(
            "Starting %s %s sync from %d to %d",
            layout.label,
            "FULL" if full_resync else ("INCREMENTAL" if cursor is not None else "INITIAL"),
            start,
            head,
        )

        async def process(window: Window) -> None:
            raws = await self._source.fetch(window, layout)
            events = normalize_all(raws, layout)
            position = await self._source.cursor_position(window)
            await self._store.apply_window(events, self.network, layout.token, position)
            result.events += len(events)
            result.cursor = position
            if events:
                logger.info(
                    "%s window %d..%d: %d events (cursor=%d)",
                    layout.label,
                    window.start,
                    window.end,
                    len(events),
                    position,
                )
            else:
                logger.debug("%s window %d..%d: no events", layout.label, window.start, window.end)

        plan = await run_windows(
            start,
            head,
            self.planner_config,
            process,
            should_stop=self._should_stop,
            state=self._planner_states.get(layout.label),
            label=layout.label,
        )
        if plan.final_state is not None:
            self._planner_states[layout.label] = plan.final_state

        result.windows = plan.windows_committed
        result.stopped = plan.stopped
        result.duration_seconds = time.monotonic() - started
        logger.info(
            "%s sync %s: %d windows, %d events, cursor=%s (%.1fs)",
            layout.label,
            "interrupted" if plan.stopped else "completed",
            result.windows,
            result.events,
            result.cursor,
            result.duration_seconds,
        )
        return result

    async def backfill(self, *, full_resync: bool = False) -> list[TokenSyncResult]:
        """Run one backfill pass over every token, sequentially.

        Passes never overlap on one driver; a timer tick that fires while a
        pass is running waits for it.
        """
        async with self._pass_lock:
            previous = self._state
            if previous is not DriverState.LIVE:
                self._state = DriverState.BACKFILLING
            try:
                results = []
                for layout in self._layouts:
                    if self._stop_requested:
                        break
                    results.append(await self.backfill_token(layout, full_resync=full_resync))
                return results
            finally:
                if self._state is DriverState.BACKFILLING:
                    self._state = DriverState.STOPPED if self._stop_requested else DriverState.IDLE

    async def run_pass(self, *, full_resync: bool = False) -> BackfillReport:
        """Backfill pass that reports a failure instead of raising it."""
        report = BackfillReport(network=self.network)
        try:
            report.tokens = await self.backfill(full_resync=full_resync)
        except Exception as e:
            report.error = e
            logger.error("%s backfill failed: %s", self.network.value, e)
        return report

    async def start_live(self) -> None:
        """Switch to live mode and start the periodic re-backfill timer."""
        if self._state is DriverState.LIVE:
            return
        self._stop_requested = False
        self._stop_event = asyncio.Event()
        if self._live is not None:
            await self._live.start()
        self._periodic_task = asyncio.create_task(self._run_periodic_backfill())
        self._state = DriverState.LIVE
        logger.info("%s driver live", self.network.value)

    async def _run_periodic_backfill(self) -> None:
        if not self._stop_event:
            return
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._sync_interval)
                    break
                except TimeoutError:
                    pass

                logger.info("%s periodic backfill", self.network.value)
                await self.backfill()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("%s periodic backfill failed, retrying next interval: %s", self.network.value, e)

    def request_stop(self) -> None:
        """Ask in-flight passes to stop after their current window commits."""
        self._stop_requested = True
        if self._stop_event:
            self._stop_event.set()

    async def stop(self) -> None:
        """Stop live mode and wait for any in-flight window to commit."""
        self.request_stop()

        if self._live is not None:
            await self._live.stop()

        if self._periodic_task:
            # Let a running pass finish its current window before cancelling.
            async with self._pass_lock:
                self._periodic_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._periodic_task
            self._periodic_task = None

        self._state = DriverState.STOPPED
        logger.info("%s driver stopped", self.network.value)
