"""Live feed: near-real-time events between backfill passes.

Producers (an Ethereum log subscription, or pollers built on the backfill
event sources) push ``(layout, RawEvent)`` pairs onto a bounded queue. A
single consumer normalizes each event and writes it through the same store
path as backfill. Overlapping polls are de-duplicated by a bounded
recently-seen set keyed on (network, transaction hash, log index).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from web3 import AsyncWeb3, WebSocketProvider

from blacklist_harvester.models import Network, RawEvent
from blacklist_harvester.sync.errors import MalformedEventError
from blacklist_harvester.sync.normalizer import normalize
from blacklist_harvester.sync.planner import Window

if TYPE_CHECKING:
    from blacklist_harvester.chains.ethereum import EthereumClient
    from blacklist_harvester.contracts import ContractLayout
    from blacklist_harvester.storage.store import DenylistStore
    from blacklist_harvester.sync.sources import ChainEventSource

logger = logging.getLogger(__name__)

DEFAULT_SEEN_CAPACITY = 10_000
DEFAULT_MAX_RECONNECT_DELAY = 60  # seconds
DEFAULT_INITIAL_RECONNECT_DELAY = 1  # seconds

LiveItem = tuple["ContractLayout", RawEvent]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


@dataclass
class LiveStats:
    events_received: int = 0
    events_applied: int = 0
    duplicates_skipped: int = 0
    malformed_dropped: int = 0
    write_errors: int = 0
    reconnect_count: int = 0
    last_error: str | None = None


class RecentlySeen:
    """Bounded insertion-ordered set; the oldest key is evicted first."""

    def __init__(self, capacity: int = DEFAULT_SEEN_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity = capacity
        self._keys: OrderedDict[tuple[Any, ...], None] = OrderedDict()

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def add(self, key: tuple[Any, ...]) -> None:
        self._keys[key] = None
        self._keys.move_to_end(key)
        while len(self._keys) > self._capacity:
            self._keys.popitem(last=False)


class LiveConsumer:
    """Drains the live queue into the store."""

    def __init__(
        self,
        store: DenylistStore,
        queue: asyncio.Queue[LiveItem],
        *,
        seen_capacity: int = DEFAULT_SEEN_CAPACITY,
        stats: LiveStats | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._seen = RecentlySeen(seen_capacity)
        self.stats = stats or LiveStats()

    async def process(self, layout: ContractLayout, raw: RawEvent) -> bool:
        """Apply one event. Returns True if it was written."""
        try:
            event = normalize(raw, layout)
        except MalformedEventError as e:
            self.stats.malformed_dropped += 1
            logger.warning("Dropping malformed live %s event: %s", layout.label, e)
            return False

        key = (event.network.value, event.transaction_hash, event.log_index)
        if key in self._seen:
            self.stats.duplicates_skipped += 1
            return False

        await self._store.upsert([event])
        self._seen.add(key)
        self.stats.events_applied += 1
        logger.info(
            "Live %s %s %s at block %d",
            layout.label,
            event.direction.value,
            event.address,
            event.block_number,
        )
        return True

    async def run(self) -> None:
        while True:
            layout, raw = await self._queue.get()
            try:
                await self.process(layout, raw)
            except Exception as e:
                self.stats.write_errors += 1
                self.stats.last_error = str(e)
                logger.error("Live write failed for %s: %s", layout.label, e)
            finally:
                self._queue.task_done()


class LiveProducer(ABC):
    """Something that feeds raw events into the live queue until stopped."""

    @abstractmethod
    async def run(self, queue: asyncio.Queue[LiveItem], stop_event: asyncio.Event) -> None: ...


class PollingProducer(LiveProducer):
    """Re-reads the tail of the chain on a fixed interval.

    Each tick fetches ``[head - lookback, head]`` through the backfill source,
    so live mode shares the backfill retrieval and normalization path.
    """

    def __init__(
        self,
        source: ChainEventSource,
        layouts: Sequence[ContractLayout],
        *,
        interval_seconds: float,
        lookback: int,
        stats: LiveStats | None = None,
    ) -> None:
        self._source = source
        self._layouts = list(layouts)
        self._interval = interval_seconds
        self._lookback = lookback
        self.stats = stats or LiveStats()

    async def poll_once(self, queue: asyncio.Queue[LiveItem]) -> int:
        head = await self._source.head()
        window = Window(max(0, head - self._lookback), head)
        queued = 0
        for layout in self._layouts:
            for raw in await self._source.fetch(window, layout):
                await queue.put((layout, raw))
                queued += 1
        self.stats.events_received += queued
        return queued

    async def run(self, queue: asyncio.Queue[LiveItem], stop_event: asyncio.Event) -> None:
        network = self._source.network.value
        logger.info("%s live polling every %.1fs (lookback %d)", network, self._interval, self._lookback)
        while not stop_event.is_set():
            try:
                await self.poll_once(queue)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.last_error = str(e)
                logger.warning("%s live poll failed: %s", network, e)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
                break
            except TimeoutError:
                pass


class EthereumLogSubscriber(LiveProducer):
    """``eth_subscribe("logs")`` over a WebSocket, reconnecting with backoff."""

    def __init__(
        self,
        ws_url: str,
        client: EthereumClient,
        layouts: Sequence[ContractLayout],
        *,
        max_reconnect_delay: int = DEFAULT_MAX_RECONNECT_DELAY,
        initial_reconnect_delay: int = DEFAULT_INITIAL_RECONNECT_DELAY,
        stats: LiveStats | None = None,
    ) -> None:
        self._ws_url = ws_url
        self._client = client
        self._layouts = {layout.address.lower(): layout for layout in layouts}
        self._max_reconnect_delay = max_reconnect_delay
        self._initial_reconnect_delay = initial_reconnect_delay
        self._state = ConnectionState.DISCONNECTED
        self.stats = stats or LiveStats()

    @property
    def state(self) -> ConnectionState:
        return self._state

    def _set_state(self, new_state: ConnectionState) -> None:
        if self._state != new_state:
            old = self._state
            self._state = new_state
            logger.info("Ethereum log subscription state: %s -> %s", old.value, new_state.value)

    def _filter_params(self) -> dict[str, Any]:
        signatures = [sig for layout in self._layouts.values() for sig in layout.signatures]
        return {
            "address": [AsyncWeb3.to_checksum_address(a) for a in self._layouts],
            "topics": [signatures],
        }

    async def _handle_log(self, log: dict[str, Any], queue: asyncio.Queue[LiveItem]) -> None:
        if log.get("removed"):
            return
        layout = self._layouts.get(str(log.get("address", "")).lower())
        if layout is None:
            logger.debug("Ignoring log from unexpected address %s", log.get("address"))
            return
        block_number = int(log["blockNumber"])
        timestamp = await self._client.get_block_timestamp(block_number)
        await queue.put((layout, RawEvent(network=Network.ETHEREUM, payload=log, timestamp=timestamp)))
        self.stats.events_received += 1

    async def _listen(self, queue: asyncio.Queue[LiveItem], stop_event: asyncio.Event) -> None:
        async with AsyncWeb3(WebSocketProvider(self._ws_url)) as w3:
            subscription_id = await w3.eth.subscribe("logs", self._filter_params())
            self._set_state(ConnectionState.CONNECTED)
            logger.info("Subscribed to Ethereum denylist logs (%s)", subscription_id)
            async for message in w3.socket.process_subscriptions():
                if stop_event.is_set():
                    break
                result = message.get("result") if isinstance(message, dict) else None
                if isinstance(result, dict):
                    await self._handle_log(dict(result), queue)

    async def run(self, queue: asyncio.Queue[LiveItem], stop_event: asyncio.Event) -> None:
        delay = self._initial_reconnect_delay
        while not stop_event.is_set():
            try:
                await self._listen(queue, stop_event)
                delay = self._initial_reconnect_delay
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats.reconnect_count += 1
                self.stats.last_error = str(e)
                self._set_state(ConnectionState.RECONNECTING)
                logger.warning("Ethereum log subscription dropped: %s (retry in %ss)", e, delay)
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                    break
                except TimeoutError:
                    pass
                delay = min(self._max_reconnect_delay, delay * 2)
        self._set_state(ConnectionState.DISCONNECTED)


class LiveListener:
    """Runs one chain's producers and the shared consumer as background tasks."""

    def __init__(
        self,
        store: DenylistStore,
        producers: Sequence[LiveProducer],
        *,
        queue_size: int = 1000,
        seen_capacity: int = DEFAULT_SEEN_CAPACITY,
    ) -> None:
        self.stats = LiveStats()
        self._queue: asyncio.Queue[LiveItem] = asyncio.Queue(maxsize=queue_size)
        self._consumer = LiveConsumer(store, self._queue, seen_capacity=seen_capacity, stats=self.stats)
        self._producers = list(producers)
        self._stop_event: asyncio.Event | None = None
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            raise RuntimeError("Live listener already running")
        self._stop_event = asyncio.Event()
        self._tasks.append(asyncio.create_task(self._consumer.run()))
        for producer in self._producers:
            self._tasks.append(asyncio.create_task(producer.run(self._queue, self._stop_event)))

    async def stop(self, *, drain_timeout: float = 5.0) -> None:
        """Stop producers, let queued events drain, then cancel the consumer."""
        if self._stop_event:
            self._stop_event.set()

        consumer, producers = (self._tasks[0], self._tasks[1:]) if self._tasks else (None, [])
        for task in producers:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        if consumer is not None:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer

        self._tasks = []
