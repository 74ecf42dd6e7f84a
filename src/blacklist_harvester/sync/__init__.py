"""Event synchronization: planning, retrieval, normalization and live feeds."""

from blacklist_harvester.sync.driver import BackfillReport, ChainDriver, DriverState, TokenSyncResult
from blacklist_harvester.sync.engine import EngineState, SyncEngine
from blacklist_harvester.sync.errors import (
    MalformedEventError,
    PaginationStallError,
    SyncError,
    WindowShrinkExhaustedError,
)
from blacklist_harvester.sync.normalizer import normalize, normalize_all
from blacklist_harvester.sync.planner import PlannerConfig, PlannerState, Window, run_windows
from blacklist_harvester.sync.sources import ChainEventSource, IndexerEventSource, LogEventSource

__all__ = [
    "BackfillReport",
    "ChainDriver",
    "ChainEventSource",
    "DriverState",
    "EngineState",
    "IndexerEventSource",
    "LogEventSource",
    "MalformedEventError",
    "PaginationStallError",
    "PlannerConfig",
    "PlannerState",
    "SyncEngine",
    "SyncError",
    "TokenSyncResult",
    "Window",
    "WindowShrinkExhaustedError",
    "normalize",
    "normalize_all",
    "run_windows",
]
