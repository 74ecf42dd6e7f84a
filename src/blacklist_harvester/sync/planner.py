"""Range planning for historical backfill.

The planner walks ``[resume, head]`` as a sequence of contiguous,
non-overlapping windows grouped into bounded super-batches. The caller's
``process`` coroutine fetches and commits one window; when it raises
``RangeLimitError`` the window size is halved and the same window is tried
again. A window is never skipped.

Positions are plain integers: block numbers on Ethereum, millisecond
timestamps on TRON.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass

from blacklist_harvester.chains.errors import RangeLimitError
from blacklist_harvester.sync.errors import WindowShrinkExhaustedError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Window:
    """Inclusive position range ``[start, end]``."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"window end {self.end} precedes start {self.start}")

    @property
    def span(self) -> int:
        return self.end - self.start + 1


@dataclass(frozen=True)
class PlannerState:
    """Current window size, threaded through the planning loop."""

    window_size: int

    def shrink(self, floor: int) -> PlannerState:
        return PlannerState(window_size=max(floor, self.window_size // 2))


@dataclass(frozen=True)
class PlannerConfig:
    initial_window: int
    min_window: int
    super_batch: int
    pacing_delay_seconds: float = 0.1

    def __post_init__(self) -> None:
        if self.min_window < 1:
            raise ValueError("min_window must be >= 1")
        if self.initial_window < self.min_window:
            raise ValueError("initial_window must be >= min_window")
        if self.super_batch < 1:
            raise ValueError("super_batch must be >= 1")

    def initial_state(self) -> PlannerState:
        return PlannerState(window_size=self.initial_window)


@dataclass
class PlanResult:
    """Outcome of one planning run."""

    windows_committed: int = 0
    last_committed: Window | None = None
    final_state: PlannerState | None = None
    stopped: bool = False


def super_batches(start: int, head: int, span: int) -> Iterator[Window]:
    """Split ``[start, head]`` into consecutive batches of at most ``span``."""
    batch_start = start
    while batch_start <= head:
        batch_end = min(batch_start + span - 1, head)
        yield Window(batch_start, batch_end)
        batch_start = batch_end + 1


def next_window(position: int, limit: int, state: PlannerState) -> Window:
    """Window starting at ``position`` sized by ``state``, clipped to ``limit``."""
    return Window(position, min(position + state.window_size - 1, limit))


async def run_windows(
    start: int,
    head: int,
    config: PlannerConfig,
    process: Callable[[Window], Awaitable[None]],
    *,
    should_stop: Callable[[], bool] | None = None,
    state: PlannerState | None = None,
    label: str = "",
) -> PlanResult:
    """Drive ``process`` over every window of ``[start, head]`` in order.

    Args:
        start: First position to cover.
        head: Last position to cover (inclusive).
        config: Window sizing and pacing.
        process: Fetches and commits one window. Raising ``RangeLimitError``
            requests a smaller window; any other error aborts the run.
        should_stop: Checked between windows; returning True ends the run
            after the current window has committed.
        state: Starting window size; defaults to ``config.initial_window``.
        label: Prefix for log lines.

    Raises:
        WindowShrinkExhaustedError: If a minimum-size window still hits the
            provider limit.
    """
    state = state or config.initial_state()
    result = PlanResult(final_state=state)

    for batch in super_batches(start, head, config.super_batch):
        logger.info("%s processing batch %d..%d", label, batch.start, batch.end)
        position = batch.start
        while position <= batch.end:
            if should_stop is not None and should_stop():
                result.stopped = True
                result.final_state = state
                return result

            window = next_window(position, batch.end, state)
            try:
                await process(window)
            except RangeLimitError as e:
                if state.window_size <= config.min_window:
                    raise WindowShrinkExhaustedError(
                        f"{label} window {window.start}..{window.end} exceeds provider limits "
                        f"at minimum size {config.min_window}: {e}"
                    ) from e
                state = state.shrink(config.min_window)
                logger.warning("%s reducing window to %d: %s", label, state.window_size, e)
                continue

            result.windows_committed += 1
            result.last_committed = window
            position = window.end + 1

            if config.pacing_delay_seconds > 0:
                await asyncio.sleep(config.pacing_delay_seconds)

    result.final_state = state
    return result
