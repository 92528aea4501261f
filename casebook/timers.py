"""Cancelable delayed callbacks used for auto-advancing case nodes."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Any, Callable, List, Optional, Protocol, Tuple

logger = logging.getLogger("casebook.timers")

Callback = Callable[[], Any]


class TimerHandle:
    """A pending callback that can be cancelled until it fires."""

    def __init__(self, delay_ms: int, cancel_hook: Optional[Callable[[], None]] = None) -> None:
        self.delay_ms = delay_ms
        self.cancelled = False
        self.fired = False
        self._cancel_hook = cancel_hook

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.fired)

    def cancel(self) -> None:
        if not self.pending:
            return
        self.cancelled = True
        if self._cancel_hook is not None:
            self._cancel_hook()


class Scheduler(Protocol):
    def schedule(self, callback: Callback, delay_ms: int) -> TimerHandle:
        ...


def normalize_delay(value: object) -> int:
    try:
        delay = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    return max(delay, 0)


class ManualScheduler:
    """Virtual millisecond clock; timers only fire when ``advance`` is called."""

    def __init__(self) -> None:
        self.now_ms = 0
        self._queue: List[Tuple[int, int, TimerHandle, Callback]] = []
        self._sequence = itertools.count()

    def schedule(self, callback: Callback, delay_ms: int) -> TimerHandle:
        delay = normalize_delay(delay_ms)
        handle = TimerHandle(delay, lambda: self._discard(handle))
        heapq.heappush(self._queue, (self.now_ms + delay, next(self._sequence), handle, callback))
        return handle

    def _discard(self, handle: TimerHandle) -> None:
        self._queue = [entry for entry in self._queue if entry[2] is not handle]
        heapq.heapify(self._queue)

    def queued(self) -> int:
        """Number of timers still waiting to fire."""
        return len(self._queue)

    def pending(self) -> List[TimerHandle]:
        return [entry[2] for entry in sorted(self._queue) if entry[2].pending]

    def advance(self, delta_ms: int) -> int:
        """Move the clock forward, firing due timers in order. Returns how many fired."""
        target = self.now_ms + normalize_delay(delta_ms)
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._queue)
            self.now_ms = due
            if not handle.pending:
                continue
            handle.fired = True
            callback()
            fired += 1
        self.now_ms = target
        return fired


class AsyncioScheduler:
    """Schedules callbacks on a running asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(self, callback: Callback, delay_ms: int) -> TimerHandle:
        delay = normalize_delay(delay_ms)
        timer: Optional[asyncio.TimerHandle] = None

        def cancel_timer() -> None:
            if timer is not None:
                timer.cancel()

        handle = TimerHandle(delay, cancel_timer)

        def run() -> None:
            if not handle.pending:
                return
            handle.fired = True
            callback()

        timer = self.loop.call_later(delay / 1000.0, run)
        logger.debug("Scheduled callback in %d ms.", delay)
        return handle
