"""Time sources and cancellable timers for the tracking scheduler.

The engine never calls :func:`time.time` or :func:`asyncio.sleep` directly.
Production code runs on :class:`SystemClock`; tests drive
:class:`ManualClock` forward explicitly and every timer due inside the
advanced window fires in timestamp order.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol

log = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle:
    """Handle returned by :meth:`Clock.call_later`."""

    __slots__ = ("when", "name", "_callback", "_cancelled", "_timer")

    def __init__(self, when: float, callback: TimerCallback, name: str | None = None) -> None:
        self.when = when
        self.name = name
        self._callback = callback
        self._cancelled = False
        self._timer: asyncio.TimerHandle | None = None

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def __repr__(self) -> str:  # pragma: no cover - debugging helper
        state = "cancelled" if self._cancelled else "pending"
        return f"<TimerHandle {self.name or '?'} when={self.when:.3f} {state}>"


class Clock(Protocol):
    def now(self) -> float:
        ...

    def call_later(
        self, delay: float, callback: TimerCallback, *, name: str | None = None
    ) -> TimerHandle:
        ...

    async def sleep(self, delay: float) -> None:
        ...


def _log_task_failure(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("timer callback %s failed", task.get_name(), exc_info=exc)


class SystemClock:
    """Wall-clock time with ``loop.call_later`` timers."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[None]] = set()

    def now(self) -> float:
        return time.time()

    def call_later(
        self, delay: float, callback: TimerCallback, *, name: str | None = None
    ) -> TimerHandle:
        loop = asyncio.get_running_loop()
        delay = max(0.0, float(delay))
        handle = TimerHandle(self.now() + delay, callback, name)

        def _fire() -> None:
            handle._timer = None
            if handle.cancelled:
                return
            task = loop.create_task(callback(), name=name or "mintwatch-timer")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            task.add_done_callback(_log_task_failure)

        handle._timer = loop.call_later(delay, _fire)
        return handle

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(0.0, delay))

    async def drain(self) -> None:
        """Wait for callbacks that already fired to finish."""

        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class ManualClock:
    """Deterministic clock for tests.

    Timers only fire inside :meth:`advance`.  Callbacks are awaited one at a
    time, so a callback that schedules a new timer inside the advanced window
    sees it fire in the same call.
    """

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)
        self._queue: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def set(self, value: float) -> None:
        self._now = float(value)

    def call_later(
        self, delay: float, callback: TimerCallback, *, name: str | None = None
    ) -> TimerHandle:
        handle = TimerHandle(self._now + max(0.0, float(delay)), callback, name)
        heapq.heappush(self._queue, (handle.when, next(self._seq), handle))
        return handle

    async def sleep(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        waiter: asyncio.Future[None] = loop.create_future()

        async def _wake() -> None:
            if not waiter.done():
                waiter.set_result(None)

        self.call_later(delay, _wake, name="sleep")
        await waiter

    def pending(self) -> int:
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    def next_due(self) -> Optional[float]:
        for when, _, handle in sorted(self._queue):
            if not handle.cancelled:
                return when
        return None

    async def advance(self, seconds: float) -> None:
        target = self._now + max(0.0, float(seconds))
        while self._queue and self._queue[0][0] <= target:
            when, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, when)
            try:
                await handle._callback()
            except Exception:
                log.exception("timer callback %s failed", handle.name)
            # let tasks spawned by the callback make progress
            await asyncio.sleep(0)
        self._now = target


__all__ = ["Clock", "TimerHandle", "SystemClock", "ManualClock", "TimerCallback"]
