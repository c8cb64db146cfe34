"""In-memory alert fan-out with a bounded replay buffer."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import Counter, deque
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, List, Optional, Union

from .types import Alert, AlertType, Priority

log = logging.getLogger(__name__)

AlertPredicate = Callable[[Alert], bool]
AlertCallback = Callable[[Alert], Union[Awaitable[None], None]]

DEFAULT_BUFFER_SIZE = 1000
DEFAULT_SUBSCRIBER_QUEUE = 256


class Subscription:
    """A subscriber's private queue.

    Consumers either iterate the subscription (``async for alert in sub``)
    or pass a callback to :meth:`AlertBus.subscribe`, in which case a
    dedicated task drains the queue.  Either way one subscriber never holds
    up another one.
    """

    def __init__(
        self,
        bus: "AlertBus",
        predicate: AlertPredicate | None,
        *,
        maxsize: int,
        name: str | None = None,
    ) -> None:
        self._bus = bus
        self.predicate = predicate
        self.name = name or f"sub-{id(self):x}"
        self._queue: asyncio.Queue[Alert] = asyncio.Queue(maxsize=max(1, maxsize))
        self._task: asyncio.Task[None] | None = None
        self.dropped = 0
        self.closed = False
        self._closed = asyncio.Event()

    def matches(self, alert: Alert) -> bool:
        if self.predicate is None:
            return True
        try:
            return bool(self.predicate(alert))
        except Exception:
            log.exception("alert predicate for %s failed", self.name)
            return False

    def offer(self, alert: Alert) -> None:
        if self.closed:
            return
        if self._queue.full():
            # drop the oldest pending alert for this subscriber only
            self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
        self._queue.put_nowait(alert)

    async def get(self) -> Alert:
        return await self._queue.get()

    def get_nowait(self) -> Optional[Alert]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self) -> AsyncIterator[Alert]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Alert]:
        while not self.closed:
            getter = asyncio.ensure_future(self._queue.get())
            closer = asyncio.ensure_future(self._closed.wait())
            try:
                await asyncio.wait({getter, closer}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for fut in (getter, closer):
                    if not fut.done():
                        fut.cancel()
            if not getter.done() or getter.cancelled():
                return
            yield getter.result()

    def _start(self, callback: AlertCallback) -> None:
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._deliver(callback), name=f"alerts:{self.name}")

    async def _deliver(self, callback: AlertCallback) -> None:
        while True:
            alert = await self._queue.get()
            try:
                result = callback(alert)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                self._bus.subscriber_failures[self.name] += 1
                log.exception("alert subscriber %s failed on %s", self.name, alert.type.value)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued alert has been handed to the callback."""

        await self._queue.join()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._closed.set()
        self._bus._detach(self)
        if self._task is not None:
            self._task.cancel()
            self._task = None


class AlertBus:
    """Publish alerts to any number of subscribers without blocking."""

    def __init__(
        self,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        subscriber_queue: int = DEFAULT_SUBSCRIBER_QUEUE,
    ) -> None:
        self._buffer: Deque[Alert] = deque(maxlen=max(1, buffer_size))
        self._subscribers: List[Subscription] = []
        self._subscriber_queue = subscriber_queue
        self.published: Counter[str] = Counter()
        self.subscriber_failures: Counter[str] = Counter()

    def publish(self, alert: Alert) -> None:
        self._buffer.append(alert)
        self.published[alert.type.value] += 1
        for sub in list(self._subscribers):
            if sub.matches(alert):
                sub.offer(alert)

    def subscribe(
        self,
        predicate: AlertPredicate | None = None,
        callback: AlertCallback | None = None,
        *,
        replay: bool = True,
        name: str | None = None,
        maxsize: int | None = None,
    ) -> Subscription:
        sub = Subscription(
            self, predicate, maxsize=maxsize or self._subscriber_queue, name=name
        )
        if replay:
            for alert in self._buffer:
                if sub.matches(alert):
                    sub.offer(alert)
        self._subscribers.append(sub)
        if callback is not None:
            sub._start(callback)
        return sub

    def _detach(self, sub: Subscription) -> None:
        try:
            self._subscribers.remove(sub)
        except ValueError:
            pass

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def __len__(self) -> int:
        return len(self._buffer)

    def recent(self, limit: int = 50) -> List[Alert]:
        """Return up to ``limit`` alerts, newest first."""

        items = list(self._buffer)[-limit:] if limit > 0 else []
        items.reverse()
        return items

    def query(
        self,
        *,
        type: AlertType | str | None = None,
        priority: Priority | str | None = None,
        since: float | None = None,
        asset_id: str | None = None,
    ) -> List[Alert]:
        type_value = type.value if isinstance(type, AlertType) else type
        priority_value = priority.value if isinstance(priority, Priority) else priority
        selected = [
            alert
            for alert in self._buffer
            if (type_value is None or alert.type.value == type_value)
            and (priority_value is None or alert.priority.value == priority_value)
            and (since is None or alert.timestamp >= since)
            and (asset_id is None or alert.asset_id == asset_id)
        ]
        selected.sort(key=lambda alert: alert.timestamp, reverse=True)
        return selected

    def prune(self, older_than: float) -> int:
        """Drop buffered alerts with ``timestamp < older_than``."""

        before = len(self._buffer)
        kept = [alert for alert in self._buffer if alert.timestamp >= older_than]
        self._buffer.clear()
        self._buffer.extend(kept)
        return before - len(kept)

    def close(self) -> None:
        for sub in list(self._subscribers):
            sub.close()

    def snapshot(self) -> dict[str, Any]:
        return {
            "buffered": len(self._buffer),
            "subscribers": len(self._subscribers),
            "published": dict(self.published),
            "subscriber_failures": dict(self.subscriber_failures),
        }


__all__ = [
    "AlertBus",
    "Subscription",
    "AlertPredicate",
    "AlertCallback",
    "DEFAULT_BUFFER_SIZE",
]
