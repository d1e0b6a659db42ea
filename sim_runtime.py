"""
Single-threaded simulation runtime: a simulated clock with cancellable
scheduled continuations, and a typed publish/subscribe bus.

Deployment delays, delivery waits, deferred destruction and the trial timeout
check are all continuations on the trial's ``Scheduler``; tearing a trial
down cancels whatever is still pending.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List, Optional, Tuple, Type


LOGGER = logging.getLogger("sim_runtime")

# Absorbs float drift from accumulating fixed ticks.
_TIME_EPSILON = 1e-9


class TimerHandle:
    """Handle to a scheduled continuation."""

    __slots__ = ("when", "_callback", "_args", "_cancelled", "_interval", "_label")

    def __init__(
        self,
        when: float,
        callback: Callable[..., Any],
        args: Tuple[Any, ...],
        interval: Optional[float] = None,
        label: str = "",
    ):
        self.when = when
        self._callback = callback
        self._args = args
        self._cancelled = False
        self._interval = interval
        self._label = label

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def periodic(self) -> bool:
        return self._interval is not None

    def cancel(self) -> None:
        self._cancelled = True

    def _run(self) -> None:
        self._callback(*self._args)

    def __repr__(self) -> str:
        state = "cancelled" if self._cancelled else "pending"
        return f"<TimerHandle {self._label or self._callback!r} at={self.when:.3f} {state}>"


class Scheduler:
    """Simulated clock and timer queue, advanced once per tick."""

    def __init__(self, start_time: float = 0.0):
        self.now = start_time
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._sequence = itertools.count()
        self._running: Optional[TimerHandle] = None

    def call_at(self, when: float, callback: Callable[..., Any], *args: Any, label: str = "") -> TimerHandle:
        handle = TimerHandle(max(when, self.now), callback, args, label=label)
        self._push(handle)
        return handle

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any, label: str = "") -> TimerHandle:
        if delay < 0:
            raise ValueError(f"Negative delay {delay!r} for scheduled callback.")
        return self.call_at(self.now + delay, callback, *args, label=label)

    def call_soon(self, callback: Callable[..., Any], *args: Any, label: str = "") -> TimerHandle:
        """Run on the next ``run_due`` pass, i.e. at the start of the next tick."""

        return self.call_at(self.now, callback, *args, label=label)

    def call_every(self, interval: float, callback: Callable[..., Any], *args: Any, label: str = "") -> TimerHandle:
        if interval <= 0:
            raise ValueError("Periodic interval must be positive.")
        handle = TimerHandle(self.now + interval, callback, args, interval=interval, label=label)
        self._push(handle)
        return handle

    def advance(self, dt: float) -> int:
        """Move the clock forward by ``dt`` and run everything now due."""

        self.now += dt
        return self.run_due()

    def run_due(self) -> int:
        executed = 0
        while self._queue and self._queue[0][0] <= self.now + _TIME_EPSILON:
            _, _, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._running = handle
            try:
                handle._run()
            finally:
                self._running = None
            executed += 1
            if handle.periodic and not handle.cancelled:
                handle.when += handle._interval
                self._push(handle)
        return executed

    def cancel_all(self) -> int:
        cancelled = 0
        # A periodic callback may tear the trial down from inside its own run.
        if self._running is not None and not self._running.cancelled:
            self._running.cancel()
            cancelled += 1
        for _, _, handle in self._queue:
            if not handle.cancelled:
                handle.cancel()
                cancelled += 1
        self._queue.clear()
        if cancelled:
            LOGGER.debug("Cancelled %d pending continuations.", cancelled)
        return cancelled

    @property
    def pending(self) -> int:
        return sum(1 for _, _, handle in self._queue if not handle.cancelled)

    def _push(self, handle: TimerHandle) -> None:
        heapq.heappush(self._queue, (handle.when, next(self._sequence), handle))


Handler = Callable[[Any], None]


class Subscription:
    """A single handler registration; ``close`` detaches it."""

    def __init__(self, bus: "EventBus", event_type: Type[Any], handler: Handler):
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def close(self) -> None:
        if self.active:
            self._bus._detach(self)
            self.active = False


class SubscriptionScope:
    """Groups subscriptions whose lifetime ends together."""

    def __init__(self, bus: "EventBus"):
        self._bus = bus
        self._subscriptions: List[Subscription] = []

    def subscribe(self, event_type: Type[Any], handler: Handler) -> Subscription:
        subscription = self._bus.subscribe(event_type, handler)
        self._subscriptions.append(subscription)
        return subscription

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.close()
        self._subscriptions.clear()

    def __enter__(self) -> "SubscriptionScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class EventBus:
    """Synchronous publish/subscribe keyed on the event's class."""

    def __init__(self):
        self._handlers: DefaultDict[Type[Any], List[Subscription]] = defaultdict(list)

    def subscribe(self, event_type: Type[Any], handler: Handler) -> Subscription:
        subscription = Subscription(self, event_type, handler)
        self._handlers[event_type].append(subscription)
        return subscription

    def scope(self) -> SubscriptionScope:
        return SubscriptionScope(self)

    def publish(self, event: Any) -> None:
        subscriptions = self._handlers.get(type(event))
        if not subscriptions:
            return
        for subscription in list(subscriptions):
            if subscription.active:
                subscription.handler(event)

    def handler_count(self, event_type: Optional[Type[Any]] = None) -> int:
        if event_type is not None:
            return len(self._handlers.get(event_type, ()))
        return sum(len(subs) for subs in self._handlers.values())

    def _detach(self, subscription: Subscription) -> None:
        subscriptions = self._handlers.get(subscription.event_type)
        if not subscriptions:
            return
        try:
            subscriptions.remove(subscription)
        except ValueError:
            return
        if not subscriptions:
            del self._handlers[subscription.event_type]
