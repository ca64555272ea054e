"""Internal events, control commands and the public transition stream."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

from loguru import logger

from proccompose.models import Phase, Reason


# ============================================================================
# Events produced by runner, health and restart tasks
# ============================================================================

@dataclass(frozen=True)
class Event:
    """Base event. ``run`` is the launch generation that produced it."""

    name: str
    run: int


@dataclass(frozen=True)
class ProcessStarted(Event):
    pid: int


@dataclass(frozen=True)
class LaunchFailed(Event):
    error: str


@dataclass(frozen=True)
class ProcessExited(Event):
    exit_code: int


@dataclass(frozen=True)
class ProbeReported(Event):
    """One probe attempt finished."""

    ok: bool
    message: str
    successes: int
    failures: int


@dataclass(frozen=True)
class ProbeSucceeded(Event):
    """Consecutive successes reached the success threshold."""

    successes: int


@dataclass(frozen=True)
class ProbeFailed(Event):
    """Consecutive failures reached the failure threshold."""

    failures: int
    message: str = ""


@dataclass(frozen=True)
class RestartDue(Event):
    """Backoff elapsed; the process may be relaunched."""


# ============================================================================
# Control commands (answered through a future by the scheduler loop)
# ============================================================================

@dataclass
class Command:
    future: asyncio.Future = field(repr=False)


@dataclass
class StartCommand(Command):
    names: frozenset[str] | None = None  # None means all


@dataclass
class StopCommand(Command):
    names: frozenset[str] = frozenset()
    halt: bool = False  # stopping everything: suppress launches and restarts


@dataclass
class RestartCommand(Command):
    name: str = ""


@dataclass
class Barrier(Command):
    """Resolved once every event queued before it has been handled."""


# ============================================================================
# Public transition stream
# ============================================================================

@dataclass(frozen=True)
class TransitionEvent:
    """A phase change of one process."""

    process: str
    old: Phase
    new: Phase
    reason: Reason | None = None
    exit_code: int | None = None
    message: str | None = None
    at: datetime = field(default_factory=datetime.now)


class Subscription:
    """Async iterator over transition events.

    Iteration ends when the subscription or its bus is closed.
    """

    _CLOSED = object()

    def __init__(self, bus: EventBus, maxsize: int = 0):
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def _put(self, item: object) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            # Slow consumer: drop the oldest event
            dropped = self._queue.get_nowait()
            logger.warning(f"Subscriber queue full, dropped event {dropped}")
            self._queue.put_nowait(item)

    async def get(self, timeout: float | None = None) -> TransitionEvent:
        """Wait for the next event.

        Raises:
            asyncio.TimeoutError: if nothing arrives within ``timeout``.
            StopAsyncIteration: if the subscription was closed.
        """
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
        if item is self._CLOSED:
            self._closed = True
            raise StopAsyncIteration
        return item

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> TransitionEvent:
        return await self.get()

    def close(self) -> None:
        """Stop receiving events and end iteration."""
        self._bus.unsubscribe(self)
        self._put(self._CLOSED)
        self._closed = True

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class EventBus:
    """Fan-out of transition events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscription] = []

    def subscribe(self, maxsize: int = 0) -> Subscription:
        subscription = Subscription(self, maxsize=maxsize)
        self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, event: TransitionEvent) -> None:
        for subscription in list(self._subscribers):
            subscription._put(event)

    def close(self) -> None:
        for subscription in list(self._subscribers):
            subscription.close()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
