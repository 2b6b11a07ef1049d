"""Notification service — route alert deliveries to channel subscribers.

Fan-out architecture: one input queue → many output queues. A subscriber
may restrict itself to a set of delivery channels; events without a
channel (plain ``RawEvent``) reach every subscriber.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from account_guard.notifications.events import RawEvent

logger = logging.getLogger(__name__)

_INPUT_BUFFER = 100


@dataclass(frozen=True)
class _Subscriber:
    queue: asyncio.Queue[RawEvent]
    channels: frozenset[str] | None

    def wants(self, event: RawEvent) -> bool:
        channel = getattr(event, "channel", "")
        return self.channels is None or not channel or channel in self.channels


class NotificationService:
    """Asyncio-based notification fan-out service.

    Usage::

        svc = NotificationService()
        q = svc.add_subscriber("smtp", channels=["email"])
        await svc.start()
        await svc.notify(AlertEvent(alert_id="alert_1", channel="email"))
        event = await q.get()
        await svc.stop()
    """

    def __init__(self, *, buffer_size: int = _INPUT_BUFFER) -> None:
        self._buffer_size = buffer_size
        self._input: asyncio.Queue[RawEvent] = asyncio.Queue(maxsize=buffer_size)
        self._subscribers: dict[str, _Subscriber] = {}
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._published = 0
        self._dropped = 0

    @property
    def is_running(self) -> bool:
        """Whether the exchange loop is running."""
        return self._running

    @property
    def subscribers(self) -> list[str]:
        return list(self._subscribers)

    @property
    def stats(self) -> dict[str, int]:
        """Events accepted and events dropped because a queue was full."""
        return {"published": self._published, "dropped": self._dropped}

    def add_subscriber(
        self,
        key: str,
        *,
        channels: Iterable[str] | None = None,
        buffer: int | None = None,
    ) -> asyncio.Queue[RawEvent]:
        """Register a subscriber and return its output queue.

        Args:
            key: Subscriber name; re-registering replaces the old queue.
            channels: Delivery channels to receive. None receives everything.
            buffer: Queue size, defaults to the service buffer size.
        """
        q: asyncio.Queue[RawEvent] = asyncio.Queue(maxsize=buffer or self._buffer_size)
        wanted = frozenset(channels) if channels is not None else None
        self._subscribers[key] = _Subscriber(queue=q, channels=wanted)
        return q

    def remove_subscriber(self, key: str) -> None:
        """Unregister a subscriber."""
        self._subscribers.pop(key, None)

    async def notify(self, event: RawEvent) -> None:
        """Enqueue an event for fan-out to the interested subscribers."""
        try:
            self._input.put_nowait(event)
            self._published += 1
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning("Notification input queue full — dropping event %s", event.type)

    async def start(self) -> None:
        """Start the exchange loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._exchange())

    async def stop(self) -> None:
        """Stop the exchange loop."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def _exchange(self) -> None:
        """Read events from input and fan-out to matching subscribers."""
        while self._running:
            try:
                event = await asyncio.wait_for(self._input.get(), timeout=1.0)
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                raise
            for key, sub in list(self._subscribers.items()):
                if not sub.wants(event):
                    continue
                try:
                    sub.queue.put_nowait(event)
                except asyncio.QueueFull:
                    self._dropped += 1
                    logger.warning("Subscriber %s queue full — dropping event", key)
