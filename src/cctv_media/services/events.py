"""Lifecycle event distribution.

Two delivery styles share one publish call:
- Listeners: synchronous callbacks, invoked in registration order
- Subscribers: one asyncio.Queue per subscriber, fed after the listeners

Delivery happens on the event loop thread in the order events are
published, so observers of a single id never see transitions out of order.
A failing listener or a full queue never affects other observers.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable

from ..models.events import LifecycleEvent

logger = logging.getLogger(__name__)

Listener = Callable[[LifecycleEvent], None]


class EventBus:
    """Fan-out of LifecycleEvents to listeners and subscriber queues."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._queues: list[asyncio.Queue[LifecycleEvent]] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self, maxsize: int = 0) -> asyncio.Queue[LifecycleEvent]:
        """Create a queue that receives every subsequent event.

        Args:
            maxsize: Queue bound (0 = unbounded). Events are dropped, with a
                warning, when a bounded queue is full.
        """
        queue: asyncio.Queue[LifecycleEvent] = asyncio.Queue(maxsize=maxsize)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[LifecycleEvent]) -> None:
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, event: LifecycleEvent) -> None:
        logger.debug(f"Event {event.type.value} for {event.id}")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event.type.value} for {event.id}: {e}", exc_info=True)

        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full, dropped {event.type.value} for {event.id}")
