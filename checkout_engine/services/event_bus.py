"""
In-process event bus
====================
Publish/subscribe for engine events (login, logout, payment verified,
mandate pending). Entitlement invalidation and the mandate watcher hang
off this bus instead of reaching into each other.
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Awaitable, Callable, Optional

import structlog

from checkout_engine.schemas.events import BaseEvent, EventType


EventHandler = Callable[[BaseEvent], Awaitable[None]]


class IEventBus(ABC):
    """Event bus interface"""

    @abstractmethod
    async def publish(self, event: BaseEvent) -> bool:
        pass

    @abstractmethod
    async def subscribe(self, event_types: list[EventType], handler: EventHandler) -> str:
        pass

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> bool:
        pass


class InMemoryEventBus(IEventBus):
    """
    In-memory event bus.
    Handler failures are logged and isolated from the publisher.
    """

    def __init__(self):
        self._handlers: dict[EventType, list[tuple[str, EventHandler]]] = defaultdict(list)
        self._events: list[BaseEvent] = []
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="event_bus")

    async def publish(self, event: BaseEvent) -> bool:
        async with self._lock:
            self._events.append(event)
            handlers = list(self._handlers.get(event.event_type, []))

        # Dispatch outside the lock so handlers may publish
        for sub_id, handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                self._logger.error("handler_error",
                                   event_type=event.event_type.value,
                                   subscription_id=sub_id,
                                   error=str(e))

        self._logger.info("event_published",
                          event_type=event.event_type.value,
                          event_id=event.event_id,
                          correlation_id=event.correlation_id,
                          handlers_notified=len(handlers))
        return True

    async def subscribe(self, event_types: list[EventType], handler: EventHandler) -> str:
        subscription_id = str(uuid.uuid4())

        async with self._lock:
            for event_type in event_types:
                self._handlers[event_type].append((subscription_id, handler))

        self._logger.info("subscribed",
                          subscription_id=subscription_id,
                          event_types=[et.value for et in event_types])
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        async with self._lock:
            for event_type in list(self._handlers.keys()):
                self._handlers[event_type] = [
                    (sid, h) for sid, h in self._handlers[event_type]
                    if sid != subscription_id
                ]

        self._logger.info("unsubscribed", subscription_id=subscription_id)
        return True

    # Testing utilities
    def get_published_events(self, event_type: Optional[EventType] = None) -> list[BaseEvent]:
        if event_type is None:
            return list(self._events)
        return [e for e in self._events if e.event_type == event_type]

    def clear_events(self):
        self._events.clear()
