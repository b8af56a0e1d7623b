"""
Event Bus Adapter
=================
In-process publish/subscribe for post-commit events.

publish() never fails the caller: each handler runs in its own task, and
handler errors are logged and dropped. drain() waits for in-flight handlers
(used on shutdown and in tests).
"""

import asyncio
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Awaitable, Callable

import structlog

from schemas.event_definitions import BaseEvent, EventType

EventHandler = Callable[[BaseEvent], Awaitable[None]]


# =============================================================================
# INTERFACES
# =============================================================================

class IEventPublisher(ABC):

    @abstractmethod
    async def publish(self, event: BaseEvent) -> bool:
        pass


class IEventSubscriber(ABC):

    @abstractmethod
    async def subscribe(self, event_types: list[EventType], handler: EventHandler) -> str:
        """Returns a subscription id"""
        pass

    @abstractmethod
    async def unsubscribe(self, subscription_id: str) -> bool:
        pass


class IEventBus(IEventPublisher, IEventSubscriber):

    @abstractmethod
    async def drain(self) -> None:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryEventBus(IEventBus):
    """Fire-and-forget fan-out to subscribed handlers.

    Only the last `history_size` events are kept for inspection; 0 keeps none.
    """

    def __init__(self, history_size: int = 100):
        self._handlers: dict[EventType, list[tuple[str, EventHandler]]] = defaultdict(list)
        self._events: deque[BaseEvent] = deque(maxlen=history_size)
        self._pending: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger(component="inmemory_event_bus")

    async def publish(self, event: BaseEvent) -> bool:
        async with self._lock:
            self._events.append(event)
            handlers = list(self._handlers.get(event.event_type, []))

        for sub_id, handler in handlers:
            task = asyncio.create_task(self._dispatch(sub_id, handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        self._logger.info("event_published",
                          event_type=event.event_type.value,
                          event_id=event.event_id,
                          correlation_id=event.correlation_id,
                          handlers_notified=len(handlers))
        return True

    async def _dispatch(self, sub_id: str, handler: EventHandler, event: BaseEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            self._logger.error("handler_error",
                               event_type=event.event_type.value,
                               subscription_id=sub_id,
                               error=str(e))

    async def subscribe(self, event_types: list[EventType], handler: EventHandler) -> str:
        sub_id = str(uuid.uuid4())
        async with self._lock:
            for event_type in event_types:
                self._handlers[event_type].append((sub_id, handler))

        self._logger.info("subscribed",
                          subscription_id=sub_id,
                          event_types=[et.value for et in event_types])
        return sub_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        removed = False
        async with self._lock:
            for event_type in list(self._handlers):
                before = len(self._handlers[event_type])
                self._handlers[event_type] = [
                    (sid, h) for sid, h in self._handlers[event_type] if sid != subscription_id
                ]
                removed = removed or len(self._handlers[event_type]) != before
        return removed

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def get_published_events(self) -> list[BaseEvent]:
        return list(self._events)

    def clear_events(self):
        self._events.clear()
