"""In-process event bus for trip, permission and location changes.

Events are frozen pydantic models tagged by ``type``. Subscribers each get
their own queue; synchronous handlers run inline at publish time.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from tripflow.state import Location, Trip, TripRole

logger = logging.getLogger(__name__)

_CLOSED = object()


# ─── Events ───────────────────────────────────────


class Event(BaseModel):
    model_config = ConfigDict(frozen=True)


class TripActivated(Event):
    type: Literal["trip_activated"] = "trip_activated"
    trip_id: str


class TripDeactivated(Event):
    type: Literal["trip_deactivated"] = "trip_deactivated"
    trip_id: Optional[str] = None
    reason: str = ""


class TripCreated(Event):
    type: Literal["trip_created"] = "trip_created"
    trip: Trip


class TripUpdated(Event):
    type: Literal["trip_updated"] = "trip_updated"
    trip_id: str
    trip: Optional[Trip] = None


class TripDeleted(Event):
    type: Literal["trip_deleted"] = "trip_deleted"
    trip_id: str


class PermissionChanged(Event):
    type: Literal["permission_changed"] = "permission_changed"
    trip_id: str
    user_id: str
    role: TripRole


class LocationChanged(Event):
    type: Literal["location_changed"] = "location_changed"
    location_id: str
    location: Optional[Location] = None  # None when the location was deleted


BusEvent = Union[
    TripActivated,
    TripDeactivated,
    TripCreated,
    TripUpdated,
    TripDeleted,
    PermissionChanged,
    LocationChanged,
]

Handler = Callable[[Event], None]


# ─── Bus ──────────────────────────────────────────


class Subscription:
    """Async iterator over bus events; use as ``async with bus.subscribe() as events``."""

    def __init__(self, bus: "EventBus") -> None:
        self._bus = bus
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        bus._queues.add(self._queue)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Event:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        event = await self._queue.get()
        if event is _CLOSED:
            raise StopAsyncIteration
        return event

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def drain(self) -> list[Event]:
        """Everything queued so far, without waiting."""
        events = []
        while not self._queue.empty():
            event = self._queue.get_nowait()
            if event is not _CLOSED:
                events.append(event)
        return events

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._queues.discard(self._queue)
        self._queue.put_nowait(_CLOSED)


class EventBus:
    def __init__(self) -> None:
        self._queues: set[asyncio.Queue] = set()
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def publish(self, event: Event) -> None:
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception:
                    logger.exception("Event handler %r failed on %s", handler, type(event).__name__)
        for queue in list(self._queues):
            queue.put_nowait(event)

    def subscribe(self) -> Subscription:
        return Subscription(self)

    def add_handler(self, event_type: type, callback: Handler) -> Callable[[], None]:
        """Register ``callback`` for ``event_type`` (and subclasses); returns a remover."""
        self._handlers[event_type].append(callback)

        def remove() -> None:
            if callback in self._handlers[event_type]:
                self._handlers[event_type].remove(callback)

        return remove
