"""Permission resolver — fresh access checks for every mutation.

``resolve`` always goes to the backend. The per-trip cache it fills is only
read by ``active_flags`` for display; it never gates a write.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Optional

from tripflow.engine.events import EventBus, PermissionChanged, TripUpdated
from tripflow.engine.sync import AuthState
from tripflow.errors import RemoteError
from tripflow.remote.backend import ChangeKind, CollaboratorChange, RemoteBackend
from tripflow.state import NO_ACCESS, Location, TripAccess, TripRole

if TYPE_CHECKING:
    from tripflow.engine.active_trip import ActiveTripController

logger = logging.getLogger(__name__)


class PermissionResolver:
    def __init__(self, backend: RemoteBackend, auth: AuthState, bus: Optional[EventBus] = None) -> None:
        self.backend = backend
        self.auth = auth
        self.bus = bus
        self.active_trip: Optional[ActiveTripController] = None
        self._cache: dict[str, TripAccess] = {}
        self._task: Optional[asyncio.Task] = None

    def attach(self, active_trip: "ActiveTripController") -> None:
        self.active_trip = active_trip

    # ─── Checks ─────────────────────────────────────

    async def resolve(self, trip_id: str) -> TripAccess:
        """Fetch the trip and its collaborators and derive the actor's access.

        Any failure denies.
        """
        user_id = self.auth.user_id
        if not user_id:
            return NO_ACCESS
        try:
            trip = await self.backend.fetch_trip(trip_id)
        except RemoteError as exc:
            logger.warning("Permission check on trip %s for %s failed, denying: %s", trip_id, user_id, exc)
            return NO_ACCESS

        access = TripAccess(role=trip.role_of(user_id)) if trip is not None else NO_ACCESS
        self._cache[trip_id] = access
        return access

    async def can_modify_location(self, location: Location) -> bool:
        if location.trip_id:
            return (await self.resolve(location.trip_id)).can_modify
        if not self.auth.is_authenticated:
            return True
        return location.user_id in (self.auth.user_id, self.auth.anonymous_id)

    async def can_add_to(self, trip_id: Optional[str]) -> bool:
        if trip_id is None:
            return True
        return (await self.resolve(trip_id)).can_modify

    def cached(self, trip_id: str) -> TripAccess:
        return self._cache.get(trip_id, NO_ACCESS)

    def active_flags(self) -> tuple[bool, bool]:
        """(can_view, can_modify) for the active trip, from the display cache."""
        trip_id = self.active_trip.trip_id if self.active_trip is not None else None
        if trip_id is None:
            return True, True
        access = self.cached(trip_id)
        return access.can_view, access.can_modify

    # ─── Collaborator changes ───────────────────────

    async def handle_permission_change(self, change: CollaboratorChange) -> None:
        collaborator = change.collaborator
        if collaborator.user_id != self.auth.user_id:
            return
        trip_id = collaborator.trip_id

        if change.kind == ChangeKind.DELETE:
            access = NO_ACCESS
        else:
            access = TripAccess(role=TripRole.WRITE if collaborator.has_write_access else TripRole.READ)
        self._cache[trip_id] = access
        logger.info("Access to trip %s changed to %s (%s)", trip_id, access.role.value, change.kind.value)

        active_id = self.active_trip.trip_id if self.active_trip is not None else None
        if change.kind == ChangeKind.DELETE and trip_id == active_id:
            await self.active_trip.deactivate(reason="access removed")

        if self.bus is not None:
            if change.kind == ChangeKind.INSERT:
                self.bus.publish(TripUpdated(trip_id=trip_id))
            self.bus.publish(PermissionChanged(trip_id=trip_id, user_id=collaborator.user_id, role=access.role))

    async def _consume(self, user_id: str) -> None:
        stream = self.backend.subscribe_collaborators(user_id)
        try:
            async for change in stream:
                await self.handle_permission_change(change)
        except RemoteError as exc:
            logger.warning("Collaborator change feed for %s failed: %s", user_id, exc)
        except Exception:
            logger.exception("Collaborator change feed for %s stopped", user_id)
        finally:
            await stream.aclose()

    def start(self) -> None:
        if not self.auth.is_authenticated:
            return
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._consume(self.auth.user_id))

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
