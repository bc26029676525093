"""Active trip pointer for this device."""

from __future__ import annotations

import logging
from typing import Optional

from tripflow.db.preferences import PreferenceStore
from tripflow.engine.events import EventBus, TripActivated, TripDeactivated, TripUpdated
from tripflow.engine.permissions import PermissionResolver
from tripflow.engine.sync import AuthState
from tripflow.errors import RemoteError
from tripflow.remote.backend import RemoteBackend
from tripflow.state import Trip

logger = logging.getLogger(__name__)


class ActiveTripController:
    """Holds which trip the user is working in; persisted in device preferences."""

    def __init__(
        self,
        preferences: PreferenceStore,
        backend: RemoteBackend,
        auth: AuthState,
        resolver: PermissionResolver,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.preferences = preferences
        self.backend = backend
        self.auth = auth
        self.resolver = resolver
        self.bus = bus
        self._trip_id: Optional[str] = None
        self._trip: Optional[Trip] = None
        resolver.attach(self)

    @property
    def trip_id(self) -> Optional[str]:
        return self._trip_id

    @property
    def trip(self) -> Optional[Trip]:
        return self._trip

    async def load(self) -> Optional[Trip]:
        """Restore the stored pointer, dropping it if the trip is no longer reachable."""
        trip_id = await self.preferences.get_active_trip_id()
        if not trip_id:
            return None
        if not self.auth.is_authenticated:
            await self._clear(trip_id, "signed out")
            return None

        user_id = self.auth.user_id
        try:
            trips = await self.backend.fetch_trips(user_id) + await self.backend.fetch_shared_trips(user_id)
        except RemoteError as exc:
            # offline: keep the pointer, validation happens on the next load
            logger.warning("Could not validate active trip %s: %s", trip_id, exc)
            self._trip_id = trip_id
            return None

        trip = next((t for t in trips if t.id == trip_id), None)
        if trip is None:
            logger.info("Active trip %s is gone, deactivating", trip_id)
            await self._clear(trip_id, "trip no longer available")
            return None

        self._trip_id, self._trip = trip_id, trip
        await self.resolver.resolve(trip_id)
        if self.bus is not None:
            self.bus.publish(TripActivated(trip_id=trip_id))
        return trip

    async def activate(self, trip_id: str) -> bool:
        access = await self.resolver.resolve(trip_id)
        if not access.can_view:
            logger.warning("Cannot activate trip %s: no access", trip_id)
            return False
        try:
            trip = await self.backend.fetch_trip(trip_id)
        except RemoteError as exc:
            logger.warning("Activated trip %s without details: %s", trip_id, exc)
            trip = None

        self._trip_id, self._trip = trip_id, trip
        await self.preferences.set_active_trip_id(trip_id)
        logger.info("Activated trip %s", trip_id)
        if self.bus is not None:
            self.bus.publish(TripActivated(trip_id=trip_id))
        return True

    async def deactivate(self, reason: str = "") -> None:
        previous = self._trip_id
        self._trip_id, self._trip = None, None
        await self._clear(previous, reason)

    async def _clear(self, trip_id: Optional[str], reason: str) -> None:
        await self.preferences.set_active_trip_id(None)
        if trip_id is None:
            return
        logger.info("Deactivated trip %s (%s)", trip_id, reason or "requested")
        if self.bus is not None:
            self.bus.publish(TripDeactivated(trip_id=trip_id, reason=reason))

    async def refresh(self) -> Optional[Trip]:
        if self._trip_id is None:
            return None
        try:
            trip = await self.backend.fetch_trip(self._trip_id)
        except RemoteError as exc:
            logger.warning("Refreshing trip %s failed: %s", self._trip_id, exc)
            return self._trip
        if trip is None:
            await self.deactivate(reason="trip deleted")
            return None
        self._trip = trip
        if self.bus is not None:
            self.bus.publish(TripUpdated(trip_id=trip.id, trip=trip))
        return trip
