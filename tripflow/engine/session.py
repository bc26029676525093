"""Trip session — wires the store, sync, permissions, filter graph and routing.

Every mutation entry point re-checks permission against the backend before
touching anything. A denied or invalid mutation is logged and returns False.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from concurrent.futures import Executor
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Iterable, Optional

from tripflow.config.settings import Settings, get_settings
from tripflow.db.persistence import LocationStore
from tripflow.db.preferences import PreferenceStore
from tripflow.engine.active_trip import ActiveTripController
from tripflow.engine.events import (
    EventBus,
    PermissionChanged,
    TripActivated,
    TripCreated,
    TripDeactivated,
    TripDeleted,
)
from tripflow.engine.permissions import PermissionResolver
from tripflow.engine.route import RouteCoordinator
from tripflow.engine.sync import AuthState, SyncEngine
from tripflow.errors import RemoteError
from tripflow.graph import FilterGraph, Snapshot
from tripflow.remote.backend import RemoteBackend
from tripflow.state import (
    Collaborator,
    LatLng,
    Location,
    Permission,
    RouteResult,
    RouteStatus,
    Trip,
    TripRole,
    is_finite_point,
    utcnow,
)
from tripflow.tools.directions import DirectionsProvider
from tripflow.tools.export import export_plan_csv
from tripflow.tools.geo import haversine_m

logger = logging.getLogger(__name__)


class TripSession:
    def __init__(
        self,
        store: LocationStore,
        preferences: PreferenceStore,
        backend: RemoteBackend,
        directions: DirectionsProvider,
        auth: AuthState,
        settings: Optional[Settings] = None,
        bus: Optional[EventBus] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.preferences = preferences
        self.backend = backend
        self.auth = auth
        self.bus = bus or EventBus()

        self.sync = SyncEngine(store, backend, auth, self.bus)
        self.permissions = PermissionResolver(backend, auth, self.bus)
        self.active = ActiveTripController(preferences, backend, auth, self.permissions, self.bus)
        self.graph = FilterGraph(
            Snapshot(user_id=auth.user_id, is_anonymous=not auth.is_authenticated, selected_date=date.today())
        )
        self.routes = RouteCoordinator(
            directions,
            threshold_m=self.settings.DEFAULT_PROXIMITY_THRESHOLD,
            debounce=self.settings.ROUTE_DEBOUNCE_SECONDS,
            timeout=self.settings.DIRECTIONS_TIMEOUT,
            executor=executor,
        )
        self.current_position: Optional[LatLng] = None

        self._watch_task: Optional[asyncio.Task] = None
        self._unsubscribe: list[Any] = []

    # ─── Lifecycle ──────────────────────────────────

    async def start(self) -> None:
        self.routes.threshold_m = await self.preferences.get_proximity_threshold()

        self._unsubscribe = [
            self.bus.add_handler(TripActivated, self._on_trip_changed),
            self.bus.add_handler(TripDeactivated, self._on_trip_changed),
            self.bus.add_handler(PermissionChanged, self._on_permission_changed),
            self.routes.add_listener(self._on_route),
        ]

        await self._refresh()
        self._watch_task = asyncio.create_task(self._feed_graph())

        if self.auth.is_authenticated:
            await self.sync.sync_on_login()
            await self.sync.sync_unsynced_locations()
        await self.active.load()
        self._sync_actor()

        self.sync.start_realtime()
        self.permissions.start()
        logger.info("Session started for %s", self.auth.actor_id)

    async def stop(self) -> None:
        await self.sync.stop_realtime()
        await self.permissions.stop()
        await self.routes.close()

        task, self._watch_task = self._watch_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for remove in self._unsubscribe:
            remove()
        self._unsubscribe = []
        logger.info("Session stopped for %s", self.auth.actor_id)

    async def sign_in(self, user_id: str) -> None:
        """Switch from anonymous to ``user_id`` and reconcile anonymous data."""
        self.auth.user_id = user_id
        self._sync_actor()
        await self.sync.sync_on_login()
        await self.sync.sync_unsynced_locations()
        await self.active.load()
        self._sync_actor()
        await self._refresh()
        self.sync.start_realtime()
        self.permissions.start()

    async def sign_out(self) -> None:
        await self.sync.stop_realtime()
        await self.permissions.stop()
        await self.active.deactivate(reason="signed out")
        self.auth.user_id = None
        self._sync_actor()
        self.routes.clear(self.selected_date)

    # ─── Graph feeding ──────────────────────────────

    async def _feed_graph(self) -> None:
        stream = self.store.watch()
        try:
            async for snapshot in stream:
                self.graph.update(locations=snapshot)
        finally:
            await stream.aclose()

    async def _refresh(self) -> None:
        self.graph.update(locations=await self.store.all())

    def _sync_actor(self) -> None:
        can_view, _ = self.permissions.active_flags()
        self.graph.update(
            user_id=self.auth.user_id,
            is_anonymous=not self.auth.is_authenticated,
            active_trip_id=self.active.trip_id,
            can_view=can_view,
        )

    def _on_trip_changed(self, event: Any) -> None:
        self.routes.clear(self.selected_date)
        self._sync_actor()

    def _on_permission_changed(self, event: PermissionChanged) -> None:
        if event.trip_id == self.active.trip_id:
            self._sync_actor()

    def _on_route(self, result: RouteResult, status: RouteStatus) -> None:
        self.graph.update(route=result if not result.is_empty else None)

    # ─── Presentation surface ───────────────────────

    @property
    def visible_locations(self) -> list[Location]:
        return self.graph.visible

    @property
    def active_waypoints(self) -> list[Location]:
        return self.graph.active_waypoints

    @property
    def dates_with_locations(self) -> list[date]:
        return self.graph.dates_with_locations

    @property
    def selected_date(self) -> Optional[date]:
        return self.graph.snapshot.selected_date

    @property
    def route(self) -> RouteResult:
        return self.routes.result

    @property
    def route_status(self) -> RouteStatus:
        return self.routes.status

    @property
    def permission_flags(self) -> tuple[bool, bool]:
        return self.permissions.active_flags()

    @property
    def active_trip(self) -> Optional[Trip]:
        return self.active.trip

    # ─── Location mutations ─────────────────────────

    async def _modifiable(self, location_id: str, action: str) -> Optional[Location]:
        location = await self.store.get(location_id)
        if location is None:
            logger.warning("%s: location %s not found", action, location_id)
            return None
        if not await self.permissions.can_modify_location(location):
            logger.warning("%s denied on location %s for %s", action, location_id, self.auth.actor_id)
            return None
        return location

    async def add_location(
        self,
        name: str,
        lat: float,
        lng: float,
        address: str = "",
        scheduled_date: Optional[date] = None,
        stay_duration: Optional[timedelta] = None,
    ) -> bool:
        if not is_finite_point(lat, lng):
            logger.warning("Rejected location %r with invalid coordinates (%s, %s)", name, lat, lng)
            return False
        trip_id = self.active.trip_id
        if not await self.permissions.can_add_to(trip_id):
            logger.warning("Add to trip %s denied for %s", trip_id, self.auth.actor_id)
            return False

        location = Location.create(
            name,
            lat,
            lng,
            address=address,
            scheduled_date=scheduled_date or self.selected_date,
            trip_id=trip_id,
            stay_duration=stay_duration or timedelta(minutes=self.settings.DEFAULT_STAY_MINUTES),
        )
        await self.sync.add_location(location)
        await self._refresh()
        return True

    async def remove_location(self, location_id: str) -> bool:
        return await self.remove_locations([location_id])

    async def remove_locations(self, location_ids: Iterable[str]) -> bool:
        """Remove all given locations, or none if any of them is not modifiable."""
        ids = list(dict.fromkeys(location_ids))
        if not ids:
            return False
        for location_id in ids:
            if await self._modifiable(location_id, "remove") is None:
                return False
        await self.sync.delete_locations(ids)
        self.routes.clear(self.selected_date)
        await self._refresh()
        return True

    async def reorder_location(self, location_id: str, new_index: int) -> bool:
        """Move a visible location to ``new_index`` among the visible ones."""
        if await self._modifiable(location_id, "reorder") is None:
            return False
        others = [loc for loc in self.visible_locations if loc.id != location_id]
        if new_index < 0:
            return False
        before_id = others[new_index].id if new_index < len(others) else None
        if not await self.store.move(location_id, before_id):
            return False
        self.routes.clear(self.selected_date)
        await self._refresh()
        return True

    async def rename_location(self, location_id: str, name: str) -> bool:
        name = name.strip()
        if not name:
            return False
        if await self._modifiable(location_id, "rename") is None:
            return False
        await self.sync.update_location(location_id, name=name)
        await self._refresh()
        return True

    async def set_stay_duration(self, location_id: str, duration: timedelta) -> bool:
        if duration < timedelta(0):
            logger.warning("Rejected negative stay duration for %s", location_id)
            return False
        if await self._modifiable(location_id, "set stay") is None:
            return False
        updated = await self.sync.update_location(location_id, stay_duration=duration)
        if updated is not None:
            self.routes.retotal([updated])
        await self._refresh()
        return True

    async def set_skipped(self, location_id: str, skipped: bool) -> bool:
        if await self._modifiable(location_id, "skip") is None:
            return False
        await self.sync.update_location(location_id, is_skipped=skipped)
        await self._refresh()
        return True

    async def schedule_location(self, location_id: str, day: date) -> bool:
        return await self.schedule_locations([location_id], day)

    async def schedule_locations(self, location_ids: Iterable[str], day: date) -> bool:
        ids = list(dict.fromkeys(location_ids))
        if not ids:
            return False
        for location_id in ids:
            if await self._modifiable(location_id, "schedule") is None:
                return False
        await self.sync.update_locations({location_id: {"scheduled_date": day} for location_id in ids})
        await self._refresh()
        return True

    async def copy_locations_to_date(self, location_ids: Iterable[str], day: date) -> bool:
        """Duplicate locations onto ``day`` with fresh ids and no travel details."""
        sources = []
        for location_id in dict.fromkeys(location_ids):
            location = await self.store.get(location_id)
            if location is None:
                continue
            if not await self.permissions.can_add_to(location.trip_id):
                logger.warning("Copy into trip %s denied for %s", location.trip_id, self.auth.actor_id)
                return False
            sources.append(location)
        if not sources:
            return False

        for location in sources:
            copy = location.model_copy(
                update={
                    "id": str(uuid.uuid4()),
                    "scheduled_date": day,
                    "added_at": utcnow(),
                    "travel_time_from_previous": None,
                    "distance_from_previous": None,
                    "is_synced": False,
                    "last_synced_at": None,
                }
            )
            await self.sync.add_location(copy)
        await self._refresh()
        return True

    # ─── View state ─────────────────────────────────

    def select_date(self, day: date) -> None:
        if day == self.selected_date:
            return
        self.routes.clear(day)
        self.graph.update(selected_date=day)

    def update_current_position(self, position: LatLng) -> bool:
        """Record the live position; moves under the jitter threshold are ignored."""
        if self.current_position is not None:
            moved = haversine_m(self.current_position.lat, self.current_position.lng, position.lat, position.lng)
            if moved < self.settings.MIN_POSITION_DELTA_M:
                return False
        self.current_position = position
        return True

    async def set_proximity_threshold(self, meters: float) -> bool:
        try:
            await self.preferences.set_proximity_threshold(meters)
        except ValueError as exc:
            logger.warning("Rejected proximity threshold %s: %s", meters, exc)
            return False
        self.routes.threshold_m = meters
        return True

    def request_route(self, start_location_id: Optional[str] = None) -> asyncio.Task:
        return self.routes.request(
            self.graph.for_date,
            selected_date=self.selected_date,
            start_location_id=start_location_id,
            current_position=self.current_position,
        )

    async def compute_route(self, start_location_id: Optional[str] = None) -> RouteResult:
        return await self.routes.compute_now(
            self.graph.for_date,
            selected_date=self.selected_date,
            start_location_id=start_location_id,
            current_position=self.current_position,
        )

    def export_csv(self, path: str | Path) -> Optional[Path]:
        return export_plan_csv(self.visible_locations, path)

    # ─── Trips ──────────────────────────────────────

    async def activate_trip(self, trip_id: str) -> bool:
        return await self.active.activate(trip_id)

    async def deactivate_trip(self) -> None:
        await self.active.deactivate()

    async def list_trips(self) -> tuple[list[Trip], list[Trip]]:
        """(owned, shared) trips of the signed-in user."""
        if not self.auth.is_authenticated:
            return [], []
        try:
            owned = await self.backend.fetch_trips(self.auth.user_id)
            shared = await self.backend.fetch_shared_trips(self.auth.user_id)
        except RemoteError as exc:
            logger.warning("Listing trips failed: %s", exc)
            return [], []
        return owned, shared

    async def create_trip(
        self,
        name: str,
        description: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> Optional[Trip]:
        if not self.auth.is_authenticated:
            logger.warning("Trips need a signed-in user")
            return None
        trip = Trip(
            id=str(uuid.uuid4()),
            owner_id=self.auth.user_id,
            name=name,
            description=description,
            start_date=start_date,
            end_date=end_date,
        )
        try:
            saved = await self.backend.upsert_trip(trip)
        except RemoteError as exc:
            logger.warning("Creating trip %r failed: %s", name, exc)
            return None
        self.bus.publish(TripCreated(trip=saved))
        return saved

    async def _owns(self, trip_id: str, action: str) -> bool:
        access = await self.permissions.resolve(trip_id)
        if access.role != TripRole.OWNER:
            logger.warning("%s on trip %s denied for %s", action, trip_id, self.auth.actor_id)
            return False
        return True

    async def delete_trip(self, trip_id: str) -> bool:
        if not await self._owns(trip_id, "delete"):
            return False
        try:
            await self.backend.delete_trip(trip_id)
        except RemoteError as exc:
            logger.warning("Deleting trip %s failed: %s", trip_id, exc)
            return False

        if self.active.trip_id == trip_id:
            await self.active.deactivate(reason="trip deleted")
        await self.store.delete_many([loc.id for loc in await self.store.all() if loc.trip_id == trip_id])
        self.bus.publish(TripDeleted(trip_id=trip_id))
        await self._refresh()
        return True

    async def share_trip(
        self, trip_id: str, user_id: str, permission: Permission, email: str = ""
    ) -> Optional[Collaborator]:
        if not await self._owns(trip_id, "share"):
            return None
        try:
            return await self.backend.add_collaborator(
                trip_id, user_id, permission, email=email, invited_by=self.auth.user_id or ""
            )
        except RemoteError as exc:
            logger.warning("Sharing trip %s with %s failed: %s", trip_id, user_id, exc)
            return None

    async def update_collaborator_permission(self, trip_id: str, collaborator_id: str, permission: Permission) -> bool:
        if not await self._owns(trip_id, "change permission"):
            return False
        try:
            await self.backend.update_permission(collaborator_id, permission)
        except RemoteError as exc:
            logger.warning("Updating collaborator %s failed: %s", collaborator_id, exc)
            return False
        return True

    async def remove_collaborator(self, trip_id: str, collaborator_id: str) -> bool:
        if not await self._owns(trip_id, "remove collaborator"):
            return False
        try:
            await self.backend.remove_collaborator(collaborator_id)
        except RemoteError as exc:
            logger.warning("Removing collaborator %s failed: %s", collaborator_id, exc)
            return False
        return True
