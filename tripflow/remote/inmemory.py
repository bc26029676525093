"""In-memory implementation of the RemoteBackend contract.

Used for offline sessions and tests. Change feeds are pushed to subscriber
queues synchronously inside each mutating call, so events arrive in the order
the mutations happened.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from typing import AsyncIterator, Optional

from tripflow.errors import RemoteError
from tripflow.remote.backend import ChangeKind, CollaboratorChange, LocationChange
from tripflow.state import Collaborator, Location, LocationSource, Permission, Trip, TripRole, utcnow


class InMemoryBackend:
    """RemoteBackend kept in process memory."""

    def __init__(self) -> None:
        self._locations: dict[str, Location] = {}
        self._trips: dict[str, Trip] = {}
        self._collaborators: dict[str, Collaborator] = {}
        self._location_subs: list[tuple[str, asyncio.Queue]] = []
        self._collaborator_subs: list[tuple[str, asyncio.Queue]] = []
        self._failures: dict[str, int] = defaultdict(int)
        self.offline = False
        self.calls: list[str] = []

    # ─── Failure injection ──────────────────────────

    def fail_next(self, operation: str, count: int = 1) -> None:
        """Make the next ``count`` calls of ``operation`` raise RemoteError."""
        self._failures[operation] += count

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if self.offline:
            raise RemoteError(operation, "backend offline")
        if self._failures[operation] > 0:
            self._failures[operation] -= 1
            raise RemoteError(operation, "injected failure")

    # ─── Visibility helpers ─────────────────────────

    def _trip_with_collaborators(self, trip: Trip) -> Trip:
        collaborators = [c for c in self._collaborators.values() if c.trip_id == trip.id]
        return trip.model_copy(update={"collaborators": collaborators})

    def _role(self, trip_id: str, user_id: str) -> TripRole:
        trip = self._trips.get(trip_id)
        if trip is None:
            return TripRole.NONE
        return self._trip_with_collaborators(trip).role_of(user_id)

    def _can_view(self, location: Location, user_id: str) -> bool:
        if location.trip_id is None:
            return location.user_id == user_id
        return location.user_id == user_id or self._role(location.trip_id, user_id) != TripRole.NONE

    def _emit_location(self, change: LocationChange, record: Location) -> None:
        for user_id, queue in self._location_subs:
            if self._can_view(record, user_id):
                queue.put_nowait(change)

    def _emit_collaborator(self, change: CollaboratorChange) -> None:
        for user_id, queue in self._collaborator_subs:
            if change.collaborator.user_id == user_id:
                queue.put_nowait(change)

    # ─── Locations ──────────────────────────────────

    async def fetch_locations(self, user_id: str) -> list[Location]:
        self._check("fetch_locations")
        return [loc for loc in self._locations.values() if self._can_view(loc, user_id)]

    async def fetch_trip_locations(self, trip_id: str) -> list[Location]:
        self._check("fetch_trip_locations")
        return [loc for loc in self._locations.values() if loc.trip_id == trip_id]

    async def upsert_location(self, location: Location) -> Location:
        self._check("upsert_location")
        stored = location.model_copy(update={"is_synced": True, "source": LocationSource.SYNCED})
        kind = ChangeKind.UPDATE if stored.id in self._locations else ChangeKind.INSERT
        self._locations[stored.id] = stored
        self._emit_location(LocationChange(kind=kind, location_id=stored.id, location=stored), stored)
        return stored

    async def delete_location(self, location_id: str) -> None:
        self._check("delete_location")
        old = self._locations.pop(location_id, None)
        if old is not None:
            self._emit_location(LocationChange(kind=ChangeKind.DELETE, location_id=location_id), old)

    async def subscribe_locations(self, user_id: str) -> AsyncIterator[LocationChange]:
        self._check("subscribe_locations")
        queue: asyncio.Queue = asyncio.Queue()
        entry = (user_id, queue)
        self._location_subs.append(entry)
        try:
            while True:
                yield await queue.get()
        finally:
            self._location_subs.remove(entry)

    # ─── Trips ──────────────────────────────────────

    async def fetch_trip(self, trip_id: str) -> Optional[Trip]:
        self._check("fetch_trip")
        trip = self._trips.get(trip_id)
        return self._trip_with_collaborators(trip) if trip is not None else None

    async def fetch_trips(self, user_id: str) -> list[Trip]:
        self._check("fetch_trips")
        return [self._trip_with_collaborators(t) for t in self._trips.values() if t.owner_id == user_id]

    async def fetch_shared_trips(self, user_id: str) -> list[Trip]:
        self._check("fetch_shared_trips")
        shared_ids = {c.trip_id for c in self._collaborators.values() if c.user_id == user_id}
        return [
            self._trip_with_collaborators(t)
            for t in self._trips.values()
            if t.id in shared_ids and t.owner_id != user_id
        ]

    async def upsert_trip(self, trip: Trip) -> Trip:
        self._check("upsert_trip")
        stored = trip.model_copy(update={"collaborators": [], "updated_at": utcnow()})
        self._trips[stored.id] = stored
        for collaborator in trip.collaborators:
            self._collaborators.setdefault(collaborator.id, collaborator)
        return self._trip_with_collaborators(stored)

    async def delete_trip(self, trip_id: str) -> None:
        self._check("delete_trip")
        self._trips.pop(trip_id, None)
        for collaborator in [c for c in self._collaborators.values() if c.trip_id == trip_id]:
            del self._collaborators[collaborator.id]
            self._emit_collaborator(CollaboratorChange(kind=ChangeKind.DELETE, collaborator=collaborator))

    # ─── Collaborators ──────────────────────────────

    async def fetch_collaborators(self, trip_id: str) -> list[Collaborator]:
        self._check("fetch_collaborators")
        return [c for c in self._collaborators.values() if c.trip_id == trip_id]

    async def add_collaborator(
        self,
        trip_id: str,
        user_id: str,
        permission: Permission,
        email: str = "",
        invited_by: str = "",
    ) -> Collaborator:
        self._check("add_collaborator")
        trip = self._trips.get(trip_id)
        if trip is None:
            raise RemoteError("add_collaborator", f"trip {trip_id} not found")
        if trip.owner_id == user_id:
            raise RemoteError("add_collaborator", "owner cannot be a collaborator")
        if any(c.trip_id == trip_id and c.user_id == user_id for c in self._collaborators.values()):
            raise RemoteError("add_collaborator", "already a collaborator")
        collaborator = Collaborator(
            id=str(uuid.uuid4()),
            trip_id=trip_id,
            user_id=user_id,
            email=email,
            permission=permission,
            invited_by=invited_by,
        )
        self._collaborators[collaborator.id] = collaborator
        self._emit_collaborator(CollaboratorChange(kind=ChangeKind.INSERT, collaborator=collaborator))
        return collaborator

    async def update_permission(self, collaborator_id: str, permission: Permission) -> None:
        self._check("update_permission")
        current = self._collaborators.get(collaborator_id)
        if current is None:
            raise RemoteError("update_permission", f"collaborator {collaborator_id} not found")
        updated = current.model_copy(update={"permission": permission})
        self._collaborators[collaborator_id] = updated
        self._emit_collaborator(CollaboratorChange(kind=ChangeKind.UPDATE, collaborator=updated))

    async def remove_collaborator(self, collaborator_id: str) -> None:
        self._check("remove_collaborator")
        old = self._collaborators.pop(collaborator_id, None)
        if old is not None:
            self._emit_collaborator(CollaboratorChange(kind=ChangeKind.DELETE, collaborator=old))

    async def subscribe_collaborators(self, user_id: str) -> AsyncIterator[CollaboratorChange]:
        self._check("subscribe_collaborators")
        queue: asyncio.Queue = asyncio.Queue()
        entry = (user_id, queue)
        self._collaborator_subs.append(entry)
        try:
            while True:
                yield await queue.get()
        finally:
            self._collaborator_subs.remove(entry)
