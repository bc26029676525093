"""Remote backend contract — authoritative store, trips, collaborators, change feeds.

Implementations raise ``RemoteError`` for any failed call; callers in the
engine catch, log and fall back to the local store.
"""

from __future__ import annotations

from enum import Enum
from typing import AsyncIterator, Optional, Protocol

from pydantic import BaseModel, ConfigDict

from tripflow.state import Collaborator, Location, Permission, Trip


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class LocationChange(BaseModel):
    """One row-level change on the locations table.

    ``location`` is the new record for insert/update and None for delete.
    """

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    location_id: str
    location: Optional[Location] = None


class CollaboratorChange(BaseModel):
    """One change on the collaborators table; delete carries the old row."""

    model_config = ConfigDict(frozen=True)

    kind: ChangeKind
    collaborator: Collaborator


class RemoteBackend(Protocol):
    # Locations

    async def fetch_locations(self, user_id: str) -> list[Location]:
        """Every location the user may view: own ones plus those of shared trips."""
        ...

    async def fetch_trip_locations(self, trip_id: str) -> list[Location]: ...

    async def upsert_location(self, location: Location) -> Location: ...

    async def delete_location(self, location_id: str) -> None: ...

    def subscribe_locations(self, user_id: str) -> AsyncIterator[LocationChange]: ...

    # Trips

    async def fetch_trip(self, trip_id: str) -> Optional[Trip]:
        """Trip with its collaborators, or None if it no longer exists."""
        ...

    async def fetch_trips(self, user_id: str) -> list[Trip]: ...

    async def fetch_shared_trips(self, user_id: str) -> list[Trip]: ...

    async def upsert_trip(self, trip: Trip) -> Trip: ...

    async def delete_trip(self, trip_id: str) -> None: ...

    # Collaborators

    async def fetch_collaborators(self, trip_id: str) -> list[Collaborator]: ...

    async def add_collaborator(
        self,
        trip_id: str,
        user_id: str,
        permission: Permission,
        email: str = "",
        invited_by: str = "",
    ) -> Collaborator: ...

    async def update_permission(self, collaborator_id: str, permission: Permission) -> None: ...

    async def remove_collaborator(self, collaborator_id: str) -> None: ...

    def subscribe_collaborators(self, user_id: str) -> AsyncIterator[CollaboratorChange]: ...
