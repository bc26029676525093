"""RemoteBackend over a PostgREST-style HTTP API.

Tables: ``locations``, ``trips``, ``trip_collaborators``. Row visibility is
enforced server-side; this client only shapes the queries. Change feeds are
emulated by polling and diffing the visible rows.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import Any, AsyncIterator, Iterator, Optional

import httpx

from tripflow.errors import RemoteError
from tripflow.remote.backend import ChangeKind, CollaboratorChange, LocationChange
from tripflow.state import Collaborator, Location, Permission, Trip, utcnow

logger = logging.getLogger(__name__)

LOCATIONS = "locations"
TRIPS = "trips"
COLLABORATORS = "trip_collaborators"


def _in(values: list[str]) -> str:
    return f"in.({','.join(values)})"


@contextlib.contextmanager
def _decoding(operation: str) -> Iterator[None]:
    """Report rows that do not have the expected shape as a RemoteError."""
    try:
        yield
    except (KeyError, TypeError, ValueError) as exc:
        raise RemoteError(operation, f"malformed row: {exc!r}") from exc


class RestBackend:
    """RemoteBackend talking to ``{base_url}/rest/v1``."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        access_token: Optional[str] = None,
        timeout: float = 15.0,
        poll_interval: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.access_token = access_token
        self.poll_interval = poll_interval
        self._client = httpx.AsyncClient(
            base_url=f"{self.base_url}/rest/v1",
            timeout=timeout,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, prefer: Optional[str] = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        operation: str,
        method: str,
        table: str,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> list[dict]:
        try:
            resp = await self._client.request(
                method, f"/{table}", params=params, json=json, headers=self._headers(prefer)
            )
            resp.raise_for_status()
            if not resp.content:
                return []
            data = resp.json()
        except httpx.HTTPError as exc:
            raise RemoteError(operation, str(exc)) from exc
        except ValueError as exc:
            raise RemoteError(operation, "invalid JSON response") from exc
        if isinstance(data, dict):
            return [data]
        return data

    # ─── Locations ──────────────────────────────────

    async def fetch_locations(self, user_id: str) -> list[Location]:
        rows = await self._request(
            "fetch_locations", "GET", LOCATIONS, params={"select": "*", "user_id": f"eq.{user_id}"}
        )
        memberships = await self._request(
            "fetch_locations", "GET", COLLABORATORS, params={"select": "trip_id", "user_id": f"eq.{user_id}"}
        )
        with _decoding("fetch_locations"):
            trip_ids = sorted({str(row["trip_id"]) for row in memberships})
        if trip_ids:
            rows += await self._request(
                "fetch_locations", "GET", LOCATIONS, params={"select": "*", "trip_id": _in(trip_ids)}
            )

        by_id: dict[str, Location] = {}
        with _decoding("fetch_locations"):
            for row in rows:
                location = Location.from_record(row)
                by_id.setdefault(location.id, location)
        return list(by_id.values())

    async def fetch_trip_locations(self, trip_id: str) -> list[Location]:
        rows = await self._request(
            "fetch_trip_locations", "GET", LOCATIONS, params={"select": "*", "trip_id": f"eq.{trip_id}"}
        )
        with _decoding("fetch_trip_locations"):
            return [Location.from_record(row) for row in rows]

    async def upsert_location(self, location: Location) -> Location:
        record = location.to_record()
        record["is_synced"] = True
        record["last_synced_at"] = utcnow().isoformat()
        rows = await self._request(
            "upsert_location",
            "POST",
            LOCATIONS,
            json=record,
            prefer="resolution=merge-duplicates,return=representation",
        )
        with _decoding("upsert_location"):
            return Location.from_record(rows[0]) if rows else Location.from_record(record)

    async def delete_location(self, location_id: str) -> None:
        await self._request("delete_location", "DELETE", LOCATIONS, params={"id": f"eq.{location_id}"})

    async def subscribe_locations(self, user_id: str) -> AsyncIterator[LocationChange]:
        known = {loc.id: loc for loc in await self.fetch_locations(user_id)}
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                current = {loc.id: loc for loc in await self.fetch_locations(user_id)}
            except RemoteError as exc:
                logger.warning("Location poll failed for %s: %s", user_id, exc)
                continue

            for location_id, location in current.items():
                previous = known.get(location_id)
                if previous is None:
                    yield LocationChange(kind=ChangeKind.INSERT, location_id=location_id, location=location)
                elif previous != location:
                    yield LocationChange(kind=ChangeKind.UPDATE, location_id=location_id, location=location)
            for location_id in known.keys() - current.keys():
                yield LocationChange(kind=ChangeKind.DELETE, location_id=location_id)
            known = current

    # ─── Trips ──────────────────────────────────────

    async def _with_collaborators(self, operation: str, rows: list[dict]) -> list[Trip]:
        if not rows:
            return []
        with _decoding(operation):
            trip_ids = [str(row["id"]) for row in rows]
        collaborator_rows = await self._request(
            operation, "GET", COLLABORATORS, params={"select": "*", "trip_id": _in(trip_ids)}
        )
        grouped: dict[str, list[Collaborator]] = {trip_id: [] for trip_id in trip_ids}
        with _decoding(operation):
            for row in collaborator_rows:
                collaborator = Collaborator.from_record(row)
                grouped.setdefault(collaborator.trip_id, []).append(collaborator)
            return [Trip.from_record(row, grouped[str(row["id"])]) for row in rows]

    async def fetch_trip(self, trip_id: str) -> Optional[Trip]:
        rows = await self._request("fetch_trip", "GET", TRIPS, params={"select": "*", "id": f"eq.{trip_id}"})
        trips = await self._with_collaborators("fetch_trip", rows)
        return trips[0] if trips else None

    async def fetch_trips(self, user_id: str) -> list[Trip]:
        rows = await self._request(
            "fetch_trips", "GET", TRIPS, params={"select": "*", "user_id": f"eq.{user_id}", "order": "updated_at.desc"}
        )
        return await self._with_collaborators("fetch_trips", rows)

    async def fetch_shared_trips(self, user_id: str) -> list[Trip]:
        memberships = await self._request(
            "fetch_shared_trips", "GET", COLLABORATORS, params={"select": "trip_id", "user_id": f"eq.{user_id}"}
        )
        with _decoding("fetch_shared_trips"):
            trip_ids = sorted({str(row["trip_id"]) for row in memberships})
        if not trip_ids:
            return []
        rows = await self._request(
            "fetch_shared_trips", "GET", TRIPS, params={"select": "*", "id": _in(trip_ids), "user_id": f"neq.{user_id}"}
        )
        return await self._with_collaborators("fetch_shared_trips", rows)

    async def upsert_trip(self, trip: Trip) -> Trip:
        record = trip.to_record()
        record["updated_at"] = utcnow().isoformat()
        rows = await self._request(
            "upsert_trip", "POST", TRIPS, json=record, prefer="resolution=merge-duplicates,return=representation"
        )
        saved = rows[0] if rows else record
        with _decoding("upsert_trip"):
            return Trip.from_record(saved, list(trip.collaborators))

    async def delete_trip(self, trip_id: str) -> None:
        await self._request("delete_trip", "DELETE", TRIPS, params={"id": f"eq.{trip_id}"})

    # ─── Collaborators ──────────────────────────────

    async def fetch_collaborators(self, trip_id: str) -> list[Collaborator]:
        rows = await self._request(
            "fetch_collaborators", "GET", COLLABORATORS, params={"select": "*", "trip_id": f"eq.{trip_id}"}
        )
        with _decoding("fetch_collaborators"):
            return [Collaborator.from_record(row) for row in rows]

    async def add_collaborator(
        self,
        trip_id: str,
        user_id: str,
        permission: Permission,
        email: str = "",
        invited_by: str = "",
    ) -> Collaborator:
        collaborator = Collaborator(
            id=str(uuid.uuid4()),
            trip_id=trip_id,
            user_id=user_id,
            email=email,
            permission=permission,
            invited_by=invited_by,
        )
        rows = await self._request(
            "add_collaborator", "POST", COLLABORATORS, json=collaborator.to_record(), prefer="return=representation"
        )
        with _decoding("add_collaborator"):
            return Collaborator.from_record(rows[0]) if rows else collaborator

    async def update_permission(self, collaborator_id: str, permission: Permission) -> None:
        await self._request(
            "update_permission",
            "PATCH",
            COLLABORATORS,
            params={"id": f"eq.{collaborator_id}"},
            json={"permission": permission.value},
        )

    async def remove_collaborator(self, collaborator_id: str) -> None:
        await self._request("remove_collaborator", "DELETE", COLLABORATORS, params={"id": f"eq.{collaborator_id}"})

    async def _fetch_memberships(self, user_id: str) -> dict[str, Collaborator]:
        rows = await self._request(
            "subscribe_collaborators", "GET", COLLABORATORS, params={"select": "*", "user_id": f"eq.{user_id}"}
        )
        with _decoding("subscribe_collaborators"):
            return {str(row["id"]): Collaborator.from_record(row) for row in rows}

    async def subscribe_collaborators(self, user_id: str) -> AsyncIterator[CollaboratorChange]:
        known = await self._fetch_memberships(user_id)
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                current = await self._fetch_memberships(user_id)
            except RemoteError as exc:
                logger.warning("Collaborator poll failed for %s: %s", user_id, exc)
                continue

            for collaborator_id, collaborator in current.items():
                previous = known.get(collaborator_id)
                if previous is None:
                    yield CollaboratorChange(kind=ChangeKind.INSERT, collaborator=collaborator)
                elif previous.permission != collaborator.permission:
                    yield CollaboratorChange(kind=ChangeKind.UPDATE, collaborator=collaborator)
            for collaborator_id in known.keys() - current.keys():
                yield CollaboratorChange(kind=ChangeKind.DELETE, collaborator=known[collaborator_id])
            known = current
