"""Sync engine — reconciles the local location store with the remote backend.

Writes always land locally first; the remote push is best effort. Failed
pushes leave ``is_synced=False`` and are retried by
``sync_unsynced_locations``. On login, locations created anonymously are
either merged into a remote record with the same fingerprint or promoted to
the signed-in user.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Iterable, Optional

from tripflow.db.persistence import LocationStore
from tripflow.engine.events import EventBus, LocationChanged
from tripflow.errors import RemoteError
from tripflow.remote.backend import ChangeKind, LocationChange, RemoteBackend
from tripflow.state import Location, LocationSource, TripRole, utcnow
from tripflow.tools.fingerprint import fingerprint

logger = logging.getLogger(__name__)

_IDENTITY_FIELDS = ("name", "lat", "lng")
_SYNC_FIELDS = ("is_synced", "last_synced_at", "source")


class AuthState:
    """Who is acting on this device: a signed-in user or the anonymous device id."""

    def __init__(self, anonymous_id: str, user_id: Optional[str] = None) -> None:
        self.anonymous_id = anonymous_id
        self.user_id = user_id

    @property
    def is_authenticated(self) -> bool:
        return bool(self.user_id)

    @property
    def actor_id(self) -> str:
        return self.user_id or self.anonymous_id


def apply_changes(location: Location, changes: dict[str, Any]) -> Location:
    """Return ``location`` with ``changes`` applied and validated.

    The fingerprint is recomputed when the name or coordinates change.
    """
    data = location.model_dump()
    data.update(changes)
    if any(field in changes for field in _IDENTITY_FIELDS):
        data["fingerprint"] = fingerprint(data["name"], data["lat"], data["lng"])
    return Location.model_validate(data)


def _same_content(a: Location, b: Location) -> bool:
    return a.model_dump(exclude=set(_SYNC_FIELDS)) == b.model_dump(exclude=set(_SYNC_FIELDS))


class SyncEngine:
    def __init__(
        self,
        store: LocationStore,
        backend: RemoteBackend,
        auth: AuthState,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.auth = auth
        self.bus = bus
        self._lock = asyncio.Lock()
        self._realtime_task: Optional[asyncio.Task] = None

    # ─── Local-first writes ─────────────────────────

    async def add_location(self, location: Location) -> Location:
        """Stamp ownership, store locally, then try to push."""
        if self.auth.is_authenticated:
            owner, source = self.auth.user_id, LocationSource.SYNCED
        else:
            owner, source = self.auth.anonymous_id, LocationSource.LOCAL
        stamped = location.model_copy(update={"user_id": owner, "source": source, "is_synced": False})
        stamped = stamped.with_fingerprint()

        await self.store.put(stamped)
        logger.info("Added location %s (%s) as %s", stamped.id, stamped.name, source.value)

        if self.auth.is_authenticated:
            await self.push(stamped)
        return stamped

    async def update_location(self, location_id: str, **changes: Any) -> Optional[Location]:
        current = await self.store.get(location_id)
        if current is None:
            logger.warning("Update of unknown location %s ignored", location_id)
            return None

        updated = apply_changes(current, {**changes, "is_synced": False})
        await self.store.put(updated)

        if self.auth.is_authenticated and updated.source == LocationSource.SYNCED:
            await self.push(updated)
        return updated

    async def update_locations(self, updates: dict[str, dict[str, Any]]) -> list[Location]:
        """Apply several updates in one store write, then push each."""
        changed: list[Location] = []
        for location_id, changes in updates.items():
            current = await self.store.get(location_id)
            if current is None:
                logger.warning("Update of unknown location %s ignored", location_id)
                continue
            changed.append(apply_changes(current, {**changes, "is_synced": False}))

        await self.store.put_many(changed)
        if self.auth.is_authenticated:
            for location in changed:
                if location.source == LocationSource.SYNCED:
                    await self.push(location)
        return changed

    async def delete_location(self, location_id: str) -> None:
        await self.delete_locations([location_id])

    async def delete_locations(self, location_ids: Iterable[str]) -> None:
        ids = list(location_ids)
        await self.store.delete_many(ids)
        if not self.auth.is_authenticated:
            return
        for location_id in ids:
            try:
                await self.backend.delete_location(location_id)
            except RemoteError as exc:
                logger.warning("Remote delete of location %s failed: %s", location_id, exc)

    async def push(self, location: Location) -> bool:
        """Upsert ``location`` remotely and mark the local copy synced.

        The local copy is only marked if it still matches what was pushed,
        so edits made while the request was in flight stay pending.
        """
        try:
            await self.backend.upsert_location(location)
        except RemoteError as exc:
            logger.warning("Push of location %s failed: %s", location.id, exc)
            return False

        current = await self.store.get(location.id)
        if current is None or not _same_content(current, location):
            return True
        synced = current.model_copy(
            update={"is_synced": True, "last_synced_at": utcnow(), "source": LocationSource.SYNCED}
        )
        await self.store.put(synced)
        return True

    # ─── Reconciliation ─────────────────────────────

    async def sync_on_login(self) -> None:
        """Merge or promote anonymous locations, then cache the remote set."""
        if not self.auth.is_authenticated:
            return
        user_id = self.auth.user_id

        async with self._lock:
            try:
                remote = await self.backend.fetch_locations(user_id)
            except RemoteError as exc:
                logger.warning("Sync on login aborted for %s: %s", user_id, exc)
                return

            remote = [record.with_fingerprint() for record in remote]
            remote_by_fingerprint: dict[str, Location] = {}
            for record in remote:
                remote_by_fingerprint.setdefault(record.fingerprint, record)

            to_push: list[Location] = []
            merged = promoted = 0
            for local in await self.store.all():
                if local.source != LocationSource.LOCAL:
                    continue
                local = local.with_fingerprint()
                match = remote_by_fingerprint.get(local.fingerprint)
                if match is not None:
                    record = match.model_copy(
                        update={
                            "is_skipped": local.is_skipped,
                            "stay_duration": local.stay_duration,
                            "scheduled_date": local.scheduled_date,
                            "source": LocationSource.SYNCED,
                            "is_synced": False,
                        }
                    )
                    if local.id != record.id:
                        await self.store.delete(local.id)
                    merged += 1
                else:
                    record = local.model_copy(
                        update={"user_id": user_id, "source": LocationSource.SYNCED, "is_synced": False}
                    )
                    promoted += 1
                await self.store.put(record)
                to_push.append(record)

            present = {location.id for location in await self.store.all()}
            await self.store.put_many([record for record in remote if record.id not in present])

            for record in to_push:
                await self.push(record)

            logger.info(
                "Sync on login for %s: %d merged, %d promoted, %d remote records",
                user_id,
                merged,
                promoted,
                len(remote),
            )

    async def _writable(self, locations: list[Location]) -> list[Location]:
        """Records the signed-in user may push: their own, or ones on a trip they can edit."""
        user_id = self.auth.user_id
        roles: dict[str, TripRole] = {}
        writable = []
        for location in locations:
            if location.user_id == user_id:
                writable.append(location)
                continue
            if location.trip_id is None:
                continue
            if location.trip_id not in roles:
                try:
                    trip = await self.backend.fetch_trip(location.trip_id)
                except RemoteError as exc:
                    logger.warning("Could not check access to trip %s: %s", location.trip_id, exc)
                    trip = None
                roles[location.trip_id] = trip.role_of(user_id) if trip is not None else TripRole.NONE
            if roles[location.trip_id] in (TripRole.OWNER, TripRole.WRITE):
                writable.append(location)
        return writable

    async def sync_unsynced_locations(self) -> int:
        """Retry the signed-in user's writable records that have not reached the remote yet."""
        if not self.auth.is_authenticated:
            return 0
        async with self._lock:
            unsynced = [
                location
                for location in await self.store.all()
                if location.source == LocationSource.SYNCED and not location.is_synced
            ]
            pending = await self._writable(unsynced)
            if len(pending) < len(unsynced):
                logger.info("Left %d unsynced locations of other users untouched", len(unsynced) - len(pending))
            pushed = 0
            for location in pending:
                if await self.push(location):
                    pushed += 1
            if pending:
                logger.info("Retried %d unsynced locations, %d pushed", len(pending), pushed)
            return pushed

    async def fetch_remote_locations(self) -> bool:
        """Cache every remote record locally, keeping local edits that are still pending."""
        if not self.auth.is_authenticated:
            return False
        try:
            remote = await self.backend.fetch_locations(self.auth.user_id)
        except RemoteError as exc:
            logger.warning("Fetching remote locations failed: %s", exc)
            return False

        pending = {
            location.id
            for location in await self.store.all()
            if location.source == LocationSource.SYNCED
            and not location.is_synced
            and (location.user_id == self.auth.user_id or location.trip_id is not None)
        }
        await self.store.put_many([record for record in remote if record.id not in pending])
        return True

    async def clean_up_anonymous_data(self) -> int:
        if not self.auth.is_authenticated:
            return 0
        leftovers = [loc.id for loc in await self.store.all() if loc.source == LocationSource.LOCAL]
        await self.store.delete_many(leftovers)
        if leftovers:
            logger.info("Removed %d leftover anonymous locations", len(leftovers))
        return len(leftovers)

    # ─── Realtime ───────────────────────────────────

    async def apply_change(self, change: LocationChange) -> None:
        if change.kind == ChangeKind.DELETE:
            await self.store.delete(change.location_id)
            location = None
        else:
            if change.location is None:
                logger.warning("Ignoring %s event without a record for %s", change.kind.value, change.location_id)
                return
            location = change.location.with_fingerprint()
            await self.store.put(location)

        if self.bus is not None:
            self.bus.publish(LocationChanged(location_id=change.location_id, location=location))

    async def _consume(self, user_id: str) -> None:
        stream = self.backend.subscribe_locations(user_id)
        try:
            async for change in stream:
                await self.apply_change(change)
        except RemoteError as exc:
            logger.warning("Location change feed for %s failed: %s", user_id, exc)
        except Exception:
            logger.exception("Location change feed for %s stopped", user_id)
        finally:
            await stream.aclose()

    def start_realtime(self) -> None:
        if not self.auth.is_authenticated:
            return
        if self._realtime_task is not None and not self._realtime_task.done():
            return
        self._realtime_task = asyncio.create_task(self._consume(self.auth.user_id))

    async def stop_realtime(self) -> None:
        task, self._realtime_task = self._realtime_task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
