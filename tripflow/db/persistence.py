"""Async local store of Location records, with change-notification streams."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta
from typing import AsyncIterator, Iterable

from sqlalchemy import delete, func, inspect, select
from sqlalchemy.exc import DatabaseError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tripflow.db.models import Base, LocationRow
from tripflow.errors import StoreCorruptedError
from tripflow.state import Location, LocationSource

logger = logging.getLogger(__name__)

_CLOSED = object()  # sentinel pushed to watcher queues on close()


def _to_row(location: Location, position: int) -> LocationRow:
    travel = location.travel_time_from_previous
    return LocationRow(
        id=location.id,
        user_id=location.user_id,
        trip_id=location.trip_id,
        name=location.name,
        address=location.address,
        lat=location.lat,
        lng=location.lng,
        added_at=location.added_at.isoformat(),
        scheduled_date=location.scheduled_date,
        stay_seconds=int(location.stay_duration.total_seconds()),
        is_skipped=location.is_skipped,
        travel_seconds=int(travel.total_seconds()) if travel is not None else None,
        distance_m=location.distance_from_previous,
        fingerprint=location.fingerprint,
        source=location.source.value,
        is_synced=location.is_synced,
        last_synced_at=location.last_synced_at.isoformat() if location.last_synced_at else None,
        position=position,
    )


def _from_row(row: LocationRow) -> Location:
    return Location(
        id=row.id,
        user_id=row.user_id,
        trip_id=row.trip_id,
        name=row.name,
        address=row.address,
        lat=row.lat,
        lng=row.lng,
        added_at=datetime.fromisoformat(row.added_at),
        scheduled_date=row.scheduled_date,
        stay_duration=timedelta(seconds=row.stay_seconds),
        is_skipped=bool(row.is_skipped),
        travel_time_from_previous=timedelta(seconds=row.travel_seconds) if row.travel_seconds is not None else None,
        distance_from_previous=row.distance_m,
        fingerprint=row.fingerprint,
        source=LocationSource(row.source),
        is_synced=bool(row.is_synced),
        last_synced_at=datetime.fromisoformat(row.last_synced_at) if row.last_synced_at else None,
    )


class LocationStore:
    """Durable Location store backed by SQLAlchemy.

    Every mutation runs under one lock and publishes a full snapshot to each
    watcher after it commits, so watchers see mutations in commit order.
    """

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self._make_engine()
        self._lock = asyncio.Lock()
        self._watchers: set[asyncio.Queue] = set()

    def _make_engine(self) -> None:
        self.engine = create_async_engine(self.database_url, echo=False)
        self.async_session = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    # ─── Open / recovery ─────────────────────────────

    async def init(self) -> None:
        """Open the store, resetting it if the persisted data is unreadable."""
        try:
            await self._open()
        except (StoreCorruptedError, SQLAlchemyError, ValueError) as exc:
            logger.warning("Local store unreadable (%s), resetting %s", exc, self.database_url)
            await self._reset()
        logger.info("Local location store ready.")

    async def _open(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            columns = await conn.run_sync(
                lambda sync_conn: {col["name"] for col in inspect(sync_conn).get_columns(LocationRow.__tablename__)}
            )
        expected = {col.name for col in LocationRow.__table__.columns}
        if columns != expected:
            raise StoreCorruptedError(f"schema mismatch: missing={expected - columns} extra={columns - expected}")
        # Decode every row once; a row that no longer parses means the cache is junk.
        await self._load_all()

    async def _reset(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)
                await conn.run_sync(Base.metadata.create_all)
            return
        except DatabaseError:
            logger.warning("Could not drop tables, removing the store file")

        await self.engine.dispose()
        path = self.engine.url.database
        if path and path != ":memory:" and os.path.exists(path):
            os.remove(path)
        self._make_engine()
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    # ─── Reads ──────────────────────────────────────

    async def _load_all(self) -> list[Location]:
        async with self.async_session() as session:
            result = await session.execute(select(LocationRow).order_by(LocationRow.position, LocationRow.id))
            rows = list(result.scalars().all())
        try:
            return [_from_row(row) for row in rows]
        except (ValueError, TypeError) as exc:
            raise StoreCorruptedError(f"undecodable row: {exc}") from exc

    async def get(self, location_id: str) -> Location | None:
        async with self.async_session() as session:
            row = await session.get(LocationRow, location_id)
            return _from_row(row) if row is not None else None

    async def all(self) -> list[Location]:
        return await self._load_all()

    # ─── Writes ─────────────────────────────────────

    async def put(self, location: Location) -> None:
        await self.put_many([location])

    async def put_many(self, locations: Iterable[Location]) -> None:
        """Insert or replace records; existing records keep their position."""
        locations = list(locations)
        if not locations:
            return
        async with self._lock:
            async with self.async_session() as session:
                next_position = (await session.scalar(select(func.max(LocationRow.position)))) or 0
                for location in locations:
                    existing = await session.get(LocationRow, location.id)
                    if existing is not None:
                        position = existing.position
                    else:
                        next_position += 1
                        position = next_position
                    await session.merge(_to_row(location, position))
                await session.commit()
            await self._publish()

    async def delete(self, location_id: str) -> None:
        await self.delete_many([location_id])

    async def delete_many(self, location_ids: Iterable[str]) -> None:
        ids = list(location_ids)
        if not ids:
            return
        async with self._lock:
            async with self.async_session() as session:
                await session.execute(delete(LocationRow).where(LocationRow.id.in_(ids)))
                await session.commit()
            await self._publish()

    async def move(self, location_id: str, before_id: str | None = None) -> bool:
        """Move a record just before ``before_id`` (to the end when None)."""
        async with self._lock:
            async with self.async_session() as session:
                result = await session.execute(select(LocationRow).order_by(LocationRow.position, LocationRow.id))
                rows = list(result.scalars().all())
                moving = next((row for row in rows if row.id == location_id), None)
                if moving is None:
                    return False
                rows.remove(moving)
                index = next((i for i, row in enumerate(rows) if row.id == before_id), len(rows))
                rows.insert(index, moving)
                for position, row in enumerate(rows, start=1):
                    row.position = position
                await session.commit()
            await self._publish()
        return True

    async def clear(self) -> None:
        async with self._lock:
            async with self.async_session() as session:
                await session.execute(delete(LocationRow))
                await session.commit()
            await self._publish()

    # ─── Watch ──────────────────────────────────────

    async def _publish(self) -> None:
        if not self._watchers:
            return
        snapshot = await self._load_all()
        for queue in self._watchers:
            queue.put_nowait(snapshot)

    async def watch(self) -> AsyncIterator[list[Location]]:
        """Yield the full collection now, then again after every mutation.

        Close the generator (``aclose()``) to unsubscribe.
        """
        queue: asyncio.Queue = asyncio.Queue()
        async with self._lock:
            queue.put_nowait(await self._load_all())
            self._watchers.add(queue)
        try:
            while True:
                snapshot = await queue.get()
                if snapshot is _CLOSED:
                    return
                yield snapshot
        finally:
            self._watchers.discard(queue)

    async def close(self) -> None:
        for queue in list(self._watchers):
            queue.put_nowait(_CLOSED)
        self._watchers.clear()
        await self.engine.dispose()
