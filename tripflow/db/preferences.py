"""Device-local preferences — anonymous identity, active trip pointer, route settings.

These never leave the device: two collaborators can each have a different
active trip at the same time.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tripflow.db.models import Base, PreferenceRow

logger = logging.getLogger(__name__)

ANONYMOUS_ID_KEY = "anonymous_user_id"
ACTIVE_TRIP_KEY = "local_active_trip_id"
PROXIMITY_THRESHOLD_KEY = "proximity_threshold"


class PreferenceStore:
    """Key/value preferences stored next to the location table."""

    def __init__(self, database_url: str, default_proximity_threshold: float = 1000.0) -> None:
        self.engine = create_async_engine(database_url)
        self.session_factory = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)
        self.default_proximity_threshold = default_proximity_threshold
        self._anonymous_id: Optional[str] = None

    async def init_table(self) -> None:
        """Create the preferences table if it doesn't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def get(self, key: str) -> Optional[str]:
        async with self.session_factory() as session:
            row = await session.get(PreferenceRow, key)
            return row.value if row is not None else None

    async def set(self, key: str, value: Optional[str]) -> None:
        """Store ``value`` under ``key``; None removes the key."""
        async with self.session_factory() as session:
            if value is None:
                await session.execute(delete(PreferenceRow).where(PreferenceRow.key == key))
            else:
                await session.merge(
                    PreferenceRow(key=key, value=value, updated_at=datetime.now(timezone.utc))
                )
            await session.commit()

    async def get_anonymous_id(self) -> str:
        """Stable per-device id used as owner of locations created while signed out."""
        if self._anonymous_id is not None:
            return self._anonymous_id
        stored = await self.get(ANONYMOUS_ID_KEY)
        if stored is None:
            stored = str(uuid.uuid4())
            await self.set(ANONYMOUS_ID_KEY, stored)
            logger.info("Generated anonymous device id %s", stored)
        self._anonymous_id = stored
        return stored

    async def get_active_trip_id(self) -> Optional[str]:
        return await self.get(ACTIVE_TRIP_KEY)

    async def set_active_trip_id(self, trip_id: Optional[str]) -> None:
        await self.set(ACTIVE_TRIP_KEY, trip_id)

    async def get_proximity_threshold(self) -> float:
        stored = await self.get(PROXIMITY_THRESHOLD_KEY)
        if stored is None:
            return self.default_proximity_threshold
        try:
            return float(stored)
        except ValueError:
            logger.warning("Ignoring unreadable proximity threshold %r", stored)
            return self.default_proximity_threshold

    async def set_proximity_threshold(self, meters: float) -> None:
        if meters <= 0:
            raise ValueError("proximity threshold must be positive")
        await self.set(PROXIMITY_THRESHOLD_KEY, repr(float(meters)))
