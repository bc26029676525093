"""Tests for the local location store, preferences and startup init."""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import date, datetime, timedelta, timezone

import pytest

from tripflow.db.migrations import init_db
from tripflow.db.persistence import LocationStore
from tripflow.db.preferences import PreferenceStore
from tripflow.state import LocationSource


class TestLocationStore:
    @pytest.mark.asyncio
    async def test_put_and_get(self, store, make_location):
        location = make_location(
            "Louvre",
            48.860611,
            2.337644,
            added_at=datetime(2026, 3, 14, 9, 30, tzinfo=timezone.utc),
            stay_duration=timedelta(minutes=75),
            travel_time_from_previous=timedelta(minutes=12),
            distance_from_previous=850.5,
            source=LocationSource.SYNCED,
        )
        await store.put(location)

        restored = await store.get(location.id)
        assert restored == location
        assert restored.added_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_get_missing(self, store):
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_insertion_order_kept_on_update(self, store, paris):
        await store.put_many(paris)
        await store.put(paris[0].model_copy(update={"name": "Musée du Louvre"}))

        names = [loc.name for loc in await store.all()]
        assert names == ["Musée du Louvre", "Tuileries", "Versailles", "Orsay"]

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, store, paris):
        await store.put_many(paris)
        await store.delete(paris[0].id)
        await store.delete_many([paris[1].id, "unknown"])
        assert [loc.id for loc in await store.all()] == [paris[2].id, paris[3].id]

        await store.clear()
        assert await store.all() == []

    @pytest.mark.asyncio
    async def test_move(self, store, paris):
        await store.put_many(paris)
        assert await store.move(paris[3].id, before_id=paris[0].id)
        assert [loc.name for loc in await store.all()] == ["Orsay", "Louvre", "Tuileries", "Versailles"]

        assert await store.move(paris[3].id)
        assert [loc.name for loc in await store.all()][-1] == "Orsay"
        assert not await store.move("missing")


class TestWatch:
    @pytest.mark.asyncio
    async def test_replays_current_contents_then_each_mutation(self, store, paris):
        await store.put(paris[0])
        stream = store.watch()

        first = await asyncio.wait_for(stream.__anext__(), 1)
        assert [loc.id for loc in first] == [paris[0].id]

        await store.put(paris[1])
        await store.delete(paris[0].id)

        second = await asyncio.wait_for(stream.__anext__(), 1)
        third = await asyncio.wait_for(stream.__anext__(), 1)
        assert [loc.id for loc in second] == [paris[0].id, paris[1].id]
        assert [loc.id for loc in third] == [paris[1].id]
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_watchers_are_independent(self, store, paris):
        one, two = store.watch(), store.watch()
        await one.__anext__()
        await two.__anext__()

        await store.put(paris[0])
        assert len(await asyncio.wait_for(one.__anext__(), 1)) == 1
        assert len(await asyncio.wait_for(two.__anext__(), 1)) == 1
        await one.aclose()
        await two.aclose()

    @pytest.mark.asyncio
    async def test_close_ends_watchers(self, db_url):
        store = LocationStore(db_url)
        await store.init()
        stream = store.watch()
        await stream.__anext__()

        await store.close()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(stream.__anext__(), 1)


class TestRecovery:
    @pytest.mark.asyncio
    async def test_garbage_file_is_reset(self, tmp_path):
        path = tmp_path / "broken.db"
        path.write_bytes(b"this is definitely not a sqlite database" * 100)

        store = LocationStore(f"sqlite+aiosqlite:///{path}")
        await store.init()
        assert await store.all() == []
        await store.close()

    @pytest.mark.asyncio
    async def test_schema_mismatch_is_reset(self, tmp_path, make_location):
        path = tmp_path / "old.db"
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE locations (id TEXT PRIMARY KEY, title TEXT)")
        conn.execute("INSERT INTO locations VALUES ('a', 'old row')")
        conn.commit()
        conn.close()

        store = LocationStore(f"sqlite+aiosqlite:///{path}")
        await store.init()
        assert await store.all() == []

        location = make_location("Louvre", 48.86, 2.33)
        await store.put(location)
        assert await store.get(location.id) == location
        await store.close()

    @pytest.mark.asyncio
    async def test_undecodable_row_is_reset(self, tmp_path, make_location):
        url = f"sqlite+aiosqlite:///{tmp_path / 'rows.db'}"
        store = LocationStore(url)
        await store.init()
        await store.put(make_location("Louvre", 48.86, 2.33))
        await store.close()

        conn = sqlite3.connect(tmp_path / "rows.db")
        conn.execute("UPDATE locations SET source = 'martian'")
        conn.commit()
        conn.close()

        reopened = LocationStore(url)
        await reopened.init()
        assert await reopened.all() == []
        await reopened.close()


class TestPreferences:
    @pytest.mark.asyncio
    async def test_anonymous_id_is_stable(self, db_url, preferences):
        first = await preferences.get_anonymous_id()
        assert first == await preferences.get_anonymous_id()

        other = PreferenceStore(db_url)
        assert await other.get_anonymous_id() == first
        await other.close()

    @pytest.mark.asyncio
    async def test_active_trip_pointer(self, preferences):
        assert await preferences.get_active_trip_id() is None
        await preferences.set_active_trip_id("trip-1")
        assert await preferences.get_active_trip_id() == "trip-1"
        await preferences.set_active_trip_id(None)
        assert await preferences.get_active_trip_id() is None

    @pytest.mark.asyncio
    async def test_proximity_threshold(self, preferences):
        assert await preferences.get_proximity_threshold() == 1000.0
        await preferences.set_proximity_threshold(250.0)
        assert await preferences.get_proximity_threshold() == 250.0
        with pytest.raises(ValueError):
            await preferences.set_proximity_threshold(0)

    @pytest.mark.asyncio
    async def test_unreadable_threshold_falls_back(self, preferences):
        await preferences.set("proximity_threshold", "far")
        assert await preferences.get_proximity_threshold() == 1000.0


class TestInitDb:
    @pytest.mark.asyncio
    async def test_creates_directory_and_tables(self, tmp_path, make_location):
        url = f"sqlite+aiosqlite:///{tmp_path / 'nested' / 'dir' / 'app.db'}"
        store, preferences = await init_db(url, default_proximity_threshold=500.0)

        assert (tmp_path / "nested" / "dir").is_dir()
        assert await preferences.get_proximity_threshold() == 500.0
        location = make_location("Louvre", 48.86, 2.33, scheduled_date=date(2026, 3, 15))
        await store.put(location)
        assert (await store.get(location.id)).scheduled_date == date(2026, 3, 15)

        await preferences.close()
        await store.close()
