"""Shared test fixtures — temp-path stores, in-memory backend, fake directions."""

from __future__ import annotations

import pytest
import pytest_asyncio

from tripflow.config.settings import Settings
from tripflow.db.persistence import LocationStore
from tripflow.db.preferences import PreferenceStore
from tripflow.remote.inmemory import InMemoryBackend
from tripflow.state import Location
from tests.fakes import DAY, FakeDirections


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest_asyncio.fixture
async def store(db_url):
    store = LocationStore(db_url)
    await store.init()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def preferences(db_url, store):
    preferences = PreferenceStore(db_url)
    await preferences.init_table()
    yield preferences
    await preferences.close()


@pytest.fixture
def backend() -> InMemoryBackend:
    return InMemoryBackend()


@pytest.fixture
def directions() -> FakeDirections:
    return FakeDirections()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        ROUTE_DEBOUNCE_SECONDS=0.05,
        DIRECTIONS_TIMEOUT=1.0,
        DEFAULT_PROXIMITY_THRESHOLD=1000.0,
    )


@pytest.fixture
def make_location():
    """Factory for locations on DAY unless told otherwise."""

    def _make(name: str, lat: float, lng: float, **fields) -> Location:
        fields.setdefault("scheduled_date", DAY)
        location = Location.create(name, lat, lng)
        return location.model_copy(update=fields)

    return _make


@pytest.fixture
def paris(make_location) -> list[Location]:
    """Three spots in central Paris plus one in Versailles (~17 km away)."""
    return [
        make_location("Louvre", 48.860611, 2.337644),
        make_location("Tuileries", 48.863788, 2.327926),
        make_location("Versailles", 48.804865, 2.120355),
        make_location("Orsay", 48.859961, 2.326561),
    ]
