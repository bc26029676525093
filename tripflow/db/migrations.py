"""Database initialisation — opens the local store at startup."""

from __future__ import annotations

import logging
import os

from sqlalchemy.engine import make_url

from tripflow.db.persistence import LocationStore
from tripflow.db.preferences import PreferenceStore

logger = logging.getLogger(__name__)


def _ensure_sqlite_dir(database_url: str) -> None:
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
        parent = os.path.dirname(url.database)
        if parent:
            os.makedirs(parent, exist_ok=True)


async def init_db(database_url: str, default_proximity_threshold: float = 1000.0) -> tuple[LocationStore, PreferenceStore]:
    """Open (or recover) the location store, then the preferences table."""
    _ensure_sqlite_dir(database_url)

    store = LocationStore(database_url)
    await store.init()

    # Preferences go second: a store reset may have replaced the database file
    preferences = PreferenceStore(database_url, default_proximity_threshold)
    await preferences.init_table()

    return store, preferences
