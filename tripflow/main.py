"""Entry point — open the local store, start a trip session, keep it syncing."""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
import os

from dotenv import load_dotenv


def _setup_logging(level: str, log_file: str) -> None:
    log_format = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(log_format))
    root_logger.addHandler(console)

    log_dir = os.path.dirname(log_file)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(log_file, maxBytes=5_000_000, backupCount=3)
    file_handler.setFormatter(logging.Formatter(log_format))
    root_logger.addHandler(file_handler)


def main() -> None:
    load_dotenv()

    from tripflow.config.settings import get_settings
    settings = get_settings()

    _setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    logger = logging.getLogger(__name__)

    async def _start() -> None:
        # 1. Local store + preferences
        from tripflow.db.migrations import init_db
        store, preferences = await init_db(settings.DATABASE_URL, settings.DEFAULT_PROXIMITY_THRESHOLD)
        logger.info("Local store ready.")

        # 2. Remote backend (in-memory when no remote is configured)
        from tripflow.remote.inmemory import InMemoryBackend
        from tripflow.remote.rest import RestBackend
        if settings.REMOTE_URL:
            backend = RestBackend(
                settings.REMOTE_URL,
                settings.REMOTE_API_KEY,
                timeout=settings.REMOTE_TIMEOUT,
                poll_interval=settings.REMOTE_POLL_INTERVAL,
            )
        else:
            logger.warning("REMOTE_URL not set, running offline")
            backend = InMemoryBackend()

        from tripflow.tools.directions import GoogleDirectionsClient
        directions = GoogleDirectionsClient(settings.GOOGLE_DIRECTIONS_API_KEY, timeout=settings.DIRECTIONS_TIMEOUT)
        if not settings.GOOGLE_DIRECTIONS_API_KEY:
            logger.warning("GOOGLE_DIRECTIONS_API_KEY not set, routes will come back empty")

        # 3. Session
        from tripflow.engine.session import TripSession
        from tripflow.engine.sync import AuthState
        auth = AuthState(await preferences.get_anonymous_id(), settings.USER_ID or None)
        session = TripSession(store, preferences, backend, directions, auth, settings=settings)
        await session.start()

        route = await session.compute_route()
        logger.info(
            "%d locations on %s, route %s (%d legs, %.1f km)",
            len(session.visible_locations),
            session.selected_date,
            session.route_status.value,
            len(route.legs),
            route.total_distance / 1000,
        )

        stop_event = asyncio.Event()

        def _signal_handler():
            stop_event.set()

        loop = asyncio.get_running_loop()
        for sig_name in ("SIGINT", "SIGTERM"):
            try:
                import signal
                loop.add_signal_handler(getattr(signal, sig_name), _signal_handler)
            except (NotImplementedError, AttributeError):
                pass

        logger.info("Session is running. Press Ctrl+C to stop.")
        await stop_event.wait()

        logger.info("Shutting down...")
        if settings.EXPORT_PATH:
            session.export_csv(settings.EXPORT_PATH)
        await session.stop()
        if isinstance(backend, RestBackend):
            await backend.close()
        await preferences.close()
        await store.close()

    try:
        asyncio.run(_start())
    except KeyboardInterrupt:
        logger.info("Session stopped.")


if __name__ == "__main__":
    main()
