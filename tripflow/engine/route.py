"""Route coordinator — debounced, cancel-on-supersede route computation.

Status moves IDLE -> COMPUTING -> READY or FAILED. A new request cancels
whatever is pending or in flight; a result computed for a superseded request
is never published.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from concurrent.futures import Executor
from datetime import date
from typing import Callable, Optional, Sequence

from tripflow.state import LatLng, Location, RouteResult, RouteStatus
from tripflow.tools.directions import DirectionsProvider
from tripflow.tools.route_planner import plan_route, total_travel_time

logger = logging.getLogger(__name__)

RouteListener = Callable[[RouteResult, RouteStatus], None]


def _routable(locations: Sequence[Location], current_position: Optional[LatLng]) -> bool:
    active = sum(1 for loc in locations if not loc.is_skipped)
    return active >= 2 or (active >= 1 and current_position is not None)


class RouteCoordinator:
    def __init__(
        self,
        directions: DirectionsProvider,
        threshold_m: float = 1000.0,
        debounce: float = 0.5,
        timeout: float = 20.0,
        executor: Optional[Executor] = None,
    ) -> None:
        self.directions = directions
        self.threshold_m = threshold_m
        self.debounce = debounce
        self.timeout = timeout
        self.executor = executor
        self.status = RouteStatus.IDLE
        self.result = RouteResult.empty()
        self._task: Optional[asyncio.Task] = None
        self._generation = 0
        self._listeners: list[RouteListener] = []

    def add_listener(self, listener: RouteListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _publish(self, result: RouteResult, status: RouteStatus) -> None:
        self.result, self.status = result, status
        for listener in list(self._listeners):
            try:
                listener(result, status)
            except Exception:
                logger.exception("Route listener failed")

    def _supersede(self) -> int:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
        self._generation += 1
        return self._generation

    # ─── Requests ───────────────────────────────────

    def request(
        self,
        locations: Sequence[Location],
        selected_date: Optional[date] = None,
        start_location_id: Optional[str] = None,
        current_position: Optional[LatLng] = None,
    ) -> asyncio.Task:
        """Schedule a computation after the debounce window, replacing any earlier one."""
        generation = self._supersede()
        self._task = asyncio.create_task(
            self._debounced(generation, list(locations), selected_date, start_location_id, current_position)
        )
        return self._task

    async def _debounced(
        self,
        generation: int,
        locations: list[Location],
        selected_date: Optional[date],
        start_location_id: Optional[str],
        current_position: Optional[LatLng],
    ) -> RouteResult:
        await asyncio.sleep(self.debounce)
        return await self._compute(generation, locations, selected_date, start_location_id, current_position)

    async def compute_now(
        self,
        locations: Sequence[Location],
        selected_date: Optional[date] = None,
        start_location_id: Optional[str] = None,
        current_position: Optional[LatLng] = None,
    ) -> RouteResult:
        generation = self._supersede()
        return await self._compute(generation, list(locations), selected_date, start_location_id, current_position)

    async def _compute(
        self,
        generation: int,
        locations: list[Location],
        selected_date: Optional[date],
        start_location_id: Optional[str],
        current_position: Optional[LatLng],
    ) -> RouteResult:
        if not _routable(locations, current_position):
            result = RouteResult.empty(selected_date)
            if generation == self._generation:
                self._publish(result, RouteStatus.IDLE)
            return result

        self._publish(self.result, RouteStatus.COMPUTING)
        try:
            result = await plan_route(
                locations,
                self.directions,
                self.threshold_m,
                selected_date=selected_date,
                start_location_id=start_location_id,
                current_position=current_position,
                executor=self.executor,
                timeout=self.timeout,
            )
        except Exception:
            logger.exception("Route computation failed")
            result = RouteResult.empty(selected_date)

        if generation != self._generation:
            logger.debug("Discarding superseded route (generation %d)", generation)
            return result

        self._publish(result, RouteStatus.FAILED if result.is_empty else RouteStatus.READY)
        return result

    def retotal(self, locations: Sequence[Location]) -> RouteResult:
        """Refresh stays on the current route from ``locations`` and recompute its total time.

        The ordering and legs are kept; no directions call is made.
        """
        if self.result.is_empty:
            return self.result
        current = {loc.id: loc for loc in locations}
        ordered = [
            loc.model_copy(update={"stay_duration": current[loc.id].stay_duration}) if loc.id in current else loc
            for loc in self.result.ordered
        ]
        result = self.result.model_copy(
            update={"ordered": ordered, "total_travel_time": total_travel_time(ordered, self.result.legs)}
        )
        self._publish(result, self.status)
        return result

    def clear(self, selected_date: Optional[date] = None) -> None:
        """Drop the current route and anything pending."""
        self._supersede()
        self._publish(RouteResult.empty(selected_date), RouteStatus.IDLE)

    async def wait(self) -> None:
        """Wait for the pending request, if any, to finish or be cancelled."""
        task = self._task
        if task is None:
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def close(self) -> None:
        task = self._task
        self._supersede()
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
