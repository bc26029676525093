"""Filter graph — derived location views as a DAG of pure nodes.

Inputs live on an immutable ``Snapshot``. Each node declares the inputs and
upstream nodes it reads; ``FilterGraph.update`` replaces inputs and re-runs
only the nodes downstream of what changed, in topological order.

    locations, active_trip_id, is_anonymous, can_view -> trip_scoped
    trip_scoped, selected_date                        -> for_date
    for_date, route, selected_date                    -> visible
    visible                                           -> active_waypoints
    trip_scoped                                       -> dates_with_locations
"""

from __future__ import annotations

import logging
from datetime import date
from graphlib import TopologicalSorter
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from tripflow.state import Location, LocationSource, RouteResult

logger = logging.getLogger(__name__)


class Snapshot(BaseModel):
    """Everything the views are computed from. Owned by the session, never mutated here."""

    model_config = ConfigDict(frozen=True)

    locations: list[Location] = Field(default_factory=list)
    active_trip_id: Optional[str] = None
    user_id: Optional[str] = None
    is_anonymous: bool = True
    can_view: bool = True
    selected_date: Optional[date] = None
    route: Optional[RouteResult] = None


INPUTS = frozenset(Snapshot.model_fields)


# ─── Node functions ──────────────────────────────


def trip_scoped_node(
    locations: list[Location],
    active_trip_id: Optional[str],
    user_id: Optional[str],
    is_anonymous: bool,
    can_view: bool,
) -> list[Location]:
    """Locations of the active trip, or the actor's own trip-less ones when no trip is active."""
    if active_trip_id is not None:
        if not can_view:
            return []
        return [loc for loc in locations if loc.trip_id == active_trip_id]
    if is_anonymous:
        return [loc for loc in locations if loc.source == LocationSource.LOCAL]
    return [loc for loc in locations if loc.trip_id is None and loc.user_id == user_id]


def for_date_node(trip_scoped: list[Location], selected_date: Optional[date]) -> list[Location]:
    if selected_date is None:
        return list(trip_scoped)
    return [loc for loc in trip_scoped if loc.calendar_date == selected_date]


def visible_node(
    for_date: list[Location], route: Optional[RouteResult], selected_date: Optional[date]
) -> list[Location]:
    """Route order when the last route is for this date, then any stragglers."""
    if route is None or route.is_empty or route.selected_date != selected_date:
        return list(for_date)

    current = {loc.id: loc for loc in for_date}
    ordered = [current[loc.id] for loc in route.ordered if loc.id in current]
    routed_ids = {loc.id for loc in ordered}
    return ordered + [loc for loc in for_date if loc.id not in routed_ids]


def active_waypoints_node(visible: list[Location]) -> list[Location]:
    return [loc for loc in visible if not loc.is_skipped]


def dates_with_locations_node(trip_scoped: list[Location]) -> list[date]:
    return sorted({loc.scheduled_date for loc in trip_scoped if loc.scheduled_date is not None})


NODES: dict[str, tuple[tuple[str, ...], Callable[..., Any]]] = {
    "trip_scoped": (("locations", "active_trip_id", "user_id", "is_anonymous", "can_view"), trip_scoped_node),
    "for_date": (("trip_scoped", "selected_date"), for_date_node),
    "visible": (("for_date", "route", "selected_date"), visible_node),
    "active_waypoints": (("visible",), active_waypoints_node),
    "dates_with_locations": (("trip_scoped",), dates_with_locations_node),
}

ORDER: tuple[str, ...] = tuple(
    name
    for name in TopologicalSorter({name: set(deps) & NODES.keys() for name, (deps, _) in NODES.items()}).static_order()
)


# ─── Dispatcher ──────────────────────────────────

Listener = Callable[[set[str]], None]
_MISSING = object()


class FilterGraph:
    def __init__(self, snapshot: Optional[Snapshot] = None) -> None:
        self.snapshot = snapshot or Snapshot()
        self._values: dict[str, Any] = {}
        self._listeners: list[Listener] = []
        self._recompute(set(INPUTS))

    def _read(self, name: str) -> Any:
        if name in NODES:
            return self._values[name]
        return getattr(self.snapshot, name)

    def _recompute(self, dirty: set[str]) -> set[str]:
        changed: set[str] = set()
        for name in ORDER:
            deps, func = NODES[name]
            if dirty.isdisjoint(deps):
                continue
            value = func(*(self._read(dep) for dep in deps))
            if self._values.get(name, _MISSING) != value:
                changed.add(name)
                dirty.add(name)
            self._values[name] = value
        return changed

    def update(self, **changes: Any) -> set[str]:
        """Replace snapshot inputs; returns the names of nodes whose output changed."""
        unknown = set(changes) - INPUTS
        if unknown:
            raise TypeError(f"unknown graph inputs: {sorted(unknown)}")

        dirty = {key for key, value in changes.items() if getattr(self.snapshot, key) != value}
        if not dirty:
            return set()
        self.snapshot = self.snapshot.model_copy(update=changes)

        changed = self._recompute(dirty)
        if changed:
            for listener in list(self._listeners):
                try:
                    listener(changed)
                except Exception:
                    logger.exception("Filter graph listener failed")
        return changed

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    @property
    def trip_scoped(self) -> list[Location]:
        return self._values["trip_scoped"]

    @property
    def for_date(self) -> list[Location]:
        return self._values["for_date"]

    @property
    def visible(self) -> list[Location]:
        return self._values["visible"]

    @property
    def active_waypoints(self) -> list[Location]:
        return self._values["active_waypoints"]

    @property
    def dates_with_locations(self) -> list[date]:
        return self._values["dates_with_locations"]
