"""Route ordering — cluster waypoints, order clusters greedily, build legs.

Pipeline::

    waypoints -> cluster_locations (executor) -> order_clusters -> directions
              -> annotate_legs -> totals -> RouteResult
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from datetime import date, timedelta
from typing import Optional, Sequence

from tripflow.state import LatLng, Location, RouteLeg, RouteResult
from tripflow.tools.clustering import cluster_locations
from tripflow.tools.directions import DirectionsProvider
from tripflow.tools.geo import centroid, haversine_m

logger = logging.getLogger(__name__)

CURRENT_POSITION = "current_location"  # start-location id meaning "use the live position"


def choose_start(
    locations: Sequence[Location],
    start_location_id: Optional[str] = None,
    current_position: Optional[LatLng] = None,
) -> tuple[Optional[LatLng], Optional[Location], list[Location]]:
    """Pick the start point and the waypoints left to order.

    Returns (start point, start location or None, remaining waypoints).
    A designated start location is removed from the waypoints; the live
    position never is one. Without a designation the live position wins,
    then the first location.
    """
    waypoints = list(locations)
    if not waypoints:
        return None, None, []

    if start_location_id == CURRENT_POSITION and current_position is not None:
        return current_position, None, waypoints

    if start_location_id and start_location_id != CURRENT_POSITION:
        for index, loc in enumerate(waypoints):
            if loc.id == start_location_id:
                del waypoints[index]
                return loc.coordinates, loc, waypoints
        logger.warning("Start location %s not among waypoints, using default start", start_location_id)

    if current_position is not None:
        return current_position, None, waypoints

    first = waypoints.pop(0)
    return first.coordinates, first, waypoints


def exit_point(cluster: Sequence[Location]) -> Location:
    """Member farthest from the cluster centroid (first one on ties)."""
    c_lat, c_lng = centroid((loc.lat, loc.lng) for loc in cluster)
    farthest = cluster[0]
    max_distance = -1.0
    for loc in cluster:
        distance = haversine_m(c_lat, c_lng, loc.lat, loc.lng)
        if distance > max_distance:
            max_distance = distance
            farthest = loc
    return farthest


def order_clusters(clusters: Sequence[Sequence[Location]], start: LatLng) -> list[list[Location]]:
    """Greedy nearest-cluster ordering from ``start``.

    Each step picks the cluster holding the single closest unvisited location,
    visits it whole, then moves the current position to the cluster's exit
    point. Equal distances resolve to the earlier cluster/member.
    """
    remaining = [list(cluster) for cluster in clusters if cluster]
    ordered: list[list[Location]] = []
    current = start

    while remaining:
        best_index = 0
        min_distance = float("inf")
        for index, cluster in enumerate(remaining):
            for loc in cluster:
                distance = haversine_m(current.lat, current.lng, loc.lat, loc.lng)
                if distance < min_distance:
                    min_distance = distance
                    best_index = index

        chosen = remaining.pop(best_index)
        ordered.append(chosen)
        current = exit_point(chosen).coordinates

    return ordered


def annotate_legs(locations: Sequence[Location], legs: Sequence[RouteLeg], leg_offset: int = 0) -> list[Location]:
    """Copy each leg's duration/distance onto the location it arrives at.

    ``leg_offset`` is 1 when ``locations[0]`` is the start location (no leg
    arrives there), 0 when the route starts from the live position.
    """
    annotated = []
    for i, loc in enumerate(locations):
        leg_index = i - leg_offset
        if 0 <= leg_index < len(legs):
            leg = legs[leg_index]
            annotated.append(
                loc.model_copy(update={"travel_time_from_previous": leg.duration, "distance_from_previous": leg.distance})
            )
        else:
            annotated.append(loc.model_copy(update={"travel_time_from_previous": None, "distance_from_previous": None}))
    return annotated


def total_travel_time(locations: Sequence[Location], legs: Sequence[RouteLeg]) -> timedelta:
    """Leg durations plus stays at every stop but the last (nothing follows it)."""
    if not legs:
        return timedelta(0)
    total = sum((leg.duration for leg in legs), timedelta(0))
    for loc in locations[:-1]:
        total += loc.stay_duration
    return total


def total_distance(legs: Sequence[RouteLeg]) -> float:
    return sum((leg.distance for leg in legs), 0.0)


async def plan_route(
    locations: Sequence[Location],
    directions: DirectionsProvider,
    threshold_m: float,
    selected_date: Optional[date] = None,
    start_location_id: Optional[str] = None,
    current_position: Optional[LatLng] = None,
    executor: Optional[Executor] = None,
    timeout: float = 20.0,
) -> RouteResult:
    """Compute the clustered visiting order and leg decomposition.

    Returns ``RouteResult.empty()`` when there is nothing to route or when the
    directions call fails or times out.
    """
    active = [loc for loc in locations if not loc.is_skipped]
    start, start_location, waypoints = choose_start(active, start_location_id, current_position)
    if start is None or not waypoints:
        return RouteResult.empty(selected_date)

    clusters = await cluster_locations(waypoints, threshold_m, executor)
    ordered = [loc for cluster in order_clusters(clusters, start) for loc in cluster]

    try:
        result = await asyncio.wait_for(
            directions.route(
                origin=start,
                destination=ordered[-1].coordinates,
                waypoints=[loc.coordinates for loc in ordered[:-1]],
                optimize_waypoints=False,
            ),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.warning("Directions request timed out after %.0fs (%d waypoints)", timeout, len(ordered))
        return RouteResult.empty(selected_date)
    except Exception:
        logger.exception("Directions request failed (%d waypoints)", len(ordered))
        return RouteResult.empty(selected_date)

    if len(result.legs) != len(ordered):
        logger.warning("Expected %d legs, directions returned %d", len(ordered), len(result.legs))

    trip_locations = [start_location, *ordered] if start_location is not None else ordered
    leg_offset = 1 if start_location is not None else 0
    annotated = annotate_legs(trip_locations, result.legs, leg_offset)

    return RouteResult(
        ordered=annotated,
        legs=result.legs,
        overall_polyline=result.overall_polyline,
        total_travel_time=total_travel_time(annotated, result.legs),
        total_distance=total_distance(result.legs),
        selected_date=selected_date,
        start=start,
    )
