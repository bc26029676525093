"""Proximity clustering of waypoints.

``cluster_points`` is the worker-side function: it takes and returns plain
tuples/lists so it can cross a thread or process boundary unchanged.
``cluster_locations`` is the async caller that ships the work to an executor
and maps the id groups back onto Location objects.
"""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor
from typing import Optional, Sequence

from tripflow.state import Location
from tripflow.tools.geo import haversine_m

logger = logging.getLogger(__name__)

Point = tuple[str, float, float]  # (id, lat, lng)


def cluster_points(points: Sequence[Point], threshold_m: float) -> list[list[str]]:
    """Group points whose pairwise chains stay within ``threshold_m`` meters.

    Fixed-point closure: seed a cluster with the first unclustered point, then
    keep scanning the remaining points and absorbing any within the threshold of
    any member until a full pass adds nothing. A distance of exactly the
    threshold counts as within. Clusters follow input order of their seeds;
    members are listed in the order they were absorbed.
    """
    clusters: list[list[str]] = []
    clustered: set[int] = set()

    for seed_index, seed in enumerate(points):
        if seed_index in clustered:
            continue

        members = [seed]
        member_ids = [seed[0]]
        clustered.add(seed_index)

        grew = True
        while grew:
            grew = False
            for index, candidate in enumerate(points):
                if index in clustered:
                    continue
                _, lat, lng = candidate
                for _, m_lat, m_lng in members:
                    if haversine_m(m_lat, m_lng, lat, lng) <= threshold_m:
                        members.append(candidate)
                        member_ids.append(candidate[0])
                        clustered.add(index)
                        grew = True
                        break

        clusters.append(member_ids)

    return clusters


async def cluster_locations(
    locations: Sequence[Location],
    threshold_m: float,
    executor: Optional[Executor] = None,
) -> list[list[Location]]:
    """Cluster locations off the event loop (default thread pool unless ``executor`` given)."""
    if not locations:
        return []

    payload = [(loc.id, loc.lat, loc.lng) for loc in locations]
    loop = asyncio.get_running_loop()
    id_groups = await loop.run_in_executor(executor, cluster_points, payload, threshold_m)

    by_id = {loc.id: loc for loc in locations}
    clusters = [[by_id[loc_id] for loc_id in group] for group in id_groups]
    logger.debug("Clustered %d locations into %d clusters (threshold %.0fm)", len(locations), len(clusters), threshold_m)
    return clusters
