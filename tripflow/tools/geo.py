"""Geospatial helpers (great-circle distance, centroids)."""

from __future__ import annotations

import math
from typing import Iterable

EARTH_RADIUS_M = 6_371_000.0  # mean Earth radius in meters


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Haversine distance in meters between two lat/lng points (degrees)."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2.0) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_M * c


def centroid(points: Iterable[tuple[float, float]]) -> tuple[float, float]:
    """Arithmetic mean of (lat, lng) pairs. Good enough at city scale."""
    sum_lat = 0.0
    sum_lng = 0.0
    count = 0
    for lat, lng in points:
        sum_lat += lat
        sum_lng += lng
        count += 1
    if count == 0:
        raise ValueError("centroid of an empty point set")
    return (sum_lat / count, sum_lng / count)
