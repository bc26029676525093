"""Directions provider — leg-by-leg routes from an external API."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field

from tripflow.errors import DirectionsError
from tripflow.state import LatLng, RouteLeg

logger = logging.getLogger(__name__)

# Google Directions API
_GOOGLE_BASE_URL = "https://maps.googleapis.com/maps/api/directions/json"


class DirectionsResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    overall_polyline: list[LatLng] = Field(default_factory=list)
    legs: list[RouteLeg] = Field(default_factory=list)
    waypoint_order: list[int] = Field(default_factory=list)


class DirectionsProvider(Protocol):
    async def route(
        self,
        origin: LatLng,
        destination: LatLng,
        waypoints: Sequence[LatLng] = (),
        optimize_waypoints: bool = False,
    ) -> DirectionsResult: ...


def decode_polyline(encoded: str) -> list[LatLng]:
    """Decode a Google encoded polyline string (precision 1e5)."""
    points: list[LatLng] = []
    index = 0
    lat = 0
    lng = 0
    length = len(encoded)

    while index < length:
        deltas = []
        for _ in range(2):
            shift = 0
            result = 0
            while True:
                b = ord(encoded[index]) - 63
                index += 1
                result |= (b & 0x1F) << shift
                shift += 5
                if b < 0x20:
                    break
            deltas.append(~(result >> 1) if result & 1 else result >> 1)
        lat += deltas[0]
        lng += deltas[1]
        points.append(LatLng(lat=lat / 1e5, lng=lng / 1e5))

    return points


def _format_point(point: LatLng) -> str:
    return f"{point.lat},{point.lng}"


def parse_directions(data: dict, optimize_waypoints: bool = False, waypoint_count: int = 0) -> DirectionsResult:
    """Turn a Directions API JSON payload into a DirectionsResult.

    Raises DirectionsError on any non-OK status or missing route.
    """
    status = data.get("status")
    if status != "OK":
        raise DirectionsError(f"Directions API error: {status}")

    routes = data.get("routes") or []
    if not routes:
        raise DirectionsError("Directions API returned no routes")

    route = routes[0]
    legs: list[RouteLeg] = []
    for leg in route.get("legs", []):
        start = LatLng(lat=leg["start_location"]["lat"], lng=leg["start_location"]["lng"])
        end = LatLng(lat=leg["end_location"]["lat"], lng=leg["end_location"]["lng"])
        points = [start]
        for step in leg.get("steps", []):
            points.extend(decode_polyline(step["polyline"]["points"]))
        legs.append(
            RouteLeg(
                start=start,
                end=end,
                points=points,
                duration=timedelta(seconds=leg["duration"]["value"]),
                distance=float(leg["distance"]["value"]),
            )
        )

    if optimize_waypoints and route.get("waypoint_order") is not None:
        order = [int(i) for i in route["waypoint_order"]]
    else:
        order = list(range(waypoint_count))

    overall = [point for leg in legs for point in leg.points]
    return DirectionsResult(overall_polyline=overall, legs=legs, waypoint_order=order)


class GoogleDirectionsClient:
    """DirectionsProvider backed by the Google Directions web API."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 20.0,
        base_url: str = _GOOGLE_BASE_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.timeout = timeout
        self.base_url = base_url
        self._transport = transport

    async def route(
        self,
        origin: LatLng,
        destination: LatLng,
        waypoints: Sequence[LatLng] = (),
        optimize_waypoints: bool = False,
    ) -> DirectionsResult:
        params = {
            "origin": _format_point(origin),
            "destination": _format_point(destination),
            "key": self.api_key,
        }
        if waypoints:
            joined = "|".join(_format_point(p) for p in waypoints)
            params["waypoints"] = f"optimize:true|{joined}" if optimize_waypoints else joined

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.get(self.base_url, params=params)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as exc:
            raise DirectionsError(f"Directions request failed: {exc}") from exc
        except ValueError as exc:
            raise DirectionsError("Directions API returned invalid JSON") from exc

        return parse_directions(data, optimize_waypoints, len(waypoints))
