"""Tests for start selection, cluster ordering, leg annotation and totals."""

from __future__ import annotations

from datetime import timedelta

import pytest

from tests.fakes import DAY, FakeDirections
from tripflow.errors import DirectionsError
from tripflow.state import LatLng, RouteLeg
from tripflow.tools.route_planner import (
    CURRENT_POSITION,
    annotate_legs,
    choose_start,
    exit_point,
    order_clusters,
    plan_route,
    total_distance,
    total_travel_time,
)


def _leg(minutes: int, meters: float = 1000.0) -> RouteLeg:
    origin = LatLng(lat=0.0, lng=0.0)
    return RouteLeg(start=origin, end=origin, duration=timedelta(minutes=minutes), distance=meters)


class TestChooseStart:
    def test_empty(self):
        assert choose_start([]) == (None, None, [])

    def test_defaults_to_first_location(self, paris):
        start, start_location, waypoints = choose_start(paris)
        assert start_location == paris[0]
        assert start == paris[0].coordinates
        assert waypoints == paris[1:]

    def test_live_position_wins_without_designation(self, paris):
        here = LatLng(lat=48.85, lng=2.35)
        start, start_location, waypoints = choose_start(paris, current_position=here)
        assert start == here
        assert start_location is None
        assert waypoints == paris

    def test_designated_location_removed_from_waypoints(self, paris):
        start, start_location, waypoints = choose_start(paris, start_location_id=paris[2].id)
        assert start_location == paris[2]
        assert paris[2] not in waypoints
        assert len(waypoints) == 3

    def test_current_position_requested_but_unknown(self, paris):
        start, start_location, _ = choose_start(paris, start_location_id=CURRENT_POSITION)
        assert start_location == paris[0]

    def test_unknown_designation_falls_back(self, paris):
        _, start_location, _ = choose_start(paris, start_location_id="missing")
        assert start_location == paris[0]


class TestOrdering:
    def test_exit_point_is_farthest_from_centroid(self, make_location):
        a = make_location("a", 0.0, 0.0)
        b = make_location("b", 0.0, 0.001)
        c = make_location("c", 0.0, 0.005)
        assert exit_point([a, b, c]) == c

    def test_exit_point_tie_keeps_first(self, make_location):
        a = make_location("a", 0.0, -0.001)
        b = make_location("b", 0.0, 0.001)
        assert exit_point([a, b]) == a

    def test_nearest_cluster_first(self, paris):
        louvre, tuileries, versailles, orsay = paris
        clusters = [[versailles], [louvre, tuileries, orsay]]
        ordered = order_clusters(clusters, LatLng(lat=48.861, lng=2.335))
        assert ordered == [[louvre, tuileries, orsay], [versailles]]

    def test_ordering_from_versailles(self, paris):
        louvre, tuileries, versailles, orsay = paris
        clusters = [[louvre, tuileries, orsay], [versailles]]
        ordered = order_clusters(clusters, versailles.coordinates)
        assert ordered[0] == [versailles]

    def test_moves_from_exit_point(self, make_location):
        # Cluster A spans west to east; its exit point (east end) is nearest to C, not B
        a1 = make_location("a1", 0.0, 0.0)
        a2 = make_location("a2", 0.0, 0.002)
        a3 = make_location("a3", 0.0, 0.008)
        b = make_location("b", 0.0, -0.006)
        c = make_location("c", 0.0, 0.012)
        ordered = order_clusters([[a1, a2, a3], [b], [c]], LatLng(lat=0.0, lng=0.0))
        assert [cluster[0].name for cluster in ordered] == ["a1", "c", "b"]


class TestTotals:
    def test_zero_legs_is_zero(self, paris):
        assert total_travel_time(paris, []) == timedelta(0)
        assert total_distance([]) == 0.0

    def test_legs_plus_stays_except_last(self, make_location):
        stops = [
            make_location("a", 0.0, 0.0, stay_duration=timedelta(minutes=20)),
            make_location("b", 0.0, 0.01, stay_duration=timedelta(minutes=40)),
            make_location("c", 0.0, 0.02, stay_duration=timedelta(minutes=90)),
        ]
        legs = [_leg(10), _leg(15)]
        assert total_travel_time(stops, legs) == timedelta(minutes=10 + 15 + 20 + 40)
        assert total_distance(legs) == 2000.0

    def test_annotate_with_start_location(self, paris):
        legs = [_leg(5, 500.0), _leg(7, 700.0)]
        annotated = annotate_legs(paris[:3], legs, leg_offset=1)
        assert annotated[0].travel_time_from_previous is None
        assert annotated[1].travel_time_from_previous == timedelta(minutes=5)
        assert annotated[2].distance_from_previous == 700.0

    def test_annotate_from_live_position(self, paris):
        legs = [_leg(5), _leg(7)]
        annotated = annotate_legs(paris[:2], legs, leg_offset=0)
        assert annotated[0].travel_time_from_previous == timedelta(minutes=5)


class TestPlanRoute:
    @pytest.mark.asyncio
    async def test_full_pipeline(self, paris):
        louvre, tuileries, versailles, orsay = paris
        directions = FakeDirections(leg_seconds=600, leg_meters=1000.0)

        result = await plan_route(paris, directions, 1500.0, selected_date=DAY)

        assert [loc.name for loc in result.ordered] == ["Louvre", "Tuileries", "Orsay", "Versailles"]
        origin, destination, waypoints = directions.calls[0]
        assert origin == louvre.coordinates
        assert destination == versailles.coordinates
        assert waypoints == [tuileries.coordinates, orsay.coordinates]
        assert len(result.legs) == 3
        assert result.ordered[0].travel_time_from_previous is None
        assert result.ordered[1].travel_time_from_previous == timedelta(minutes=10)
        # three legs of 10 min plus three 30 min stays (the last stop's stay is not counted)
        assert result.total_travel_time == timedelta(minutes=120)
        assert result.total_distance == 3000.0
        assert result.selected_date == DAY

    @pytest.mark.asyncio
    async def test_skipped_locations_excluded(self, paris):
        paris[2] = paris[2].model_copy(update={"is_skipped": True})
        result = await plan_route(paris, FakeDirections(), 1500.0)
        assert "Versailles" not in [loc.name for loc in result.ordered]
        assert len(result.legs) == 2

    @pytest.mark.asyncio
    async def test_from_live_position(self, paris):
        here = LatLng(lat=48.861, lng=2.335)
        result = await plan_route(paris[:2], FakeDirections(), 1500.0, current_position=here)
        assert len(result.ordered) == 2
        assert result.ordered[0].travel_time_from_previous == timedelta(minutes=10)
        assert result.start == here

    @pytest.mark.asyncio
    async def test_single_location_is_empty(self, paris):
        result = await plan_route(paris[:1], FakeDirections(), 1500.0, selected_date=DAY)
        assert result.is_empty
        assert result.total_travel_time == timedelta(0)

    @pytest.mark.asyncio
    async def test_timeout_gives_empty_route(self, paris):
        directions = FakeDirections(delay=1.0)
        result = await plan_route(paris, directions, 1500.0, timeout=0.05)
        assert result.is_empty
        assert result.ordered == []

    @pytest.mark.asyncio
    async def test_provider_error_gives_empty_route(self, paris):
        directions = FakeDirections(error=DirectionsError("ZERO_RESULTS"))
        result = await plan_route(paris, directions, 1500.0)
        assert result.is_empty
