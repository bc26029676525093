"""Tests for content fingerprints and Location model helpers."""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from tripflow.state import Location, LocationSource, Trip, TripRole, Collaborator, Permission
from tripflow.tools.fingerprint import fingerprint, is_same_location


class TestFingerprint:
    def test_deterministic(self):
        assert fingerprint("Louvre", 48.860611, 2.337644) == fingerprint("Louvre", 48.860611, 2.337644)

    def test_hex_sha256(self):
        fp = fingerprint("Louvre", 48.860611, 2.337644)
        assert len(fp) == 64
        int(fp, 16)

    def test_coordinates_equal_at_six_decimals(self):
        assert fingerprint("Golden Gate", 37.7749295, -122.4194155) == fingerprint(
            "Golden Gate", 37.774930, -122.419416
        )

    def test_seventh_decimal_below_half_is_ignored(self):
        assert fingerprint("A", 10.1234561, 20.0) == fingerprint("A", 10.123456, 20.0)

    def test_differs_on_name(self):
        assert fingerprint("Louvre", 48.86, 2.33) != fingerprint("louvre", 48.86, 2.33)

    def test_differs_at_sixth_decimal(self):
        assert fingerprint("A", 10.123456, 20.0) != fingerprint("A", 10.123457, 20.0)

    def test_negative_zero_matches_zero(self):
        assert fingerprint("Null Island", -0.0, 0.0) == fingerprint("Null Island", 0.0, 0.0)

    def test_tiny_negative_rounds_to_zero(self):
        assert fingerprint("Greenwich", 51.4778, -0.0000004) == fingerprint("Greenwich", 51.4778, 0.0000003)
        assert fingerprint("Equator", -0.0000002, 30.0) == fingerprint("Equator", 0.0, 30.0)

    def test_non_finite_does_not_raise(self):
        assert fingerprint("nowhere", math.nan, math.inf) == fingerprint("nowhere", math.nan, math.inf)

    def test_is_same_location(self):
        assert is_same_location("A", 1.0000001, 2.0, "A", 1.0, 2.0)
        assert not is_same_location("A", 1.0, 2.0, "B", 1.0, 2.0)


class TestLocationModel:
    def test_create_computes_fingerprint(self):
        location = Location.create("Louvre", 48.860611, 2.337644)
        assert location.fingerprint == fingerprint("Louvre", 48.860611, 2.337644)
        assert location.source == LocationSource.LOCAL
        assert location.is_synced is False
        assert location.stay_duration == timedelta(minutes=30)

    def test_scheduled_date_drops_time(self):
        location = Location(id="x", name="A", lat=1.0, lng=2.0, scheduled_date=datetime(2026, 3, 14, 18, 30))
        assert location.scheduled_date == date(2026, 3, 14)

    def test_negative_stay_rejected(self):
        with pytest.raises(ValidationError):
            Location(id="x", name="A", lat=1.0, lng=2.0, stay_duration=timedelta(minutes=-1))

    def test_calendar_date_falls_back_to_added_at(self):
        added = datetime(2026, 3, 14, 12, 0)
        location = Location(id="x", name="A", lat=1.0, lng=2.0, added_at=added)
        assert location.calendar_date == date(2026, 3, 14)

    def test_record_round_trip_keeps_fields(self):
        location = Location.create("Louvre", 48.86, 2.33, scheduled_date=date(2026, 3, 14)).model_copy(
            update={"user_id": "u1", "is_skipped": True, "stay_duration": timedelta(minutes=45)}
        )
        restored = Location.from_record(location.to_record())
        assert restored.id == location.id
        assert restored.stay_duration == timedelta(minutes=45)
        assert restored.is_skipped is True
        assert restored.scheduled_date == date(2026, 3, 14)

    def test_from_record_defaults_to_synced(self):
        record = {"id": "r1", "name": "A", "lat": "1.5", "lng": 2, "created_at": "2026-03-14T10:00:00Z"}
        location = Location.from_record(record)
        assert location.is_synced is True
        assert location.source == LocationSource.SYNCED
        assert location.added_at == datetime(2026, 3, 14, 10, 0, tzinfo=timezone.utc)


class TestTripRoles:
    def _trip(self) -> Trip:
        return Trip(
            id="t1",
            owner_id="owner",
            name="Paris",
            collaborators=[
                Collaborator(id="c1", trip_id="t1", user_id="writer", permission=Permission.WRITE),
                Collaborator(id="c2", trip_id="t1", user_id="reader", permission=Permission.READ),
                Collaborator(id="c3", trip_id="t1", user_id="owner", permission=Permission.READ),
            ],
        )

    def test_roles(self):
        trip = self._trip()
        assert trip.role_of("owner") == TripRole.OWNER
        assert trip.role_of("writer") == TripRole.WRITE
        assert trip.role_of("reader") == TripRole.READ
        assert trip.role_of("stranger") == TripRole.NONE
        assert trip.role_of(None) == TripRole.NONE
