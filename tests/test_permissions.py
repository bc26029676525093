"""Tests for the permission resolver and the active trip controller."""

from __future__ import annotations

import pytest
import pytest_asyncio

from tests.fakes import eventually
from tripflow.engine.active_trip import ActiveTripController
from tripflow.engine.events import EventBus, PermissionChanged, TripActivated, TripDeactivated
from tripflow.engine.permissions import PermissionResolver
from tripflow.engine.sync import AuthState
from tripflow.remote.backend import ChangeKind, CollaboratorChange
from tripflow.state import Permission, Trip, TripRole

OWNER = "owner-1"
USER = "user-1"


@pytest_asyncio.fixture
async def shared_trip(backend):
    """Trip t1 owned by OWNER, shared with USER for writing."""
    await backend.upsert_trip(Trip(id="t1", owner_id=OWNER, name="Paris"))
    collaborator = await backend.add_collaborator("t1", USER, Permission.WRITE, invited_by=OWNER)
    return collaborator


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def resolver(backend, bus) -> PermissionResolver:
    return PermissionResolver(backend, AuthState("anon", USER), bus)


@pytest.fixture
def controller(preferences, backend, resolver, bus) -> ActiveTripController:
    return ActiveTripController(preferences, backend, resolver.auth, resolver, bus)


class TestResolve:
    @pytest.mark.asyncio
    async def test_roles(self, backend, shared_trip):
        owner = PermissionResolver(backend, AuthState("a", OWNER))
        writer = PermissionResolver(backend, AuthState("b", USER))
        stranger = PermissionResolver(backend, AuthState("c", "stranger"))

        assert (await owner.resolve("t1")).role == TripRole.OWNER
        assert (await writer.resolve("t1")).can_modify
        assert not (await stranger.resolve("t1")).can_view

    @pytest.mark.asyncio
    async def test_reader_can_view_only(self, backend, shared_trip, resolver):
        await backend.update_permission(shared_trip.id, Permission.READ)
        access = await resolver.resolve("t1")
        assert access.can_view
        assert not access.can_modify

    @pytest.mark.asyncio
    async def test_every_check_is_fresh(self, backend, shared_trip, resolver, make_location):
        location = make_location("Louvre", 48.86, 2.33, trip_id="t1", user_id=OWNER)
        assert await resolver.can_modify_location(location)

        await backend.update_permission(shared_trip.id, Permission.READ)
        assert not await resolver.can_modify_location(location)
        assert backend.calls.count("fetch_trip") == 2

    @pytest.mark.asyncio
    async def test_failure_denies_and_keeps_display_cache(self, backend, shared_trip, resolver):
        await resolver.resolve("t1")
        backend.fail_next("fetch_trip")

        assert not (await resolver.resolve("t1")).can_view
        assert resolver.cached("t1").role == TripRole.WRITE

    @pytest.mark.asyncio
    async def test_missing_trip_denies(self, resolver):
        assert (await resolver.resolve("ghost")).role == TripRole.NONE

    @pytest.mark.asyncio
    async def test_tripless_locations_by_ownership(self, backend, resolver, make_location):
        mine = make_location("Mine", 1.0, 1.0, user_id=USER)
        theirs = make_location("Theirs", 1.0, 1.0, user_id="someone")
        assert await resolver.can_modify_location(mine)
        assert not await resolver.can_modify_location(theirs)
        assert await resolver.can_add_to(None)

    @pytest.mark.asyncio
    async def test_anonymous_owns_local_records(self, backend, make_location):
        anonymous = PermissionResolver(backend, AuthState("anon"))
        assert await anonymous.can_modify_location(make_location("Mine", 1.0, 1.0, user_id="anon"))
        assert not await anonymous.can_add_to("t1")


class TestPermissionChanges:
    @pytest.mark.asyncio
    async def test_removal_deactivates_active_trip(self, backend, shared_trip, resolver, controller, preferences, bus):
        assert await controller.activate("t1")
        subscription = bus.subscribe()

        await resolver.handle_permission_change(CollaboratorChange(kind=ChangeKind.DELETE, collaborator=shared_trip))

        assert controller.trip_id is None
        assert await preferences.get_active_trip_id() is None
        events = subscription.drain()
        assert isinstance(events[0], TripDeactivated)
        assert isinstance(events[-1], PermissionChanged)
        assert events[-1].role == TripRole.NONE

    @pytest.mark.asyncio
    async def test_downgrade_keeps_trip_active(self, backend, shared_trip, resolver, controller):
        assert await controller.activate("t1")
        assert resolver.active_flags() == (True, True)

        downgraded = shared_trip.model_copy(update={"permission": Permission.READ})
        await resolver.handle_permission_change(CollaboratorChange(kind=ChangeKind.UPDATE, collaborator=downgraded))

        assert controller.trip_id == "t1"
        assert resolver.active_flags() == (True, False)

    @pytest.mark.asyncio
    async def test_removal_from_other_trip_only_updates_cache(self, backend, shared_trip, resolver, controller):
        await backend.upsert_trip(Trip(id="t2", owner_id=OWNER, name="Lyon"))
        other = await backend.add_collaborator("t2", USER, Permission.READ)
        assert await controller.activate("t1")

        await resolver.handle_permission_change(CollaboratorChange(kind=ChangeKind.DELETE, collaborator=other))

        assert controller.trip_id == "t1"
        assert resolver.cached("t2").role == TripRole.NONE

    @pytest.mark.asyncio
    async def test_other_users_changes_ignored(self, backend, shared_trip, resolver):
        someone = shared_trip.model_copy(update={"user_id": "someone"})
        await resolver.handle_permission_change(CollaboratorChange(kind=ChangeKind.DELETE, collaborator=someone))
        assert resolver.cached("t1").role == TripRole.NONE
        assert "fetch_trip" not in backend.calls

    @pytest.mark.asyncio
    async def test_change_feed(self, backend, shared_trip, resolver, controller):
        assert await controller.activate("t1")
        resolver.start()
        await eventually(lambda: "subscribe_collaborators" in backend.calls)

        await backend.remove_collaborator(shared_trip.id)
        await eventually(lambda: controller.trip_id is None)
        await resolver.stop()


class TestActiveTrip:
    @pytest.mark.asyncio
    async def test_activate_requires_view(self, backend, resolver, controller):
        await backend.upsert_trip(Trip(id="private", owner_id=OWNER, name="Private"))
        assert not await controller.activate("private")
        assert controller.trip_id is None

    @pytest.mark.asyncio
    async def test_activate_persists_and_emits(self, shared_trip, controller, preferences, bus):
        subscription = bus.subscribe()
        assert await controller.activate("t1")

        assert controller.trip.name == "Paris"
        assert await preferences.get_active_trip_id() == "t1"
        assert isinstance(subscription.drain()[0], TripActivated)

    @pytest.mark.asyncio
    async def test_load_restores_pointer(self, shared_trip, controller, preferences):
        await preferences.set_active_trip_id("t1")
        trip = await controller.load()
        assert trip.id == "t1"
        assert controller.trip_id == "t1"

    @pytest.mark.asyncio
    async def test_load_drops_deleted_trip(self, backend, shared_trip, controller, preferences):
        await preferences.set_active_trip_id("t1")
        await backend.delete_trip("t1")

        assert await controller.load() is None
        assert controller.trip_id is None
        assert await preferences.get_active_trip_id() is None

    @pytest.mark.asyncio
    async def test_load_offline_keeps_pointer(self, backend, shared_trip, controller, preferences):
        await preferences.set_active_trip_id("t1")
        backend.offline = True

        await controller.load()
        assert controller.trip_id == "t1"
        assert await preferences.get_active_trip_id() == "t1"

    @pytest.mark.asyncio
    async def test_refresh_deactivates_when_deleted(self, backend, shared_trip, controller):
        assert await controller.activate("t1")
        await backend.delete_trip("t1")
        assert await controller.refresh() is None
        assert controller.trip_id is None
