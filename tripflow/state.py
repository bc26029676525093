"""
State schema — locations, trips, collaborators and computed routes.

Models are frozen pydantic models; edits go through ``model_copy(update=...)``.
Enums use str mixin for easy serialisation.
``to_record`` / ``from_record`` convert to and from the remote wire format
(snake_case keys, ISO timestamps, durations in seconds).
"""

from __future__ import annotations

import math
import uuid
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tripflow.tools.fingerprint import fingerprint as compute_fingerprint

DEFAULT_STAY = timedelta(minutes=30)


# ─── Enums ────────────────────────────────────────


class LocationSource(str, Enum):
    LOCAL = "local"  # created while anonymous, never uploaded
    SYNCED = "synced"  # owned by an authenticated user


class TripStatus(str, Enum):
    PLANNING = "planning"
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"


class Permission(str, Enum):
    READ = "read"
    WRITE = "write"


class TripRole(str, Enum):
    OWNER = "owner"
    WRITE = "write"
    READ = "read"
    NONE = "none"


class RouteStatus(str, Enum):
    IDLE = "idle"
    COMPUTING = "computing"
    READY = "ready"
    FAILED = "failed"


# ─── Helpers ──────────────────────────────────────


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()


def _seconds(value: Any) -> Optional[timedelta]:
    if value is None:
        return None
    return timedelta(seconds=float(value))


def local_date(moment: datetime) -> date:
    """Calendar day of ``moment`` as the device sees it (aware values go to local time)."""
    if moment.tzinfo is not None:
        moment = moment.astimezone()
    return moment.date()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Geometry ─────────────────────────────────────


class LatLng(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float
    lng: float

    def as_tuple(self) -> tuple[float, float]:
        return (self.lat, self.lng)


# ─── Locations ────────────────────────────────────


class Location(BaseModel):
    """A point of interest the user pinned, optionally inside a trip."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str = ""
    name: str
    address: str = ""
    lat: float
    lng: float
    added_at: datetime = Field(default_factory=utcnow)
    scheduled_date: Optional[date] = None
    stay_duration: timedelta = DEFAULT_STAY
    is_skipped: bool = False
    travel_time_from_previous: Optional[timedelta] = None
    distance_from_previous: Optional[float] = None  # meters
    trip_id: Optional[str] = None
    fingerprint: str = ""
    source: LocationSource = LocationSource.LOCAL
    is_synced: bool = False
    last_synced_at: Optional[datetime] = None

    @field_validator("scheduled_date", mode="before")
    @classmethod
    def _strip_time(cls, value: Any) -> Any:
        # scheduled dates are logical days: drop any time component
        if isinstance(value, datetime):
            return value.date()
        return value

    @field_validator("stay_duration")
    @classmethod
    def _non_negative(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("stay_duration must be non-negative")
        return value

    @classmethod
    def create(
        cls,
        name: str,
        lat: float,
        lng: float,
        address: str = "",
        scheduled_date: Optional[date] = None,
        trip_id: Optional[str] = None,
        stay_duration: timedelta = DEFAULT_STAY,
    ) -> "Location":
        """New location with a fresh id, creation time and fingerprint."""
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            address=address,
            lat=lat,
            lng=lng,
            scheduled_date=scheduled_date,
            trip_id=trip_id,
            stay_duration=stay_duration,
            fingerprint=compute_fingerprint(name, lat, lng),
        )

    @property
    def coordinates(self) -> LatLng:
        return LatLng(lat=self.lat, lng=self.lng)

    @property
    def calendar_date(self) -> date:
        """Scheduled day, falling back to the day the location was added."""
        if self.scheduled_date is not None:
            return self.scheduled_date
        return local_date(self.added_at)

    def with_fingerprint(self) -> "Location":
        if self.fingerprint:
            return self
        return self.model_copy(update={"fingerprint": compute_fingerprint(self.name, self.lat, self.lng)})

    def to_record(self) -> dict[str, Any]:
        travel = self.travel_time_from_previous
        return {
            "id": self.id,
            "user_id": self.user_id,
            "trip_id": self.trip_id,
            "name": self.name,
            "address": self.address,
            "lat": self.lat,
            "lng": self.lng,
            "created_at": self.added_at.isoformat(),
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "is_synced": self.is_synced,
            "source": self.source.value,
            "fingerprint": self.fingerprint,
            "is_skipped": self.is_skipped,
            "stay_duration": int(self.stay_duration.total_seconds()),
            "scheduled_date": self.scheduled_date.isoformat() if self.scheduled_date else None,
            "travel_time_from_previous": int(travel.total_seconds()) if travel is not None else None,
            "distance_from_previous": self.distance_from_previous,
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "Location":
        stay = data.get("stay_duration")
        return cls(
            id=str(data["id"]),
            user_id=data.get("user_id") or "",
            name=data["name"],
            address=data.get("address") or "",
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            added_at=_parse_dt(data.get("created_at")) or utcnow(),
            last_synced_at=_parse_dt(data.get("last_synced_at")),
            # records coming from the remote are synced unless they say otherwise
            is_synced=data.get("is_synced", True),
            source=LocationSource(data.get("source") or LocationSource.SYNCED.value),
            fingerprint=data.get("fingerprint") or "",
            is_skipped=bool(data.get("is_skipped", False)),
            stay_duration=_seconds(stay) if stay is not None else DEFAULT_STAY,
            scheduled_date=_parse_date(data.get("scheduled_date")),
            trip_id=data.get("trip_id"),
            travel_time_from_previous=_seconds(data.get("travel_time_from_previous")),
            distance_from_previous=data.get("distance_from_previous"),
        )


# ─── Trips & collaborators ────────────────────────


class Collaborator(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    trip_id: str
    user_id: str
    email: str = ""
    permission: Permission = Permission.READ
    invited_by: str = ""
    invited_at: datetime = Field(default_factory=utcnow)

    @property
    def has_write_access(self) -> bool:
        return self.permission == Permission.WRITE

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trip_id": self.trip_id,
            "user_id": self.user_id,
            "email": self.email,
            "permission": self.permission.value,
            "invited_by": self.invited_by,
            "invited_at": self.invited_at.isoformat(),
        }

    @classmethod
    def from_record(cls, data: dict[str, Any]) -> "Collaborator":
        return cls(
            id=str(data["id"]),
            trip_id=str(data["trip_id"]),
            user_id=str(data["user_id"]),
            email=data.get("email") or "",
            permission=Permission(data.get("permission") or Permission.READ.value),
            invited_by=data.get("invited_by") or "",
            invited_at=_parse_dt(data.get("invited_at")) or utcnow(),
        )


class Trip(BaseModel):
    """Container of locations with one owner and any number of collaborators."""

    model_config = ConfigDict(frozen=True)

    id: str
    owner_id: str
    name: str
    description: Optional[str] = None
    status: TripStatus = TripStatus.PLANNING
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    collaborators: list[Collaborator] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def collaborator_for(self, user_id: str) -> Optional[Collaborator]:
        for collaborator in self.collaborators:
            if collaborator.user_id == user_id:
                return collaborator
        return None

    def role_of(self, user_id: Optional[str]) -> TripRole:
        """Exactly one role per actor; ownership wins over any collaborator row."""
        if not user_id:
            return TripRole.NONE
        if self.owner_id == user_id:
            return TripRole.OWNER
        collaborator = self.collaborator_for(user_id)
        if collaborator is None:
            return TripRole.NONE
        return TripRole.WRITE if collaborator.has_write_access else TripRole.READ

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.owner_id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_record(cls, data: dict[str, Any], collaborators: Optional[list[Collaborator]] = None) -> "Trip":
        return cls(
            id=str(data["id"]),
            owner_id=str(data.get("user_id") or data.get("owner_id") or ""),
            name=data.get("name") or "",
            description=data.get("description"),
            status=TripStatus(data.get("status") or TripStatus.PLANNING.value),
            start_date=_parse_date(data.get("start_date")),
            end_date=_parse_date(data.get("end_date")),
            collaborators=collaborators or [],
            created_at=_parse_dt(data.get("created_at")) or utcnow(),
            updated_at=_parse_dt(data.get("updated_at")) or utcnow(),
        )


class TripAccess(BaseModel):
    """Effective access of one actor to one trip."""

    model_config = ConfigDict(frozen=True)

    role: TripRole = TripRole.NONE

    @property
    def can_view(self) -> bool:
        return self.role != TripRole.NONE

    @property
    def can_modify(self) -> bool:
        return self.role in (TripRole.OWNER, TripRole.WRITE)


FULL_ACCESS = TripAccess(role=TripRole.OWNER)
NO_ACCESS = TripAccess(role=TripRole.NONE)


# ─── Routes ───────────────────────────────────────


class RouteLeg(BaseModel):
    """One directed travel segment between consecutive waypoints."""

    model_config = ConfigDict(frozen=True)

    start: LatLng
    end: LatLng
    points: list[LatLng] = Field(default_factory=list)
    duration: timedelta = timedelta(0)
    distance: float = 0.0  # meters


class RouteResult(BaseModel):
    """Output of one route computation; replaced wholesale on the next one."""

    model_config = ConfigDict(frozen=True)

    ordered: list[Location] = Field(default_factory=list)
    legs: list[RouteLeg] = Field(default_factory=list)
    overall_polyline: list[LatLng] = Field(default_factory=list)
    total_travel_time: timedelta = timedelta(0)
    total_distance: float = 0.0
    selected_date: Optional[date] = None
    start: Optional[LatLng] = None

    @classmethod
    def empty(cls, selected_date: Optional[date] = None) -> "RouteResult":
        return cls(selected_date=selected_date)

    @property
    def is_empty(self) -> bool:
        return not self.legs


def is_finite_point(lat: float, lng: float) -> bool:
    return math.isfinite(lat) and math.isfinite(lng)
