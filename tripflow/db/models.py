"""SQLAlchemy models for the on-device store."""

from datetime import date, datetime, timezone

from sqlalchemy import Boolean, Date, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class LocationRow(Base):
    __tablename__ = "locations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    trip_id: Mapped[str | None] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(Text, nullable=False)
    address: Mapped[str] = mapped_column(Text, nullable=False, default="")
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    # ISO-8601 text keeps the UTC offset, which SQLite DateTime would drop
    added_at: Mapped[str] = mapped_column(String(40), nullable=False)
    scheduled_date: Mapped[date | None] = mapped_column(Date)
    stay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=1800)
    is_skipped: Mapped[bool] = mapped_column(Boolean, default=False)
    travel_seconds: Mapped[int | None] = mapped_column(Integer)
    distance_m: Mapped[float | None] = mapped_column(Float)
    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    source: Mapped[str] = mapped_column(String(16), nullable=False, default="local")
    is_synced: Mapped[bool] = mapped_column(Boolean, default=False)
    last_synced_at: Mapped[str | None] = mapped_column(String(40))
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_locations_trip", "trip_id"),
        Index("idx_locations_fingerprint", "fingerprint"),
    )

    def __repr__(self) -> str:
        return f"<LocationRow {self.id} name={self.name!r} trip={self.trip_id}>"


class PreferenceRow(Base):
    """Device-local key/value settings (anonymous id, active trip pointer, ...)."""

    __tablename__ = "preferences"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
