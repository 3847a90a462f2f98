"""SQLAlchemy ORM models for the ride store."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .utils import utc_now

# Rows in these states hold the rider (and the driver, once bound).
_ACTIVE_RIDE = "status NOT IN ('completed', 'cancelled')"
_ACTIVE_DRIVER_RIDE = "driver_id IS NOT NULL AND status NOT IN ('completed', 'cancelled')"

ACTIVE_RIDER_INDEX = "uq_rides_active_rider"
ACTIVE_DRIVER_INDEX = "uq_rides_active_driver"


class Base(DeclarativeBase):
    pass


class DriverRecord(Base):
    __tablename__ = "drivers"

    driver_id: Mapped[str] = mapped_column(String, primary_key=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    h3_cell: Mapped[str | None] = mapped_column(String, nullable=True)
    last_location_update: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_assigned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: utc_now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: utc_now(),
        onupdate=lambda: utc_now(),
    )

    __table_args__ = (
        Index("idx_driver_cell", "h3_cell"),
        Index("idx_driver_available", "is_available", "is_active"),
    )


class RideRecord(Base):
    __tablename__ = "rides"

    ride_id: Mapped[str] = mapped_column(String, primary_key=True)
    rider_id: Mapped[str] = mapped_column(String, nullable=False)
    driver_id: Mapped[str | None] = mapped_column(String, nullable=True)
    proposed_driver_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False)

    pickup_address: Mapped[str] = mapped_column(String, nullable=False, default="")
    pickup_lon: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_cell: Mapped[str] = mapped_column(String, nullable=False)
    destination_address: Mapped[str] = mapped_column(String, nullable=False, default="")
    destination_lon: Mapped[float] = mapped_column(Float, nullable=False)
    destination_lat: Mapped[float] = mapped_column(Float, nullable=False)

    estimated_distance: Mapped[float] = mapped_column(Float, nullable=False)
    estimated_duration: Mapped[float] = mapped_column(Float, nullable=False)
    actual_distance: Mapped[float | None] = mapped_column(Float, nullable=True)
    actual_duration: Mapped[float | None] = mapped_column(Float, nullable=True)

    fare_estimated: Mapped[float] = mapped_column(Float, nullable=False)
    fare_final: Mapped[float | None] = mapped_column(Float, nullable=True)
    surge_multiplier: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    fare_base: Mapped[float] = mapped_column(Float, nullable=False)
    fare_distance: Mapped[float] = mapped_column(Float, nullable=False)
    fare_time: Mapped[float] = mapped_column(Float, nullable=False)
    fare_surge: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    requested_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    accepted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancelled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    payment_method: Mapped[str] = mapped_column(String, nullable=False, default="mock")
    payment_status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    payment_processed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    rider_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    driver_rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rider_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)
    driver_feedback: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancellation_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    cancelled_by: Mapped[str | None] = mapped_column(String, nullable=True)
    special_instructions: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: utc_now(),
        onupdate=lambda: utc_now(),
    )

    __table_args__ = (
        Index("idx_ride_status", "status"),
        Index("idx_ride_pickup_cell", "pickup_cell", "status"),
        Index("idx_ride_driver", "driver_id"),
        Index("idx_ride_rider", "rider_id", "requested_at"),
        Index(
            ACTIVE_RIDER_INDEX,
            "rider_id",
            unique=True,
            sqlite_where=text(_ACTIVE_RIDE),
            postgresql_where=text(_ACTIVE_RIDE),
        ),
        Index(
            ACTIVE_DRIVER_INDEX,
            "driver_id",
            unique=True,
            sqlite_where=text(_ACTIVE_DRIVER_RIDE),
            postgresql_where=text(_ACTIVE_DRIVER_RIDE),
        ),
    )
