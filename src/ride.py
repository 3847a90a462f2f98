"""Ride state machine and models."""

from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from core.exceptions import InvalidCoordinates
from geo.distance import validate_coordinates


class RideStatus(str, Enum):
    """Ride lifecycle states."""

    REQUESTED = "requested"
    MATCHED = "matched"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def to_event_type(self) -> str:
        """Convert status to a broadcast event type (e.g., 'ride.requested')."""
        return f"ride.{self.value}"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


VALID_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.REQUESTED: {RideStatus.MATCHED, RideStatus.CANCELLED},
    RideStatus.MATCHED: {RideStatus.ACCEPTED, RideStatus.CANCELLED},
    RideStatus.ACCEPTED: {RideStatus.IN_PROGRESS, RideStatus.CANCELLED},
    RideStatus.IN_PROGRESS: {RideStatus.COMPLETED, RideStatus.CANCELLED},
    RideStatus.COMPLETED: set(),
    RideStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})
ACTIVE_STATUSES = frozenset(s for s in RideStatus if s not in TERMINAL_STATUSES)
OPEN_STATUSES = frozenset({RideStatus.REQUESTED, RideStatus.MATCHED})
BOUND_STATUSES = frozenset({RideStatus.ACCEPTED, RideStatus.IN_PROGRESS})

# Timeline field stamped when a ride enters each status.
TIMELINE_FIELDS: dict[RideStatus, str] = {
    RideStatus.REQUESTED: "requested_at",
    RideStatus.MATCHED: "matched_at",
    RideStatus.ACCEPTED: "accepted_at",
    RideStatus.IN_PROGRESS: "started_at",
    RideStatus.COMPLETED: "completed_at",
    RideStatus.CANCELLED: "cancelled_at",
}


def can_transition(current: RideStatus, target: RideStatus) -> bool:
    return target in VALID_TRANSITIONS[current]


class Coordinates(BaseModel):
    """WGS84 position, longitude first."""

    lon: float
    lat: float

    def __init__(self, lon: float, lat: float, **data: object) -> None:
        super().__init__(lon=lon, lat=lat, **data)

    @model_validator(mode="before")
    @classmethod
    def check_range(cls, data: object) -> object:
        if isinstance(data, dict):
            validate_coordinates(data.get("lon"), data.get("lat"))
        return data

    @classmethod
    def from_pair(cls, pair: tuple[float, float] | list[float]) -> "Coordinates":
        try:
            lon, lat = pair
        except (TypeError, ValueError) as exc:
            raise InvalidCoordinates("Expected a (lon, lat) pair", {"value": pair}) from exc
        return cls(lon, lat)

    def as_tuple(self) -> tuple[float, float]:
        return (self.lon, self.lat)


class Location(BaseModel):
    address: str = Field(default="", max_length=200)
    coordinates: Coordinates

    @field_validator("address")
    @classmethod
    def strip_address(cls, v: str) -> str:
        return v.strip()


class FareBreakdownModel(BaseModel):
    base: float = Field(ge=0)
    distance: float = Field(ge=0)
    time: float = Field(ge=0)
    surge: float = Field(default=0.0, ge=0)


class Fare(BaseModel):
    estimated: float = Field(ge=0)
    final: float | None = Field(default=None, ge=0)
    surge_multiplier: float = Field(default=1.0, ge=1.0)
    currency: str = "USD"
    breakdown: FareBreakdownModel


class Timeline(BaseModel):
    requested_at: datetime
    matched_at: datetime | None = None
    accepted_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    def reached(self) -> list[tuple[str, datetime]]:
        """Stamped phases in lifecycle order."""
        phases = []
        for name in TIMELINE_FIELDS.values():
            value = getattr(self, name)
            if value is not None:
                phases.append((name, value))
        return phases


PaymentMethod = Literal["cash", "card", "wallet", "mock"]
PaymentStatus = Literal["pending", "processing", "completed", "failed", "refunded"]


class PaymentInfo(BaseModel):
    method: PaymentMethod = "mock"
    status: PaymentStatus = "pending"
    transaction_id: str | None = None
    processed_at: datetime | None = None


class RideRating(BaseModel):
    rider_rating: int | None = Field(default=None, ge=1, le=5)
    driver_rating: int | None = Field(default=None, ge=1, le=5)
    rider_feedback: str | None = Field(default=None, max_length=500)
    driver_feedback: str | None = Field(default=None, max_length=500)


class Ride(BaseModel):
    """Ride aggregate as read from the store."""

    ride_id: str
    rider_id: str
    driver_id: str | None = None
    proposed_driver_id: str | None = None
    status: RideStatus = Field(default=RideStatus.REQUESTED)
    pickup: Location
    destination: Location
    estimated_distance: float = Field(ge=0)
    estimated_duration: float = Field(ge=0)
    actual_distance: float | None = Field(default=None, ge=0)
    actual_duration: float | None = Field(default=None, ge=0)
    fare: Fare
    timeline: Timeline
    payment: PaymentInfo = Field(default_factory=PaymentInfo)
    rating: RideRating = Field(default_factory=RideRating)
    cancellation_reason: str | None = Field(default=None, max_length=200)
    cancelled_by: str | None = None
    special_instructions: str | None = Field(default=None, max_length=300)
    version: int = 1

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_STATUSES

    def is_party(self, actor_id: str) -> bool:
        return actor_id == self.rider_id or (
            self.driver_id is not None and actor_id == self.driver_id
        )

    def can_transition_to(self, new_status: RideStatus) -> bool:
        return can_transition(self.status, new_status)
