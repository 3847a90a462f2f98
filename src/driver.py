"""Driver availability model."""

from datetime import datetime

from pydantic import BaseModel

from ride import Coordinates


class DriverAvailability(BaseModel):
    """Dispatch-relevant view of a driver as read from the store."""

    driver_id: str
    is_active: bool = True
    is_available: bool = False
    location: Coordinates | None = None
    h3_cell: str | None = None
    last_location_update: datetime | None = None
    last_assigned_at: datetime | None = None
    last_released_at: datetime | None = None
    version: int = 1

    @property
    def is_eligible(self) -> bool:
        """Can be offered or accept a ride right now."""
        return self.is_active and self.is_available and self.location is not None
