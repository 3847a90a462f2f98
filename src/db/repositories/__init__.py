from .driver_repository import DriverRepository
from .ride_repository import RideRepository

__all__ = ["DriverRepository", "RideRepository"]
