"""Database persistence module."""

from .database import create_db_engine, init_database
from .errors import translate_errors
from .repositories import DriverRepository, RideRepository
from .schema import Base, DriverRecord, RideRecord
from .transaction import transaction

__all__ = [
    "Base",
    "DriverRecord",
    "DriverRepository",
    "RideRecord",
    "RideRepository",
    "create_db_engine",
    "init_database",
    "transaction",
    "translate_errors",
]
