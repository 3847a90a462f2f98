"""Translation of SQLAlchemy failures into engine error kinds."""

import logging
from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from core.exceptions import DispatchError, InternalError, PersistenceError

from .schema import ACTIVE_DRIVER_INDEX

logger = logging.getLogger(__name__)


def is_active_driver_violation(exc: IntegrityError) -> bool:
    """True when the unique index on a driver's open ride rejected the write."""
    message = str(exc.orig)
    return ACTIVE_DRIVER_INDEX in message or "rides.driver_id" in message


@contextmanager
def translate_errors(operation: str) -> Generator[None]:
    """Map storage failures to PersistenceError (transient) or InternalError."""
    try:
        yield
    except DispatchError:
        raise
    except OperationalError as exc:
        logger.warning("Storage unavailable during %s: %s", operation, exc.orig)
        raise PersistenceError(
            f"Storage unavailable during {operation}", {"operation": operation}
        ) from exc
    except SQLAlchemyError as exc:
        logger.error("Storage failure during %s: %s", operation, exc)
        raise InternalError(
            f"Storage failure during {operation}", {"operation": operation}
        ) from exc
