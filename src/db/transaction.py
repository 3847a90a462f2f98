"""Transaction utilities for explicit transaction boundaries.

Every write path in the engine is one of these units: the ride update, the
driver claim or release and any derived field all commit together or not
at all.
"""

from collections.abc import Generator
from contextlib import contextmanager

from sqlalchemy.orm import Session


@contextmanager
def transaction(session: Session) -> Generator[Session]:
    """Commit on successful completion, roll back on any exception.

    Example:
        with transaction(session):
            rides.assign_driver("r1", "d1", now)
            drivers.claim("d1", now)
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
