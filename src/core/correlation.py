"""Correlation context for tracing a call across components."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from uuid import uuid4

current_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


class CorrelationFilter(logging.Filter):
    """Logging filter that adds the current correlation ID to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = current_correlation_id.get() or "-"
        return True


@contextmanager
def with_correlation(correlation_id: str | None = None) -> Iterator[str]:
    """Set the correlation ID for a block of code.

    Nested blocks keep the outermost ID so one engine call logs under a
    single correlation ID even when it fans out to several components.

    Usage:
        with with_correlation(ride.ride_id):
            logger.info("Accepting ride")  # Will include correlation_id in log
    """
    existing = current_correlation_id.get()
    if existing is not None:
        yield existing
        return

    value = correlation_id or str(uuid4())
    token = current_correlation_id.set(value)
    try:
        yield value
    finally:
        current_correlation_id.reset(token)


def get_current_correlation_id() -> str | None:
    """Get the current correlation ID from context."""
    return current_correlation_id.get()
