"""Retry utilities with exponential backoff.

Only read-only operations go through these helpers. Conditional writes that
mutate ride status or driver assignment are never retried automatically.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from .exceptions import TransientError

T = TypeVar("T")
logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 0.05
    multiplier: float = 2.0
    max_delay: float = 1.0
    retryable_exceptions: tuple[type[Exception], ...] = field(
        default_factory=lambda: (TransientError,)
    )


def _backoff(config: RetryConfig, attempt: int) -> float:
    return min(config.base_delay * (config.multiplier**attempt), config.max_delay)


def with_retry_sync(
    operation: Callable[[], T],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
) -> T:
    """Execute operation with exponential backoff retry on retryable errors."""
    if config is None:
        config = RetryConfig()

    last_exception: Exception | None = None

    for attempt in range(config.max_attempts):
        try:
            return operation()
        except config.retryable_exceptions as e:
            last_exception = e
            if attempt == config.max_attempts - 1:
                logger.error(
                    "%s failed after %d attempts: %s", operation_name, config.max_attempts, e
                )
                raise

            delay = _backoff(config, attempt)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                operation_name,
                attempt + 1,
                config.max_attempts,
                delay,
                e,
            )
            time.sleep(delay)

    raise last_exception  # type: ignore
