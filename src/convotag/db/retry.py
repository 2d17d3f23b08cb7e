"""
Retry logic with exponential backoff for storage operations.

Wraps whole units of work (open session, do work, commit) so a retried
attempt always starts from a fresh transaction.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, OperationalError

from convotag.config import settings
from convotag.exceptions import ConvotagError, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_retries: int = 3
    initial_delay: float = 0.05
    max_delay: float = 2.0
    exponential_base: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls) -> "RetryConfig":
        return cls(
            max_retries=settings.db_retry_attempts,
            initial_delay=settings.db_retry_initial_delay,
        )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay before next retry using exponential backoff.

    Args:
        attempt: Current attempt number (0-indexed)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.initial_delay * (config.exponential_base**attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # Up to 25% jitter so concurrent writers do not retry in lockstep
        delay += delay * 0.25 * random.random()

    return delay


def is_transient_error(exc: BaseException) -> bool:
    """Check whether a storage error is safe to retry with a fresh transaction."""
    if isinstance(exc, OperationalError):
        return True
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True
    orig = exc.orig
    pgcode = getattr(orig, "pgcode", None)
    if pgcode in {"40P01", "40001"}:  # deadlock detected / serialization failure
        return True
    return orig.__class__.__name__ in {"DeadlockDetected", "SerializationFailure"}


def run_with_retry(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    operation: Optional[str] = None,
) -> T:
    """
    Run a unit of work, retrying transient storage errors.

    Args:
        func: Zero-argument callable performing one complete transaction
        config: Retry configuration (defaults from settings)
        operation: Name used in log messages

    Returns:
        Whatever ``func`` returns

    Raises:
        TransientStoreError: If every attempt failed with a transient error
        ConvotagError: Domain errors propagate immediately without retry
    """
    if config is None:
        config = RetryConfig.from_settings()
    name = operation or getattr(func, "__name__", "operation")

    for attempt in range(config.max_retries + 1):
        try:
            return func()
        except ConvotagError:
            raise
        except DBAPIError as e:
            if not is_transient_error(e):
                raise
            if attempt >= config.max_retries:
                logger.error(
                    f"Max retries ({config.max_retries}) exceeded for {name}: {e}"
                )
                raise TransientStoreError(
                    f"{name} failed after {attempt + 1} attempts: {e.orig}",
                    attempts=attempt + 1,
                ) from e
            delay = calculate_delay(attempt, config)
            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for {name}: "
                f"{e.orig}, waiting {delay:.2f}s"
            )
            time.sleep(delay)

    raise RuntimeError("Unexpected retry loop exit")
