"""
Retry helpers built on tenacity.

Conflict retries re-run a whole read-modify-write closure: the callable must
re-read the entity on every attempt.
"""

import logging
from typing import Callable, TypeVar

import tenacity

from .errors import ConflictError, InfrastructureError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_on_conflict(fn: Callable[[], T], attempts: int) -> T:
    """Run fn, retrying on ConflictError up to attempts times."""
    retryer = tenacity.Retrying(
        retry=tenacity.retry_if_exception_type(ConflictError),
        wait=tenacity.wait_exponential(multiplier=0.01, max=0.5) + tenacity.wait_random(0, 0.01),
        stop=tenacity.stop_after_attempt(max(1, attempts)),
        before_sleep=tenacity.before_sleep_log(logger, logging.DEBUG),
        reraise=True,
    )
    return retryer(fn)


def retry_transient(fn: Callable[[], T], attempts: int = 3) -> T:
    """Run fn, retrying InfrastructureError with short exponential backoff."""
    retryer = tenacity.Retrying(
        retry=tenacity.retry_if_exception_type(InfrastructureError),
        wait=tenacity.wait_exponential(multiplier=0.2, max=2),
        stop=tenacity.stop_after_attempt(max(1, attempts)),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    return retryer(fn)


def backoff_delay(failures: int, base: float, cap: float = 300.0) -> float:
    """Delay before the next attempt after `failures` consecutive failures."""
    if failures <= 0:
        return 0.0
    return min(cap, base * (2 ** (failures - 1)))
