"""
Bounded retry with exponential backoff for persistence calls
"""

import logging
import time
from typing import Callable, TypeVar

from ...config import RetryPolicy
from ..errors import PersistenceFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_retry(
    operation: str,
    func: Callable[[], T],
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep
) -> T:
    """
    Run a persistence call, retrying PersistenceFailure with backoff.

    Args:
        operation: Name used in logs and in the final error
        func: Zero-argument callable performing the storage operation
        policy: Attempt count and delay bounds
        sleep: Injected for tests

    Returns:
        Whatever `func` returns

    Raises:
        PersistenceFailure: after `policy.max_attempts` failed attempts.
        Any other exception propagates immediately (not retried).
    """
    attempts = max(1, policy.max_attempts)
    last_error = None

    for attempt in range(1, attempts + 1):
        try:
            return func()
        except PersistenceFailure as e:
            last_error = e
            if attempt == attempts:
                break
            delay = policy.delay_for(attempt)
            logger.warning(
                f"[DB] {operation} failed (attempt {attempt}/{attempts}), "
                f"retrying in {delay:.2f}s: {e}"
            )
            if delay > 0:
                sleep(delay)

    logger.error(f"[DB] {operation} exhausted {attempts} attempts: {last_error}")
    raise PersistenceFailure(operation, str(last_error), attempts=attempts) from last_error
