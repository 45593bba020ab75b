"""Retry helper for store operations with exponential backoff."""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError

from .config import STORE_RETRY_ATTEMPTS, STORE_RETRY_BASE_DELAY
from .errors import StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Timeouts, dropped connections, lock/serialization conflicts
TRANSIENT_ERRORS = (OperationalError, TimeoutError, ConnectionError)


def retry_store_operation(
    operation: Callable[[], T],
    *,
    name: str = "store operation",
    max_attempts: int = STORE_RETRY_ATTEMPTS,
    base_delay: float = STORE_RETRY_BASE_DELAY,
    on_retry: Optional[Callable[[], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run operation, retrying transient store failures.

    The delay doubles after every failed attempt (base, 2*base, 4*base...).
    Non-transient exceptions propagate immediately. When every attempt fails,
    StoreUnavailable is raised from the last error.
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(attempts):
        try:
            return operation()
        except TRANSIENT_ERRORS as exc:
            if on_retry is not None:
                on_retry()
            if attempt == attempts - 1:
                logger.error("%s failed after %d attempts: %s", name, attempts, exc)
                raise StoreUnavailable(f"{name} failed after {attempts} attempts") from exc
            delay = base_delay * (2 ** attempt)
            logger.warning(
                "%s failed, retrying in %.2fs (attempt %d/%d): %s",
                name,
                delay,
                attempt + 1,
                attempts,
                exc,
            )
            sleep(delay)
    raise AssertionError("unreachable")
