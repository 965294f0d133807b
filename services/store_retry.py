"""Bounded retry with exponential backoff for ledger/event store calls."""

from __future__ import annotations

import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from core.logging import get_logger
from services.trial_errors import PermanentStoreFailure, TransientStoreFailure

logger = get_logger(__name__)

T = TypeVar("T")


def call_with_backoff(
    operation: Callable[[], T],
    *,
    description: str,
    max_attempts: int = 3,
    base_delay: float = 0.2,
    retry_on: Tuple[Type[BaseException], ...] = (TransientStoreFailure,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Only exceptions listed in ``retry_on`` are retried; everything else
    propagates immediately. Running out of attempts raises
    :class:`PermanentStoreFailure` chained to the last error.
    """

    attempts = max(1, max_attempts)
    delay = max(base_delay, 0.0)
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except retry_on as exc:
            last_error = exc
            logger.warning("%s failed (attempt %s/%s): %s", description, attempt, attempts, exc)
        if attempt < attempts:
            sleep(delay)
            delay *= 2
    raise PermanentStoreFailure(f"{description} failed after {attempts} attempts") from last_error


__all__ = ["call_with_backoff"]
