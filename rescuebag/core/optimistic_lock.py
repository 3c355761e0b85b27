"""
RescueBag — Optimistic locking retry decorator

Every order row carries a version_id. Writers update
WHERE id = :id AND version_id = :expected and raise StaleDataError when no
row matched, meaning another concurrent transaction won the race. The whole
read-validate-write operation is then retried with exponential backoff +
jitter, so the retry re-validates against the winner's committed state.
"""
import asyncio
import random
import functools
import logging

from rescuebag.core.config import get_settings
from rescuebag.core.errors import StoreUnavailable

settings = get_settings()
logger = logging.getLogger(__name__)


class StaleDataError(Exception):
    """Raised when an optimistic lock conflict is detected:
    the version_id in the store changed between our read and update.
    """
    pass


def backoff_delay(attempt: int) -> float:
    """Exponential backoff: base * 2^attempt capped at max, plus jitter (seconds)."""
    base_delay = settings.OPT_LOCK_BASE_DELAY_MS / 1000.0
    max_delay = settings.OPT_LOCK_MAX_DELAY_MS / 1000.0
    jitter = random.uniform(0, settings.OPT_LOCK_JITTER_MS / 1000.0)
    return min(base_delay * (2 ** attempt), max_delay) + jitter


def with_optimistic_retry(max_retries: int | None = None):
    """
    Decorator for async functions that perform optimistic-lock writes.
    On StaleDataError, retries with exponential backoff + jitter.
    Exhausted retries surface as StoreUnavailable (retryable).

    Usage:
        @with_optimistic_retry()
        async def redeem(self, ...):
            ...
    """
    _max = max_retries or settings.OPT_LOCK_MAX_RETRIES

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(1, _max + 1):
                try:
                    return await func(*args, **kwargs)
                except StaleDataError as exc:
                    if attempt == _max:
                        logger.error(
                            "Optimistic lock conflict unresolved after %d retries for %s",
                            _max, func.__name__,
                        )
                        raise StoreUnavailable(
                            "Order is being modified concurrently. Please retry."
                        ) from exc
                    delay = backoff_delay(attempt)
                    logger.warning(
                        "StaleDataError in %s on attempt %d/%d, retrying in %.3fs",
                        func.__name__, attempt, _max, delay,
                    )
                    await asyncio.sleep(delay)
        return wrapper
    return decorator
