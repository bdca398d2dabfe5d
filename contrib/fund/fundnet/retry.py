"""
Fund Network SDK - Bounded retry

Exponential backoff for calls against the chain provider. Every call gets a
fixed number of attempts; the last failure is re-raised to the caller.
"""

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

log = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BACKOFF_S = 30.0


def backoff_delay(attempt: int, base: float, cap: float = MAX_BACKOFF_S) -> float:
    """Delay before retry number `attempt` (1-based): base, 2*base, 4*base ... capped."""
    return min(cap, base * (2 ** (attempt - 1)))


def call_with_retry(fn: Callable[[], T],
                    attempts: int = 3,
                    base_delay: float = 1.0,
                    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
                    label: str = "call",
                    sleep: Callable[[float], None] = time.sleep) -> T:
    """
    Run fn() up to `attempts` times, sleeping with backoff between failures.

    Only exceptions in `retry_on` are retried; anything else propagates at once.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as e:
            if attempt >= attempts:
                log.error(f"{label} failed after {attempts} attempt(s): {e}")
                raise
            delay = backoff_delay(attempt, base_delay)
            log.warning(f"{label} failed (attempt {attempt}/{attempts}), retrying in {delay:.1f}s: {e}")
            sleep(delay)
            attempt += 1
