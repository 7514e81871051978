"""Bounded retries for side-effect steps.

The dispatcher runs every audit append and ledger submission through
``run_with_retry``; a step that still fails after ``max_attempts`` is
reported back to the dispatcher, which logs it and moves on.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from ..errors import ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Errors that will fail the same way on every attempt
PERMANENT_ERRORS: tuple[type[Exception], ...] = (ValidationError, TypeError, KeyError)


@dataclass
class RetryConfig:
    """Attempt count and backoff shape of a retried step."""

    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 30.0
    factor: float = 2.0
    jitter: bool = True
    give_up_on: tuple[type[Exception], ...] = PERMANENT_ERRORS

    def delay_before(self, retry_index: int) -> float:
        return calculate_backoff(
            retry_index,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            factor=self.factor,
            jitter=self.jitter,
        )


def calculate_backoff(
    attempt: int,
    base_delay: float = 0.5,
    max_delay: float = 30.0,
    factor: float = 2.0,
    jitter: bool = True,
) -> float:
    """Delay before retry number ``attempt`` (0 for the first retry).

    The delay doubles (by ``factor``) per attempt up to ``max_delay``;
    jitter spreads it by up to a quarter either way.
    """
    delay = min(base_delay * factor**attempt, max_delay)
    if jitter:
        spread = delay / 4
        delay += random.uniform(-spread, spread)
    return max(0.0, delay)


def run_with_retry(
    fn: Callable[[], T],
    config: RetryConfig | None = None,
    *,
    label: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Return the first successful result of ``fn``.

    Raises:
        The error of the final attempt, or a ``give_up_on`` error as soon as
        it is seen.
    """
    cfg = config or RetryConfig()
    attempts = max(1, cfg.max_attempts)

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except cfg.give_up_on:
            raise
        except Exception as e:
            if attempt == attempts:
                logger.error(f"{label} failed after {attempts} attempt(s): {e}")
                raise
            delay = cfg.delay_before(attempt - 1)
            logger.warning(f"{label} attempt {attempt}/{attempts} failed, retrying in {delay:.2f}s: {e}")
            sleep(delay)

    raise AssertionError("unreachable")


__all__ = ["PERMANENT_ERRORS", "RetryConfig", "calculate_backoff", "run_with_retry"]
