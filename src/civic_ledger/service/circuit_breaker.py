"""Circuit breaker around ledger node submissions.

After ``failure_threshold`` consecutive failures the breaker opens and every
call fails fast with ``CircuitBreakerOpen`` (itself a LedgerSubmissionFailure,
so the anchor step treats it like any other node failure). Once
``timeout_seconds`` have passed it lets calls through again in half-open
state; ``success_threshold`` successes close it, one failure reopens it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, TypeVar

from ..errors import LedgerSubmissionFailure, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Thresholds of a circuit breaker."""

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0

    # Errors in the caller's input say nothing about the node's health
    ignore: tuple[type[Exception], ...] = (ValidationError, ValueError, TypeError)


class CircuitBreakerOpen(LedgerSubmissionFailure):
    """Call refused because the breaker is open."""

    def __init__(self, name: str, time_remaining: float):
        super().__init__(f"Circuit breaker '{name}' is open, retry in {time_remaining:.1f}s")
        self.name = name
        self.time_remaining = time_remaining


class CircuitBreaker:
    """Thread-safe circuit breaker shared by all side-effect workers.

    Example:
        breaker = CircuitBreaker("ledger-node")
        receipt = breaker.call(lambda: client.submit(...))
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._opened_at = 0.0
        self._times_opened = 0

    def _move_to(self, state: CircuitState, reason: str) -> None:
        logger.warning(f"Circuit breaker '{self.name}' {self._state.value} -> {state.value}: {reason}")
        self._state = state
        self._successes = 0
        if state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._times_opened += 1
        elif state == CircuitState.CLOSED:
            self._failures = 0

    @property
    def state(self) -> CircuitState:
        """Current state; an expired open breaker reports half-open."""
        with self._lock:
            if (
                self._state == CircuitState.OPEN
                and self._clock() - self._opened_at >= self.config.timeout_seconds
            ):
                self._move_to(CircuitState.HALF_OPEN, "timeout elapsed")
            return self._state

    @property
    def time_until_retry(self) -> float:
        with self._lock:
            if self._state != CircuitState.OPEN:
                return 0.0
            return max(0.0, self.config.timeout_seconds - (self._clock() - self._opened_at))

    def call(self, func: Callable[[], T]) -> T:
        """Run ``func`` unless the breaker is open.

        Raises:
            CircuitBreakerOpen: The breaker is open
            Exception: Whatever ``func`` raised, after recording the failure
        """
        if self.state == CircuitState.OPEN:
            raise CircuitBreakerOpen(self.name, self.time_until_retry)

        try:
            result = func()
        except self.config.ignore:
            raise
        except Exception as e:
            self._record_failure(e)
            raise
        self._record_success()
        return result

    def _record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._successes += 1
                if self._successes >= self.config.success_threshold:
                    self._move_to(CircuitState.CLOSED, "node recovered")
            else:
                self._failures = 0

    def _record_failure(self, error: Exception) -> None:
        with self._lock:
            self._failures += 1
            logger.info(
                f"Circuit breaker '{self.name}' failure "
                f"{self._failures}/{self.config.failure_threshold}: {error}"
            )
            if self._state == CircuitState.HALF_OPEN:
                self._move_to(CircuitState.OPEN, "failure while half-open")
            elif (
                self._state == CircuitState.CLOSED
                and self._failures >= self.config.failure_threshold
            ):
                self._move_to(CircuitState.OPEN, "failure threshold reached")

    def reset(self) -> None:
        """Force the breaker closed."""
        with self._lock:
            self._move_to(CircuitState.CLOSED, "manual reset")

    def get_stats(self) -> dict[str, Any]:
        state = self.state
        with self._lock:
            return {
                "name": self.name,
                "state": state.value,
                "failure_count": self._failures,
                "success_count": self._successes,
                "times_opened": self._times_opened,
                "time_until_retry": self.time_until_retry,
            }


__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerOpen",
    "CircuitState",
]
