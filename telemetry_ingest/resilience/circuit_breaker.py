"""Circuit breaker in front of the state repository.

    CLOSED    --failure_threshold consecutive failures-->  OPEN
    OPEN      --recovery_timeout elapsed-->                HALF_OPEN
    HALF_OPEN --success_threshold probe successes-->       CLOSED
    HALF_OPEN --any probe failure-->                       OPEN

While OPEN every call fails fast with CircuitBreakerOpen, so a dead
database costs a message microseconds instead of a full downstream
timeout. HALF_OPEN lets one probe through at a time.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, TypeVar

from .circuit_breaker_config import CircuitBreakerConfig, CircuitBreakerOpen, CircuitState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._config = config or CircuitBreakerConfig.from_env()
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._probe_successes = 0
        self._probe_in_flight = False
        self._opened_at = 0.0
        self._last_error: Optional[str] = None
        self._rejected = 0

        logger.info("[CB] %s ready %s", name, self._config.to_dict())

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._current_state()

    @property
    def is_closed(self) -> bool:
        return self.state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self.state is CircuitState.OPEN

    def call(self, func: Callable[[], T]) -> T:
        """Run ``func`` unless the circuit refuses it.

        Raises:
            CircuitBreakerOpen: while OPEN, or while another probe is running.
        """
        self._admit()
        try:
            result = func()
        except Exception as e:
            self._record_failure(e)
            raise
        self._record_success()
        return result

    def get_stats(self) -> dict:
        with self._lock:
            state = self._current_state()
            return {
                "name": self.name,
                "state": state.value,
                "consecutive_failures": self._consecutive_failures,
                "probe_successes": self._probe_successes,
                "rejected_calls": self._rejected,
                "retry_in_seconds": round(self._remaining(), 1) if state is CircuitState.OPEN else 0.0,
                "last_error": self._last_error,
                "config": self._config.to_dict(),
            }

    # -- internals (callers hold self._lock unless noted) ------------------

    def _current_state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._remaining() <= 0:
            self._move_to(CircuitState.HALF_OPEN, "recovery timeout elapsed")
        return self._state

    def _remaining(self) -> float:
        return max(0.0, self._config.recovery_timeout_seconds - (self._clock() - self._opened_at))

    def _admit(self) -> None:
        # Takes the lock itself.
        with self._lock:
            state = self._current_state()
            if state is CircuitState.CLOSED:
                return
            if state is CircuitState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return
            self._rejected += 1
            raise CircuitBreakerOpen(self.name, self._remaining())

    def _record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._probe_successes += 1
                if self._probe_successes >= self._config.success_threshold:
                    self._move_to(CircuitState.CLOSED, "probes succeeded")
            else:
                self._consecutive_failures = 0

    def _record_failure(self, error: Exception) -> None:
        with self._lock:
            self._last_error = f"{type(error).__name__}: {str(error)[:100]}"
            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = False
                self._move_to(CircuitState.OPEN, f"probe failed ({self._last_error})")
                return

            self._consecutive_failures += 1
            if (
                self._state is CircuitState.CLOSED
                and self._consecutive_failures >= self._config.failure_threshold
            ):
                self._move_to(
                    CircuitState.OPEN,
                    f"{self._consecutive_failures} consecutive failures ({self._last_error})",
                )

    def _move_to(self, new_state: CircuitState, reason: str) -> None:
        old_state = self._state
        self._state = new_state
        self._probe_successes = 0
        self._probe_in_flight = False
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state is CircuitState.CLOSED:
            self._consecutive_failures = 0

        log = logger.warning if new_state is CircuitState.OPEN else logger.info
        log("[CB] %s %s -> %s: %s", self.name, old_state.value, new_state.value, reason)
