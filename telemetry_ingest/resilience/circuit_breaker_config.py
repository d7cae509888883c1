"""Circuit breaker states, settings and the fail-fast exception."""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for the state repository breaker.

    Attributes:
        failure_threshold: consecutive failures that open the circuit.
        recovery_timeout_seconds: time spent OPEN before a probe is allowed.
        success_threshold: successful probes needed to close again.
    """

    failure_threshold: int = 5
    recovery_timeout_seconds: float = 30.0
    success_threshold: int = 2

    def __post_init__(self) -> None:
        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ValueError("circuit breaker thresholds must be >= 1")
        if self.recovery_timeout_seconds < 0:
            raise ValueError("recovery_timeout_seconds must be >= 0")

    @classmethod
    def from_env(cls) -> "CircuitBreakerConfig":
        return cls(
            failure_threshold=int(os.getenv("CB_FAILURE_THRESHOLD", "5")),
            recovery_timeout_seconds=float(os.getenv("CB_RECOVERY_TIMEOUT", "30")),
            success_threshold=int(os.getenv("CB_SUCCESS_THRESHOLD", "2")),
        )

    def to_dict(self) -> dict:
        return {
            "failure_threshold": self.failure_threshold,
            "recovery_timeout_seconds": self.recovery_timeout_seconds,
            "success_threshold": self.success_threshold,
        }


class CircuitBreakerOpen(Exception):
    """The breaker refused the call; nothing reached the repository."""

    def __init__(self, name: str, remaining_seconds: float):
        self.name = name
        self.remaining_seconds = remaining_seconds
        super().__init__(f"circuit '{name}' open, next probe in {remaining_seconds:.1f}s")
