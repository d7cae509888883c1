"""Resilience for the ingest pipeline: circuit breaker, downstream timeouts, DLQ."""

from .circuit_breaker import CircuitBreaker
from .circuit_breaker_config import CircuitBreakerConfig, CircuitBreakerOpen, CircuitState
from .dead_letter import DeadLetterQueue, create_dead_letter_queue
from .guard import DownstreamGuard

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerOpen",
    "CircuitState",
    "DeadLetterQueue",
    "DownstreamGuard",
    "create_dead_letter_queue",
]
