"""Timeout + circuit breaker around downstream calls.

Whatever goes wrong downstream (exception, timeout, open circuit) comes out
as DownstreamUnavailable, the one error the ingest handler drops on.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional, TypeVar

from ..domain.errors import DownstreamUnavailable
from .circuit_breaker import CircuitBreaker
from .circuit_breaker_config import CircuitBreakerOpen

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 5.0


class DownstreamGuard:
    """Bounds every downstream call by ``timeout_seconds``.

    The call runs on a small thread pool so the caller can stop waiting.
    A timed-out call is not interrupted: it finishes in the background and
    its result is discarded. Until it settles, further calls for the same
    machine are refused, so an old snapshot save can never land after a
    newer one.
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_workers: int = 8,
    ):
        self._cb = circuit_breaker
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="downstream"
        )
        self._pending_lock = threading.Lock()
        self._pending: dict[int, Future] = {}

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._cb

    def call(
        self,
        operation: str,
        func: Callable[[], T],
        machine_id: Optional[int] = None,
    ) -> T:
        if machine_id is not None and self._still_running(machine_id):
            logger.warning(
                "[DOWNSTREAM] %s refused machine=%s: timed-out call still running",
                operation, machine_id,
            )
            raise DownstreamUnavailable(
                operation, "previous call for this machine still running", machine_id=machine_id
            )

        try:
            return self._cb.call(lambda: self._run_with_timeout(func, machine_id))
        except CircuitBreakerOpen as e:
            raise DownstreamUnavailable(operation, str(e), machine_id=machine_id) from e
        except FutureTimeoutError as e:
            logger.warning(
                "[DOWNSTREAM] %s timed out after %.1fs machine=%s",
                operation, self._timeout, machine_id,
            )
            raise DownstreamUnavailable(
                operation, f"timed out after {self._timeout:.1f}s", machine_id=machine_id
            ) from e
        except DownstreamUnavailable:
            raise
        except Exception as e:
            logger.error("[DOWNSTREAM] %s failed machine=%s err=%s", operation, machine_id, e)
            raise DownstreamUnavailable(operation, str(e)[:200], machine_id=machine_id) from e

    def _still_running(self, machine_id: int) -> bool:
        with self._pending_lock:
            future = self._pending.get(machine_id)
            if future is None:
                return False
            if future.done():
                del self._pending[machine_id]
                return False
            return True

    def _run_with_timeout(self, func: Callable[[], T], machine_id: Optional[int]) -> T:
        future = self._executor.submit(func)
        try:
            return future.result(timeout=self._timeout)
        except FutureTimeoutError:
            if machine_id is not None:
                with self._pending_lock:
                    self._pending[machine_id] = future
            raise

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
