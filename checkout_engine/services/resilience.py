"""
Circuit breaker guarding calls to the backend.

CLOSED lets every call through and counts consecutive network failures.
OPEN rejects calls until ``reset_timeout`` has passed. HALF_OPEN then
admits a single trial call: its success closes the circuit, a network
failure re-opens it, and every other caller is rejected while it runs.
"""

import asyncio
from datetime import datetime
from enum import Enum
from functools import wraps
from typing import Callable, Optional

import structlog

from checkout_engine.config import settings
from checkout_engine.errors import CheckoutError, NetworkError
from checkout_engine.schemas.domain import utcnow


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:

    def __init__(
        self,
        name: str,
        failure_threshold: int = settings.CB_FAILURE_THRESHOLD,
        reset_timeout: float = settings.CB_RESET_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[datetime] = None
        self._trial_in_flight = False
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    async def acquire(self) -> bool:
        """Whether a call may go out now. Claims the trial slot in HALF_OPEN."""
        async with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = (self._clock() - self._opened_at).total_seconds()
                if elapsed < self.reset_timeout:
                    return False
                self._state = CircuitState.HALF_OPEN
                self._logger.info("circuit_half_open", elapsed=elapsed)

            if self._state == CircuitState.CLOSED:
                return True

            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    async def record_success(self) -> None:
        async with self._lock:
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._logger.info("circuit_closed")
                self._state = CircuitState.CLOSED
                self._opened_at = None
            if self._state == CircuitState.CLOSED:
                self._failures = 0

    async def record_failure(self, error: Optional[Exception] = None) -> None:
        async with self._lock:
            self._trial_in_flight = False
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._open()
                self._logger.warning("circuit_reopened", error=str(error))
            elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._open()
                self._logger.warning("circuit_opened", failures=self._failures, error=str(error))

    async def release(self) -> None:
        """The trial call ended without a verdict (e.g. it was cancelled)."""
        async with self._lock:
            self._trial_in_flight = False

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()


def with_circuit_breaker(circuit_breaker: CircuitBreaker, trip_on: tuple = (NetworkError,)):
    """
    Wrap an async call with the breaker.

    Only exceptions in ``trip_on`` count as failures. Any other CheckoutError
    is a structured backend answer (eSign signals, 4xx/5xx bodies) and proves
    the backend is reachable.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            if not await circuit_breaker.acquire():
                raise NetworkError(
                    f"Circuit breaker {circuit_breaker.name} is {circuit_breaker.state.value}",
                    details={"breaker": circuit_breaker.name},
                )

            try:
                result = await func(*args, **kwargs)
            except trip_on as e:
                await circuit_breaker.record_failure(e)
                raise
            except CheckoutError:
                await circuit_breaker.record_success()
                raise
            except BaseException:
                await circuit_breaker.release()
                raise
            await circuit_breaker.record_success()
            return result
        return wrapper
    return decorator
