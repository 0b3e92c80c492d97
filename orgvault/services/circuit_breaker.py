"""Circuit breaker guarding calls to the external KMS."""

import asyncio
import time
from enum import Enum
from typing import Optional


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Blocking all requests
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenError(Exception):
    """Raised when circuit breaker is open."""

    pass


class CircuitBreaker:
    """
    Circuit breaker for protecting against cascading failures.

    Only failures passed through ``is_failure`` count towards opening the
    circuit, so permanent caller errors (bad context, key mismatch) never trip it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: int = 30,
        half_open_max_calls: int = 3,
        is_failure=None,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._is_failure = is_failure or (lambda exc: True)

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state, transitioning if necessary."""
        if self._state == CircuitState.OPEN:
            if (
                self._last_failure_time
                and time.monotonic() - self._last_failure_time >= self.recovery_timeout
            ):
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
        return self._state

    async def call(self, func, *args, **kwargs):
        """Execute function with circuit breaker protection."""
        async with self._lock:
            current_state = self.state

            if current_state == CircuitState.OPEN:
                raise CircuitBreakerOpenError(
                    f"Circuit breaker is open. Retry after {self.recovery_timeout}s"
                )

            if current_state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    raise CircuitBreakerOpenError(
                        "Circuit breaker in half-open state, max test calls reached"
                    )
                self._half_open_calls += 1

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if self._is_failure(e):
                await self._on_failure()
            else:
                await self._on_success()
            raise
        await self._on_success()
        return result

    async def _on_success(self):
        async with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                # Service recovered, close circuit
                self._state = CircuitState.CLOSED
            self._failure_count = 0

    async def _on_failure(self):
        async with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.monotonic()

            if self._state == CircuitState.HALF_OPEN:
                # Service still failing, re-open circuit
                self._state = CircuitState.OPEN
            elif self._failure_count >= self.failure_threshold:
                self._state = CircuitState.OPEN
