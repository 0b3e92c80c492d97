"""Tests for the KMS circuit breaker."""

from unittest.mock import AsyncMock, patch

import pytest

from orgvault.exceptions import KmsRejectedError, KmsUnavailableError
from orgvault.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOpenError,
    CircuitState,
)


def _transient(exc: Exception) -> bool:
    return isinstance(exc, KmsUnavailableError)


@pytest.mark.asyncio
async def test_opens_after_threshold():
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, is_failure=_transient)
    failing = AsyncMock(side_effect=KmsUnavailableError("down"))

    for _ in range(2):
        with pytest.raises(KmsUnavailableError):
            await breaker.call(failing)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(failing)
    assert failing.await_count == 2


@pytest.mark.asyncio
async def test_permanent_errors_do_not_trip():
    breaker = CircuitBreaker(failure_threshold=1, is_failure=_transient)
    rejected = AsyncMock(side_effect=KmsRejectedError("bad request"))

    for _ in range(3):
        with pytest.raises(KmsRejectedError):
            await breaker.call(rejected)

    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_recovers_on_success():
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, is_failure=_transient)

    with patch("orgvault.services.circuit_breaker.time.monotonic", return_value=100.0):
        with pytest.raises(KmsUnavailableError):
            await breaker.call(AsyncMock(side_effect=KmsUnavailableError("down")))
        assert breaker.state == CircuitState.OPEN

    with patch("orgvault.services.circuit_breaker.time.monotonic", return_value=111.0):
        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"

    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_failure_reopens():
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10, is_failure=_transient)
    failing = AsyncMock(side_effect=KmsUnavailableError("down"))

    with patch("orgvault.services.circuit_breaker.time.monotonic", return_value=100.0):
        with pytest.raises(KmsUnavailableError):
            await breaker.call(failing)

    with patch("orgvault.services.circuit_breaker.time.monotonic", return_value=111.0):
        with pytest.raises(KmsUnavailableError):
            await breaker.call(failing)
        assert breaker.state == CircuitState.OPEN
