"""
Retry and circuit breaker tests
Backoff for side-effect adapters and upstream isolation
"""

from unittest.mock import AsyncMock, patch

import pytest

from services.api_adapter_retry import APIAdapter, ExternalAPIError
from services.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState
from services.retry_service import RetryService, retry_async_decorator


class TestRetryService:

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        func = AsyncMock(side_effect=[ExternalAPIError("photon", "HTTP 503"), ExternalAPIError("photon", "HTTP 503"), "ok"])
        with patch("services.retry_service.asyncio.sleep", AsyncMock()) as sleep:
            result = await RetryService.retry_async(func, max_attempts=3, initial_delay=1.0, jitter=False)

        assert result == "ok"
        assert func.await_count == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_aborts_immediately(self):
        func = AsyncMock(side_effect=ExternalAPIError("photon", "HTTP 401", status=401, retryable=False))
        with patch("services.retry_service.asyncio.sleep", AsyncMock()) as sleep:
            with pytest.raises(ExternalAPIError):
                await RetryService.retry_async(func, max_attempts=5)

        assert func.await_count == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_last_error_raised_when_exhausted(self):
        func = AsyncMock(side_effect=ConnectionError("reset by peer"))
        with patch("services.retry_service.asyncio.sleep", AsyncMock()):
            with pytest.raises(ConnectionError):
                await RetryService.retry_async(func, max_attempts=4)
        assert func.await_count == 4

    @pytest.mark.asyncio
    async def test_delay_capped(self):
        func = AsyncMock(side_effect=[RuntimeError("x")] * 4 + ["done"])
        with patch("services.retry_service.asyncio.sleep", AsyncMock()) as sleep:
            await RetryService.retry_async(
                func, max_attempts=5, initial_delay=4.0, max_delay=10.0, exponential_base=3.0, jitter=False
            )
        assert [call.args[0] for call in sleep.await_args_list] == [4.0, 10.0, 10.0, 10.0]

    @pytest.mark.asyncio
    async def test_decorator_uses_named_strategy(self):
        attempts = []

        @retry_async_decorator("indexer", jitter=False)
        async def flaky_query(value):
            attempts.append(value)
            if len(attempts) < 4:
                raise ExternalAPIError("indexer", "HTTP 500")
            return value * 2

        with patch("services.retry_service.asyncio.sleep", AsyncMock()):
            assert await flaky_query(21) == 42
        assert attempts == [21, 21, 21, 21]


class FakeMonotonic:
    def __init__(self):
        self.value = 1000.0

    def __call__(self):
        return self.value


class TestCircuitBreaker:

    @pytest.fixture
    def monotonic(self):
        return FakeMonotonic()

    @pytest.fixture
    def breaker(self, monotonic):
        return CircuitBreaker("receipts API", failure_threshold=2, recovery_timeout=30, clock=monotonic)

    @pytest.mark.asyncio
    async def test_opens_after_threshold_and_blocks(self, breaker):
        failing = AsyncMock(side_effect=RuntimeError("upstream down"))
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.async_call(failing)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.async_call(failing)
        assert failing.await_count == 2
        assert breaker.get_state()["stats"]["blocked_calls"] == 1

    @pytest.mark.asyncio
    async def test_half_open_trial_recovers(self, breaker, monotonic):
        failing = AsyncMock(side_effect=RuntimeError("upstream down"))
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.async_call(failing)

        monotonic.value += 31
        healthy = AsyncMock(return_value="uploaded")
        assert await breaker.async_call(healthy) == "uploaded"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_failed_trial_reopens(self, breaker, monotonic):
        failing = AsyncMock(side_effect=RuntimeError("upstream down"))
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.async_call(failing)

        monotonic.value += 31
        with pytest.raises(RuntimeError):
            await breaker.async_call(failing)
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            await breaker.async_call(failing)

    def test_open_error_is_not_retryable(self):
        assert CircuitBreakerOpenError("x").retryable is False


class TestAPIAdapter:

    @pytest.mark.asyncio
    async def test_open_circuit_surfaces_as_service_error(self):
        adapter = APIAdapter("indexer", failure_threshold=1)
        with patch.object(adapter, "_send", AsyncMock(side_effect=ExternalAPIError("indexer", "HTTP 500"))) as send:
            with pytest.raises(ExternalAPIError):
                await adapter._make_http_request("POST", "http://indexer.test/graphql")
            with pytest.raises(ExternalAPIError) as excinfo:
                await adapter._make_http_request("POST", "http://indexer.test/graphql")

        assert excinfo.value.retryable is False
        assert send.await_count == 1
        assert adapter.get_status()["circuit_breaker"]["state"] == "open"
