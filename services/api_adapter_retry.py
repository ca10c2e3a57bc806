"""
Standardized API Adapter
Base class for external HTTP integrations: shared aiohttp request handling,
status-code classification and circuit breaker protection
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional, Type

import aiohttp

from services.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class ExternalAPIError(Exception):
    """
    Classified upstream failure.

    retryable is False for client errors (4xx except 408/429) so callers and
    RetryService do not repeat requests that cannot succeed.
    """

    def __init__(self, service: str, message: str, status: Optional[int] = None, retryable: bool = True):
        self.service = service
        self.status = status
        self.retryable = retryable
        super().__init__(f"{service}: {message}")


class APIAdapter:
    """
    Base class for external API integrations

    Subclasses set error_class to their own ExternalAPIError subclass so
    callers can catch per-service failures.
    """

    error_class: Type[ExternalAPIError] = ExternalAPIError

    def __init__(
        self,
        service_name: str,
        timeout: float = 30,
        session: Optional[aiohttp.ClientSession] = None,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
    ):
        self.service_name = service_name
        self.timeout = timeout
        self._session = session
        self.circuit_breaker = CircuitBreaker(
            name=f"{service_name} API",
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        )

    def _error(self, message: str, status: Optional[int] = None, retryable: bool = True) -> ExternalAPIError:
        return self.error_class(self.service_name, message, status=status, retryable=retryable)

    async def _make_http_request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict] = None,
        params: Optional[Dict] = None,
        json: Optional[Any] = None,
        data: Optional[Any] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Make HTTP request with standardized error handling

        Returns:
            Parsed JSON response body
        Raises:
            ExternalAPIError (service subclass): classified failure
        """
        try:
            return await self.circuit_breaker.async_call(
                self._send, method, url, headers, params, json, data, timeout or self.timeout
            )
        except CircuitBreakerOpenError as e:
            raise self._error(str(e), retryable=False) from e

    async def _send(self, method, url, headers, params, json, data, timeout) -> Any:
        started = time.monotonic()
        try:
            if self._session is not None:
                return await self._request_with(self._session, method, url, headers, params, json, data, timeout)
            async with aiohttp.ClientSession() as session:
                return await self._request_with(session, method, url, headers, params, json, data, timeout)
        except ExternalAPIError:
            raise
        except asyncio.TimeoutError as e:
            raise self._error(f"Request timed out after {timeout}s") from e
        except aiohttp.ClientError as e:
            raise self._error(f"Network error: {type(e).__name__}") from e
        finally:
            elapsed = time.monotonic() - started
            if elapsed > 5:
                logger.warning(f"⚠️ SLOW_API_CALL: {self.service_name} {method} took {elapsed:.1f}s")

    async def _request_with(self, session, method, url, headers, params, json, data, timeout) -> Any:
        async with session.request(
            method=method,
            url=url,
            headers=headers,
            params=params,
            json=json,
            data=data,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as response:
            if response.status >= 400:
                body = (await response.text())[:200]
                retryable = response.status >= 500 or response.status in (408, 429)
                raise self._error(f"HTTP {response.status}: {body}", status=response.status, retryable=retryable)
            try:
                return await response.json(content_type=None)
            except ValueError as e:
                raise self._error("Invalid JSON response", status=response.status) from e

    def get_status(self) -> Dict[str, Any]:
        return {
            "service_name": self.service_name,
            "timeout_seconds": self.timeout,
            "circuit_breaker": self.circuit_breaker.get_state(),
        }
