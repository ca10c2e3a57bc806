"""
Circuit Breaker Pattern for External API Calls
Stops hammering a failing upstream (rewards, receipts, indexer) and lets it recover
"""

import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Blocking calls due to failures
    HALF_OPEN = "half_open"  # Testing if service recovered


class CircuitBreakerOpenError(Exception):
    """Raised instead of calling the upstream while the circuit is open"""

    retryable = False

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Circuit breaker {name} is OPEN")


class CircuitBreaker:
    """
    In-process circuit breaker for one upstream service.

    States:
    - CLOSED: requests pass through
    - OPEN: too many consecutive failures, requests blocked until recovery_timeout
    - HALF_OPEN: one trial request decides between CLOSED and OPEN
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_at: Optional[float] = None
        self.stats = {'total_calls': 0, 'successful_calls': 0, 'failed_calls': 0, 'blocked_calls': 0}

    def _should_attempt_reset(self) -> bool:
        if self.last_failure_at is None:
            return True
        return self._clock() - self.last_failure_at >= self.recovery_timeout

    async def async_call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Execute async function with circuit breaker protection"""
        self.stats['total_calls'] += 1

        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
                logger.info(f"Circuit {self.name} entering HALF_OPEN state")
            else:
                self.stats['blocked_calls'] += 1
                raise CircuitBreakerOpenError(self.name)

        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _on_success(self) -> None:
        self.stats['successful_calls'] += 1
        if self.state == CircuitState.HALF_OPEN:
            logger.info(f"Circuit {self.name} recovered - now CLOSED")
        self.state = CircuitState.CLOSED
        self.failure_count = 0

    def _on_failure(self) -> None:
        self.stats['failed_calls'] += 1
        self.failure_count += 1
        self.last_failure_at = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.OPEN
            logger.warning(f"Circuit {self.name} failed in HALF_OPEN - returning to OPEN")
        elif self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
            logger.error(f"Circuit {self.name} opened due to {self.failure_count} failures")

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_at = None
        logger.info(f"Circuit {self.name} manually reset")

    def get_state(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'state': self.state.value,
            'failure_count': self.failure_count,
            'stats': dict(self.stats),
        }
