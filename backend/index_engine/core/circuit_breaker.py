"""
Circuit breaker guarding calls to the market-data provider.

Repeated upstream failures (rate limits, timeouts) open the circuit so that
the rest of a rebalance or reconstruction run degrades to skips immediately
instead of hammering a provider that is already refusing requests.

States:
- CLOSED: calls proceed
- OPEN: calls are rejected until the recovery timeout elapses
- HALF_OPEN: a limited number of trial calls are let through
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from index_engine.core.config import settings
from index_engine.core.logging_config import get_main_logger

logger = get_main_logger()


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 3
    recovery_timeout: float = 60.0  # seconds before probing again
    half_open_max_calls: int = 1


class CircuitOpenError(Exception):
    """Raised when a provider call is refused because the circuit is open."""

    def __init__(self, message: str = "Circuit breaker is open - provider unavailable"):
        self.message = message
        super().__init__(self.message)


class CircuitBreaker:
    """
    Thread-safe circuit breaker.

    Usage:
        if not breaker.can_proceed():
            raise CircuitOpenError()
        try:
            result = await call()
            breaker.record_success()
        except RateLimitError:
            breaker.record_failure(reset_timeout=30.0)
            raise
    """

    def __init__(self, config: CircuitBreakerConfig | None = None, name: str = "default"):
        self.config = config or CircuitBreakerConfig()
        self.name = name
        self._lock = threading.RLock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def can_proceed(self) -> bool:
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitState.CLOSED:
                return True
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls < self.config.half_open_max_calls:
                    self._half_open_calls += 1
                    return True
            return False

    def record_success(self) -> None:
        with self._lock:
            self._success_count += 1
            if self._state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker [{self.name}]: HALF_OPEN -> CLOSED")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._half_open_calls = 0

    def record_failure(self, reset_timeout: float | None = None) -> None:
        """
        Record a failed call.

        Args:
            reset_timeout: Override the recovery timeout, e.g. from a
                           provider's Retry-After header.
        """
        with self._lock:
            self._failure_count += 1
            if reset_timeout:
                self.config.recovery_timeout = reset_timeout

            if self._state == CircuitState.HALF_OPEN:
                logger.warning(f"Circuit breaker [{self.name}]: HALF_OPEN -> OPEN (trial call failed)")
                self._open()
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.config.failure_threshold:
                logger.warning(
                    f"Circuit breaker [{self.name}]: CLOSED -> OPEN "
                    f"(failures={self._failure_count}, threshold={self.config.failure_threshold})"
                )
                self._open()

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._half_open_calls = 0
            self._opened_at = None

    def _open(self) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = time.monotonic()
        self._half_open_calls = 0

    def _maybe_half_open(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        elapsed = time.monotonic() - self._opened_at
        if elapsed >= self.config.recovery_timeout:
            logger.info(
                f"Circuit breaker [{self.name}]: OPEN -> HALF_OPEN "
                f"(elapsed={elapsed:.1f}s >= timeout={self.config.recovery_timeout}s)"
            )
            self._state = CircuitState.HALF_OPEN
            self._half_open_calls = 0

    def get_stats(self) -> dict:
        with self._lock:
            self._maybe_half_open()
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "failure_threshold": self.config.failure_threshold,
                "recovery_timeout": self.config.recovery_timeout,
            }


# Shared breaker for the market-data provider
provider_circuit_breaker = CircuitBreaker(
    CircuitBreakerConfig(
        failure_threshold=settings.circuit_failure_threshold,
        recovery_timeout=settings.circuit_recovery_timeout,
        half_open_max_calls=1
    ),
    name="coingecko"
)
