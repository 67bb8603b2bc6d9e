"""
Shared utilities and infrastructure for the index service.
"""
from __future__ import annotations

from typing import Awaitable, Callable, TypeVar
import asyncio

import httpx

from index_engine.core.circuit_breaker import CircuitBreaker, CircuitOpenError, provider_circuit_breaker
from index_engine.core.config import settings
from index_engine.core.exceptions import RateLimitError
from index_engine.core.logging_config import get_main_logger, get_background_logger
from index_engine.services.sync_status import run_status

# Initialize loggers
logger = get_main_logger()
bg_logger = get_background_logger()

T = TypeVar('T')


def _is_rate_limit_error(error: BaseException) -> bool:
    if isinstance(error, RateLimitError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code == 429
    return False


def _is_retryable(error: BaseException) -> bool:
    """Rate limits, transport failures and 5xx answers are worth another attempt."""
    if _is_rate_limit_error(error):
        return True
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code >= 500
    return False


def _retry_after(error: BaseException) -> float | None:
    if isinstance(error, RateLimitError):
        return error.retry_after
    if isinstance(error, httpx.HTTPStatusError):
        header = error.response.headers.get("retry-after")
        try:
            return float(header) if header else None
        except ValueError:
            return None
    return None


def _record_rate_limit(reset_seconds: float, breaker: CircuitBreaker = provider_circuit_breaker) -> None:
    """Record a rate limit event across circuit breaker and run status."""
    breaker.record_failure(reset_timeout=reset_seconds)
    run_status.set_rate_limited(reset_in_seconds=reset_seconds)


async def async_retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_retries: int | None = None,
    initial_delay: float | None = None,
    backoff_multiplier: float | None = None,
    breaker: CircuitBreaker = provider_circuit_breaker,
    description: str = "provider call",
) -> T:
    """
    Await ``func()`` with bounded retries and exponential backoff.

    Non-retryable errors (e.g. a 404) propagate immediately. Once retries are
    exhausted the last error is raised; callers degrade that to a skip. The
    circuit breaker is checked before every attempt so an open circuit fails
    fast with CircuitOpenError.
    """
    if max_retries is None:
        max_retries = settings.retry_max_attempts
    delay = settings.retry_initial_delay if initial_delay is None else initial_delay
    if backoff_multiplier is None:
        backoff_multiplier = settings.retry_backoff_multiplier

    last_exception: BaseException | None = None

    for attempt in range(max_retries + 1):
        if not breaker.can_proceed():
            raise CircuitOpenError(f"Circuit breaker open - skipping {description}")

        try:
            result = await func()
            breaker.record_success()
            return result
        except (RateLimitError, httpx.HTTPError) as e:
            if not _is_retryable(e):
                raise
            last_exception = e

            wait = delay
            if _is_rate_limit_error(e):
                wait = _retry_after(e) or delay
                _record_rate_limit(reset_seconds=wait, breaker=breaker)
            else:
                breaker.record_failure()

            if attempt < max_retries:
                bg_logger.warning(
                    f"{description} failed (attempt {attempt + 1}/{max_retries + 1}): "
                    f"{type(e).__name__}: {e}. Retrying in {wait:.1f}s"
                )
                await asyncio.sleep(wait)
                delay *= backoff_multiplier

    bg_logger.error(f"{description} failed after {max_retries + 1} attempts: {last_exception}")
    raise last_exception
