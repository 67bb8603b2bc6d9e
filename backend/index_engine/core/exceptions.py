"""
Engine exceptions and the FastAPI handlers that translate them.

Configuration errors abort a run. Data-unavailability surfaces as
NoEligibleConstituentsError from the eligibility engine (nothing written).
Upstream I/O errors are retried and degrade to skips inside the engine; if
one escapes to the API it is reported as 429/503.
"""
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from index_engine.core.logging_config import get_main_logger
from index_engine.core.circuit_breaker import CircuitOpenError

logger = get_main_logger()


class IndexEngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(IndexEngineError):
    """A required reference (pair, index definition) is missing. Fatal."""


class UnknownIndexError(ConfigurationError):
    def __init__(self, index_id: int):
        self.index_id = index_id
        super().__init__(f"Unknown index id {index_id}")


class NoEligibleConstituentsError(IndexEngineError):
    """No asset passed eligibility; the snapshot must not be persisted."""

    def __init__(self, index_id: int, timestamp: int):
        self.index_id = index_id
        self.timestamp = timestamp
        super().__init__(f"No eligible constituents for index {index_id} at {timestamp}")


class RateLimitError(IndexEngineError):
    """Provider answered with a rate limit (HTTP 429)."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


def _error_response(status_code: int, detail: str, error_type: str, **extra) -> JSONResponse:
    content = {"detail": detail, "error_type": error_type}
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


async def unknown_index_exception_handler(request: Request, exc: UnknownIndexError) -> JSONResponse:
    return _error_response(404, str(exc), "unknown_index")


async def configuration_exception_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error(f"Configuration error: {request.method} {request.url.path} - {exc}")
    return _error_response(500, str(exc), "configuration")


async def no_constituents_exception_handler(request: Request, exc: NoEligibleConstituentsError) -> JSONResponse:
    logger.warning(f"No eligible constituents: {request.method} {request.url.path} - {exc}")
    return _error_response(422, str(exc), "no_eligible_constituents")


async def rate_limit_exception_handler(request: Request, exc: RateLimitError) -> JSONResponse:
    logger.warning(f"Rate limit: {request.method} {request.url.path}")
    return _error_response(
        429,
        "Rate limit exceeded. Please try again later.",
        "rate_limit",
        retry_after=exc.retry_after or 30
    )


async def circuit_breaker_exception_handler(request: Request, exc: CircuitOpenError) -> JSONResponse:
    logger.warning(f"Circuit breaker open: {request.method} {request.url.path}")
    return _error_response(
        503,
        "Market data provider temporarily unavailable. Please try again shortly.",
        "circuit_breaker_open",
        retry_after=30
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception: {request.method} {request.url.path} - {type(exc).__name__}: {exc}")
    return _error_response(500, "An internal error occurred. Please try again later.", "internal_error")


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def register_exception_handlers(app):
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(UnknownIndexError, unknown_index_exception_handler)
    app.add_exception_handler(ConfigurationError, configuration_exception_handler)
    app.add_exception_handler(NoEligibleConstituentsError, no_constituents_exception_handler)
    app.add_exception_handler(RateLimitError, rate_limit_exception_handler)
    app.add_exception_handler(CircuitOpenError, circuit_breaker_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
