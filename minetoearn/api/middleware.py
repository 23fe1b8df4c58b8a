"""
Middleware and exception handlers for the FastAPI application.
"""

import time
from typing import Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.encoders import jsonable_encoder
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from minetoearn.api.schemas.common import create_error_response
from minetoearn.core.config import settings
from minetoearn.core.exceptions import (
    AuthenticationError,
    ConcurrencyConflictError,
    ExternalDependencyError,
    InsufficientResourceError,
    InvariantViolationError,
    MineToEarnException,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from minetoearn.core.logging import get_logger


logger = get_logger(__name__)

# Checked in order; the first matching class wins
STATUS_BY_EXCEPTION = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientResourceError, status.HTTP_409_CONFLICT),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (RateLimitError, status.HTTP_429_TOO_MANY_REQUESTS),
    (ExternalDependencyError, status.HTTP_502_BAD_GATEWAY),
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (InvariantViolationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(exc: MineToEarnException) -> int:
    for exc_type, code in STATUS_BY_EXCEPTION:
        if isinstance(exc, exc_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for request/response logging."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()

        response = await call_next(request)

        process_time = time.perf_counter() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            process_time=process_time,
            player_id=request.headers.get("x-player-id"),
        )
        return response


async def domain_exception_handler(request: Request, exc: MineToEarnException) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.error if status_code >= 500 else logger.warning
    log(
        "Request rejected",
        path=request.url.path,
        error_code=exc.code,
        error=exc.message,
        status_code=status_code,
    )
    body = create_error_response(exc.message, exc.code, exc.details)
    headers = {"Retry-After": str(settings.rate_limit_window)} if isinstance(exc, RateLimitError) else None
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(body),
        headers=headers,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=exc)
    body = create_error_response("An unexpected error occurred", "INTERNAL_SERVER_ERROR")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=jsonable_encoder(body),
    )


def add_middleware(app: FastAPI) -> None:
    """Add middleware and exception handlers to the FastAPI app."""
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(LoggingMiddleware)

    app.add_exception_handler(MineToEarnException, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
