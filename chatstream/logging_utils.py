"""
Centralized logging and error handling utilities for chatstream.

This module provides decorators and helper functions to standardize logging
and error reporting across the codebase.

Features:
- Structured logging with contextual information
- Automatic error classification
- User-facing error messages that carry upstream status and body text
- Performance timing
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import structlog
from pydantic import ValidationError

from .llm.exceptions import (
    ConfigurationError,
    EndpointError,
    GenerationCancelledError,
    GenerationInProgressError,
    TransportError,
)

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

# Type variables for generic decorators
P = ParamSpec("P")
T = TypeVar("T")
AsyncCallable = Callable[P, Awaitable[T]]

logger = structlog.get_logger(__name__)

MAX_BODY_IN_MESSAGE = 500


def configure_logging(logging_config: dict[str, Any]) -> None:
    """Apply the ``logging`` configuration section to the stdlib root logger."""
    level_name = str(logging_config.get("level", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ValueError(f"Unknown logging level '{level_name}'")
    logging.basicConfig(
        level=level, format="%(asctime)s - %(levelname)s - %(message)s"
    )
    logging.getLogger().setLevel(level)


class ErrorHandler:
    """Centralized error classification with structured logging."""

    @staticmethod
    def classify_error(error: BaseException) -> str:
        """
        Classify an error into a reporting category.

        Args:
            error: The exception to classify

        Returns:
            The error category name
        """
        if isinstance(error, GenerationCancelledError | asyncio.CancelledError):
            return "cancelled"
        if isinstance(error, GenerationInProgressError):
            return "busy"
        if isinstance(error, ConfigurationError):
            return "configuration_error"
        if isinstance(error, EndpointError):
            return "endpoint_error"
        if isinstance(error, TransportError):
            return "transport_error"
        if isinstance(error, ValidationError):
            return "validation_error"
        if isinstance(error, TimeoutError):
            return "timeout_error"
        if isinstance(error, ConnectionError | OSError):
            return "connection_error"
        return "unknown_error"

    @staticmethod
    def is_failure(error: BaseException) -> bool:
        """Cancellation is a user action, not a failure."""
        return ErrorHandler.classify_error(error) != "cancelled"

    @staticmethod
    def user_message(error: BaseException) -> str:
        """
        Build the message shown to the user for a failed operation.

        Endpoint errors include the upstream status and, when present, the
        (truncated) response body.
        """
        if isinstance(error, EndpointError):
            if error.status_code is None:
                return f"Error: {error}"
            body = error.body.strip()
            if len(body) > MAX_BODY_IN_MESSAGE:
                body = body[:MAX_BODY_IN_MESSAGE] + "…"
            if body and body not in str(error):
                return f"Error: {error} ({body})"
            return f"Error: {error}"
        if not ErrorHandler.is_failure(error):
            return "Generation stopped"
        return f"Error: {error}"

    @staticmethod
    def log_error(
        error: BaseException,
        operation: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Log an error with its category and return the category."""
        category = ErrorHandler.classify_error(error)
        log = logger.info if category == "cancelled" else logger.error
        log(
            "Operation failed" if category != "cancelled" else "Operation cancelled",
            operation=operation,
            error_type=type(error).__name__,
            error_category=category,
            error_message=str(error),
            **(context or {}),
        )
        return category


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)


def log_operation(
    operation: str,
    *,
    context: dict[str, Any] | None = None,
) -> Callable[[AsyncCallable[P, T]], AsyncCallable[P, T]]:
    """
    Decorator for logging async endpoint calls with structured context.

    Start and completion are logged at debug level; failures at error level
    with their category.
    """
    def decorator(func: AsyncCallable[P, T]) -> AsyncCallable[P, T]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            operation_logger = logger.bind(
                operation=operation,
                function=func.__name__,
                **(context or {}),
            )
            operation_logger.debug("Operation started")
            start_time = time.perf_counter()

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                operation_logger.error(
                    "Operation failed",
                    error_type=type(e).__name__,
                    error_category=ErrorHandler.classify_error(e),
                    error_message=str(e),
                    duration_ms=_elapsed_ms(start_time),
                )
                raise

            operation_logger.debug(
                "Operation completed successfully", duration_ms=_elapsed_ms(start_time)
            )
            return result

        return wrapper
    return decorator


@asynccontextmanager
async def operation_context(
    operation: str,
    *,
    context: dict[str, Any] | None = None,
) -> AsyncGenerator[structlog.stdlib.BoundLogger]:
    """
    Log one unit of work (a streamed generation, for instance) with timing.

    Cancellation is logged as such and re-raised; it is never reported as a
    failure.

    Yields:
        Bound logger for the operation
    """
    operation_logger = logger.bind(operation=operation, **(context or {}))
    operation_logger.info("Operation started")
    start_time = time.perf_counter()

    try:
        yield operation_logger
    except asyncio.CancelledError:
        operation_logger.info("Operation cancelled", duration_ms=_elapsed_ms(start_time))
        raise
    except Exception as e:
        operation_logger.error(
            "Operation failed",
            error_type=type(e).__name__,
            error_category=ErrorHandler.classify_error(e),
            error_message=str(e),
            duration_ms=_elapsed_ms(start_time),
        )
        raise

    operation_logger.info(
        "Operation completed successfully", duration_ms=_elapsed_ms(start_time)
    )
