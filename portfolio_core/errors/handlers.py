# =============================================================================
# portfolio_core/errors/handlers.py
# Error Classification and Normalization Utilities
# =============================================================================

from __future__ import annotations
import asyncio
from typing import Any, Optional

import httpx

from portfolio_core.logging import get_logger
from .exceptions import (
    PortfolioCoreError,
    TransientNetworkError,
    AuthorizationError,
    ValidationError,
    UnknownOperationError,
    QueueOverflowError,
    ServiceError,
)

logger = get_logger(__name__)

# PostgREST / Postgres error codes that mean "not allowed"
AUTH_ERROR_CODES = {"PGRST301", "PGRST302", "42501", "28000", "28P01"}

# Prefixes of PostgREST / Postgres error codes the caller must fix
VALIDATION_ERROR_PREFIXES = ("22", "23", "PGRST1", "PGRST2", "42P01", "42703")

# Stable presentation strings keyed by error code
USER_MESSAGES = {
    TransientNetworkError.default_code: "Connection problem. Showing cached data where available.",
    AuthorizationError.default_code: "Permission denied. Please sign in again.",
    ValidationError.default_code: "Some of the submitted data is invalid.",
    UnknownOperationError.default_code: "This action is not supported.",
    QueueOverflowError.default_code: "A change could not be synced and needs manual review.",
    ServiceError.default_code: "Something went wrong. Please try again.",
}


def _extract_status(error: BaseException) -> Optional[int]:
    """Find an HTTP status on an exception raised by httpx, gotrue or postgrest."""
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)

    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status

    code = getattr(error, "code", None)
    if isinstance(code, str) and code.isdigit() and len(code) == 3:
        return int(code)
    return None


def _classify_status(error: BaseException, status: int) -> PortfolioCoreError:
    message = str(error) or error.__class__.__name__
    if status in (401, 403):
        return AuthorizationError(message, status_code=status)
    if status in (408, 425, 429) or status >= 500:
        return TransientNetworkError(message, status_code=status)
    if 400 <= status < 500:
        return ValidationError(message, details={"status_code": status})
    return ServiceError(message, original_type=error.__class__.__name__)


def classify_exception(error: BaseException) -> PortfolioCoreError:
    """
    Map a raw exception onto the error taxonomy.

    Timeouts, transport failures and 5xx responses become
    TransientNetworkError; 401/403 and privilege errors become
    AuthorizationError; other 4xx and constraint violations become
    ValidationError. Anything unrecognised is wrapped in ServiceError.

    Args:
        error: Exception raised by a remote call or subsystem

    Returns:
        A PortfolioCoreError instance (the input itself if already classified)
    """
    if isinstance(error, PortfolioCoreError):
        return error

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return TransientNetworkError(f"Request timed out: {error}".rstrip(": "))

    if isinstance(error, httpx.HTTPStatusError):
        return _classify_status(error, error.response.status_code)

    if isinstance(error, (httpx.TransportError, ConnectionError, OSError)):
        return TransientNetworkError(f"Network error: {error}")

    code = getattr(error, "code", None)
    if isinstance(code, str):
        if code in AUTH_ERROR_CODES:
            return AuthorizationError(str(error), details={"db_code": code})
        if code.startswith(VALIDATION_ERROR_PREFIXES):
            return ValidationError(str(error), details={"db_code": code})

    status = _extract_status(error)
    if status is not None:
        return _classify_status(error, status)

    if isinstance(error, (ValueError, KeyError)):
        return ValidationError(str(error))

    return ServiceError(
        str(error) or error.__class__.__name__,
        original_type=error.__class__.__name__,
    )


def normalize_error(error: BaseException, service: Optional[str] = None) -> PortfolioCoreError:
    """
    Return an error the UI can branch on by ``code``.

    Taxonomy errors pass through unchanged; everything else becomes a
    ServiceError whose ``__cause__`` is the original exception.
    """
    if isinstance(error, PortfolioCoreError):
        return error

    normalized = classify_exception(error)
    if isinstance(normalized, ServiceError) and service:
        normalized.details["service"] = service
    normalized.__cause__ = error
    return normalized


def user_message(error: Any) -> str:
    """Presentation string for an error, a Result, or a bare error code."""
    if isinstance(error, PortfolioCoreError):
        code = error.code
    elif isinstance(error, str):
        code = error
    else:
        code = getattr(error, "error_code", None) or ServiceError.default_code
    return USER_MESSAGES.get(code, USER_MESSAGES[ServiceError.default_code])


def handle_error(
    error: Exception,
    log_error: bool = True,
    context: Optional[str] = None,
) -> PortfolioCoreError:
    """
    Centralized error handling function.

    Logs the error with its code and details and returns the normalized
    form, so callers can put it into a result envelope.

    Args:
        error: The exception to handle
        log_error: Whether to log the error
        context: Short description of what was being done
    """
    normalized = normalize_error(error)

    if log_error:
        prefix = f"{context}: " if context else ""
        if normalized.recoverable:
            logger.warning(
                f"{prefix}[{normalized.code}] {normalized.message}",
                extra={"details": normalized.details},
            )
        else:
            logger.error(
                f"{prefix}[{normalized.code}] {normalized.message}",
                extra={"details": normalized.details},
                exc_info=error,
            )

    return normalized
