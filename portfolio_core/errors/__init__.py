# =============================================================================
# portfolio_core/errors/__init__.py
# Centralized Error Handling for the Portfolio Resilience Layer
# =============================================================================

from .exceptions import (
    PortfolioCoreError,
    TransientNetworkError,
    AuthorizationError,
    ValidationError,
    UnknownOperationError,
    QueueOverflowError,
    ServiceError,
    ConfigurationError,
)

from .handlers import (
    classify_exception,
    normalize_error,
    handle_error,
    user_message,
)

__all__ = [
    # Exceptions
    "PortfolioCoreError",
    "TransientNetworkError",
    "AuthorizationError",
    "ValidationError",
    "UnknownOperationError",
    "QueueOverflowError",
    "ServiceError",
    "ConfigurationError",
    # Handlers
    "classify_exception",
    "normalize_error",
    "handle_error",
    "user_message",
]
