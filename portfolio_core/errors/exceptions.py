# =============================================================================
# portfolio_core/errors/exceptions.py
# Custom Exception Hierarchy for the Portfolio Resilience Layer
# =============================================================================

from typing import Optional, Dict, Any


class PortfolioCoreError(Exception):
    """
    Base exception for all portfolio_core errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code (e.g., "NET_001"), stable across releases
        details: Additional context as a dictionary
        recoverable: Whether the error can be recovered from
        retryable: Whether the request executor may retry the failed attempt
    """

    default_code = "CORE_000"
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.details:
            base += f" | Details: {self.details}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization"""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# =============================================================================
# REMOTE CALL EXCEPTIONS
# =============================================================================

class TransientNetworkError(PortfolioCoreError):
    """Raised for timeouts, dropped connections and 5xx responses (retryable)"""

    default_code = "NET_001"
    retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code
        if timeout is not None:
            details["timeout_s"] = timeout

        super().__init__(message=message, details=details, **kwargs)


class AuthorizationError(PortfolioCoreError):
    """Raised when the remote service rejects the session or the caller's rights"""

    default_code = "AUTH_001"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if status_code is not None:
            details["status_code"] = status_code

        super().__init__(message=message, details=details, **kwargs)


class ValidationError(PortfolioCoreError):
    """Raised when a payload is rejected; the caller has to correct it"""

    default_code = "VALID_001"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if expected:
            details["expected"] = expected
        if actual:
            details["actual"] = actual

        super().__init__(message=message, details=details, **kwargs)


# =============================================================================
# ORCHESTRATION EXCEPTIONS
# =============================================================================

class UnknownOperationError(PortfolioCoreError):
    """Raised when a (service, method) pair is not part of the dispatch table"""

    default_code = "OP_001"

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        method: Optional[str] = None,
        allowed: Optional[list] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if service:
            details["service"] = service
        if method:
            details["method"] = method
        if allowed is not None:
            details["allowed"] = allowed

        super().__init__(
            message=message,
            details=details,
            recoverable=False,
            **kwargs,
        )


class QueueOverflowError(PortfolioCoreError):
    """Raised when a pending operation exhausts its replay budget"""

    default_code = "QUEUE_001"

    def __init__(
        self,
        message: str,
        operation_id: Optional[str] = None,
        collection: Optional[str] = None,
        attempts: Optional[int] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if operation_id:
            details["operation_id"] = operation_id
        if collection:
            details["collection"] = collection
        if attempts is not None:
            details["attempts"] = attempts

        super().__init__(
            message=message,
            details=details,
            recoverable=False,
            **kwargs,
        )


class ServiceError(PortfolioCoreError):
    """Normalized wrapper for unexpected failures inside a subsystem"""

    default_code = "SERVICE_001"

    def __init__(
        self,
        message: str,
        service: Optional[str] = None,
        original_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if service:
            details["service"] = service
        if original_type:
            details["original_type"] = original_type

        super().__init__(message=message, details=details, **kwargs)


# =============================================================================
# CONFIGURATION EXCEPTIONS
# =============================================================================

class ConfigurationError(PortfolioCoreError):
    """Raised when configuration is invalid or missing"""

    default_code = "CONFIG_001"

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        expected_type: Optional[str] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        if expected_type:
            details["expected_type"] = expected_type

        super().__init__(
            message=message,
            details=details,
            recoverable=False,
            **kwargs,
        )
