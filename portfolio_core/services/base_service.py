# =============================================================================
# portfolio_core/services/base_service.py
# Base Service Class and Uniform Result Envelope
# =============================================================================

from __future__ import annotations
from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any

from portfolio_core.logging import get_logger, LogContext
from portfolio_core.errors import PortfolioCoreError, normalize_error


class Provenance(Enum):
    """Where a result came from."""
    REMOTE = "remote"     # Confirmed by the remote service
    CACHE = "cache"       # Served from the in-memory TTL cache
    LOCAL = "local"       # Served from local persistence
    QUEUED = "queued"     # Applied locally, waiting for replay


class ServiceHealth(Enum):
    """Self-reported subsystem health."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


@dataclass
class Result:
    """
    Standard result container for remote and routed operations.

    Every failure is carried inside the envelope so call sites can branch
    on ``success`` / ``error_code`` without exception handling.
    """
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    provenance: Optional[Provenance] = None
    stale: bool = False
    attempts: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[PortfolioCoreError] = field(default=None, repr=False, compare=False)

    def __bool__(self) -> bool:
        return self.success

    @classmethod
    def ok(
        cls,
        data: Any = None,
        provenance: Optional[Provenance] = None,
        stale: bool = False,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Result:
        """Create a successful result"""
        return cls(
            success=True,
            data=data,
            provenance=provenance,
            stale=stale,
            metadata=metadata or {},
        )

    @classmethod
    def fail(
        cls,
        error: str,
        error_code: str = "SERVICE_001",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Result:
        """Create a failed result"""
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            metadata=metadata or {},
        )

    @classmethod
    def from_exception(cls, e: BaseException) -> Result:
        """Create a failed result from an exception"""
        normalized = normalize_error(e)
        return cls(
            success=False,
            error=normalized.message,
            error_code=normalized.code,
            metadata=dict(normalized.details),
            exception=normalized,
        )

    def with_provenance(self, provenance: Provenance, stale: bool = False) -> Result:
        """Tag this result with where its data came from."""
        self.provenance = provenance
        self.stale = stale
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "error": self.error,
            "error_code": self.error_code,
            "provenance": self.provenance.value if self.provenance else None,
            "stale": self.stale,
            "attempts": self.attempts,
            "metadata": self.metadata,
        }


class BaseService(ABC):
    """
    Abstract base class for orchestrated subsystems.

    Provides common functionality:
    - Logging
    - Self-reported health
    - Restart hooks (reset + initialize)

    Usage:
        class MyService(BaseService):
            name = "mine"

            async def do_something(self):
                async with self.log_operation("Doing something"):
                    ...
    """

    name: str = "service"

    def __init__(self):
        self.logger = get_logger(self.__class__.__name__)

    def log_operation(self, operation: str) -> LogContext:
        """
        Create a logging context for an operation.

        Usage:
            async with self.log_operation("Refreshing session"):
                await remote.refresh_session()
        """
        return LogContext(self.logger, operation)

    def health(self) -> ServiceHealth:
        """Report current health. Subclasses override when they can degrade."""
        return ServiceHealth.HEALTHY

    async def initialize(self) -> None:
        """Bring the service up. Must be safe to call again after reset()."""

    async def reset(self) -> None:
        """Drop caches and transient state ahead of a re-initialize."""

    def metrics(self) -> Dict[str, Any]:
        return {}
