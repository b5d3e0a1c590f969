# =============================================================================
# portfolio_core/services/__init__.py
# Service Layer for the Portfolio Resilience Layer
# =============================================================================
"""
Service layer: result envelope, request executor and the orchestrated
subsystems (auth, realtime, analysis) plus the Orchestrator facade.

Only the dependency-free building blocks are re-exported here; import the
subsystems from their modules:

    from portfolio_core.services.orchestrator import Orchestrator, build_orchestrator
    from portfolio_core.services.auth_service import AuthService
"""

from portfolio_core.services.base_service import (
    BaseService,
    Provenance,
    Result,
    ServiceHealth,
)

from portfolio_core.services.request_executor import RequestExecutor

__all__ = [
    "BaseService",
    "Provenance",
    "Result",
    "ServiceHealth",
    "RequestExecutor",
]
