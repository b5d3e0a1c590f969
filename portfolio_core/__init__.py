# =============================================================================
# portfolio_core/__init__.py
# Client-Side Resilience Layer for the Digital Portfolio Platform
# =============================================================================
"""
portfolio_core - keeps the portfolio app usable when the backend is not.

Usage:
    from portfolio_core import build_orchestrator, load_settings

    orchestrator = build_orchestrator(load_settings())
    async with orchestrator:
        result = await orchestrator.execute("api", "get_portfolio", {"user_id": uid})
"""

__version__ = "0.1.0"

from portfolio_core.config import Settings, load_settings
from portfolio_core.services.orchestrator import Orchestrator, build_orchestrator

__all__ = [
    "__version__",
    "Settings",
    "load_settings",
    "Orchestrator",
    "build_orchestrator",
]
