# =============================================================================
# portfolio_core/offline/__init__.py
# Offline-First Data Access for the Portfolio Platform
# =============================================================================
"""
Offline-first data access.

Architecture:
------------
┌─────────────────────────────────────────────────────────────────┐
│                       FallbackRouter                             │
│            (reads / writes with provenance tags)                 │
└─────────────────────────────────────────────────────────────────┘
         │                 │                       │
         ▼                 ▼                       ▼
┌─────────────────┐ ┌──────────────┐   ┌──────────────────────────┐
│ConnectionMonitor│ │   TTLCache   │   │      LocalDatabase        │
│ (probe states)  │ │ (read cache) │   │ records / queue / dead    │
└─────────────────┘ └──────────────┘   └──────────────────────────┘
         │                                         ▲
         ▼                                         │ replay (FIFO)
┌─────────────────┐                                │
│ Supabase remote │◄───────────────────────────────┘
└─────────────────┘

Every timer (probes, replays scheduled on reconnect) runs on one
Scheduler so shutdown cancels all of them.

Usage:
------
from portfolio_core.offline import FallbackRouter, OperationKind

result = await router.perform_operation("skills", OperationKind.CREATE, {"name": "SQL"})
print(result.provenance)    # Provenance.REMOTE or Provenance.QUEUED
print(router.pending_count) # Number of queued operations
"""

from portfolio_core.offline.scheduler import (
    Scheduler,
    ScheduledTask,
)

from portfolio_core.offline.connection_monitor import (
    ConnectionMonitor,
    ConnectionQuality,
    ConnectionState,
    ConnectionStatus,
    derive_quality,
)

from portfolio_core.offline.local_database import LocalDatabase

from portfolio_core.offline.fallback_router import (
    DeadLetter,
    FallbackRouter,
    OperationKind,
    PendingOperation,
    ReplayReport,
    cache_key,
)

__all__ = [
    # Scheduling
    "Scheduler",
    "ScheduledTask",
    # Connection
    "ConnectionMonitor",
    "ConnectionQuality",
    "ConnectionState",
    "ConnectionStatus",
    "derive_quality",
    # Storage
    "LocalDatabase",
    # Routing
    "DeadLetter",
    "FallbackRouter",
    "OperationKind",
    "PendingOperation",
    "ReplayReport",
    "cache_key",
]
