# =============================================================================
# portfolio_core/offline/connection_monitor.py
# Connection Status Detection and Management
# =============================================================================
"""
ConnectionMonitor - probes the remote service and tracks connectivity.

Features:
- Probe-driven state machine (offline / reconnecting / online / unstable)
- Quality tiers derived from latency and consecutive failures
- Periodic probing through the Scheduler, backing off while offline
- Synchronous subscriber callbacks on every state change

State machine:
    offline      -> reconnecting   reconnect attempt begins (scheduled or forced)
    reconnecting -> online         probe succeeds (failures reset to 0)
    reconnecting -> offline        probe fails (failures + 1, backoff)
    online       -> online         healthy probe, quality refreshed
    online       -> unstable       slow probe or a single failure
    unstable     -> online         healthy probe
    unstable     -> offline        failure_threshold consecutive failures
"""

from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
import logging

from portfolio_core.offline.scheduler import Scheduler, ScheduledTask
from portfolio_core.services.base_service import ServiceHealth

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"               # Remote reachable with acceptable latency
    OFFLINE = "offline"             # Remote unreachable (initial state)
    RECONNECTING = "reconnecting"   # Reconnect probe in flight
    UNSTABLE = "unstable"           # Reachable but slow, or recently failing


class ConnectionQuality(Enum):
    """Qualitative connection quality."""
    EXCELLENT = "excellent"
    GOOD = "good"
    POOR = "poor"
    CRITICAL = "critical"


# Upper latency bound (exclusive, ms) for each tier, best first
QUALITY_TIERS = (
    (150.0, ConnectionQuality.EXCELLENT),
    (400.0, ConnectionQuality.GOOD),
    (1000.0, ConnectionQuality.POOR),
)
QUALITY_ORDER = [
    ConnectionQuality.EXCELLENT,
    ConnectionQuality.GOOD,
    ConnectionQuality.POOR,
    ConnectionQuality.CRITICAL,
]


def derive_quality(latency_ms: Optional[float], consecutive_failures: int = 0) -> ConnectionQuality:
    """
    Quality tier for a latency, dropped one tier per consecutive failure.

    Args:
        latency_ms: Last measured round trip, or None if never measured
        consecutive_failures: Failed probes since the last success

    Returns:
        ConnectionQuality
    """
    if latency_ms is None:
        return ConnectionQuality.CRITICAL

    tier = ConnectionQuality.CRITICAL
    for bound, quality in QUALITY_TIERS:
        if latency_ms < bound:
            tier = quality
            break

    index = min(QUALITY_ORDER.index(tier) + max(0, consecutive_failures), len(QUALITY_ORDER) - 1)
    return QUALITY_ORDER[index]


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.OFFLINE
    quality: ConnectionQuality = ConnectionQuality.CRITICAL
    latency_ms: Optional[float] = None
    last_checked_at: Optional[datetime] = None
    last_online_at: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None


StateCallback = Callable[[ConnectionState], None]
ProbeFunc = Callable[[], Awaitable[Any]]


class ConnectionMonitor:
    """
    Tracks reachability of the remote service.

    Usage:
        monitor = ConnectionMonitor(probe=remote.ping, scheduler=scheduler)
        unsubscribe = monitor.subscribe(lambda state: print(state.status))
        monitor.start()
        if monitor.is_online():
            # Use remote service
        else:
            # Use local fallback
    """

    def __init__(
        self,
        probe: ProbeFunc,
        scheduler: Optional[Scheduler] = None,
        probe_interval: float = 30.0,
        probe_timeout: float = 5.0,
        latency_threshold_ms: float = 1000.0,
        failure_threshold: int = 3,
        reconnect_base: float = 2.0,
        reconnect_max: float = 120.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Args:
            probe: Coroutine function that raises when the remote is unreachable
            scheduler: Scheduler for periodic probing (required for start())
            probe_interval: Seconds between probes while online or unstable
            probe_timeout: Seconds before a probe counts as failed
            latency_threshold_ms: Latency above which an online link is unstable
            failure_threshold: Consecutive failures that take unstable to offline
            reconnect_base: First reconnect delay while offline
            reconnect_max: Cap for the reconnect backoff
            clock: High-resolution timer used to measure latency
        """
        self._probe = probe
        self._scheduler = scheduler
        self.probe_interval = probe_interval
        self.probe_timeout = probe_timeout
        self.latency_threshold_ms = latency_threshold_ms
        self.failure_threshold = failure_threshold
        self.reconnect_base = reconnect_base
        self.reconnect_max = reconnect_max
        self._clock = clock or time.perf_counter

        self._state = ConnectionState()
        self._subscribers: Dict[int, StateCallback] = {}
        self._next_token = 0
        self._probe_lock = asyncio.Lock()
        self._job: Optional[ScheduledTask] = None
        self._total_probes = 0
        self._failed_probes = 0

    # =========================================================================
    # PUBLIC SURFACE
    # =========================================================================

    def get_state(self) -> ConnectionState:
        """Snapshot of the current state (mutating it has no effect)."""
        return replace(self._state)

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    def is_online(self) -> bool:
        """True when the remote path should be attempted."""
        return self._state.status == ConnectionStatus.ONLINE

    def is_stable(self) -> bool:
        """Online with excellent or good quality."""
        return self.is_online() and self._state.quality in (
            ConnectionQuality.EXCELLENT,
            ConnectionQuality.GOOD,
        )

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """
        Register a callback for state changes.

        Args:
            callback: Called synchronously with a ConnectionState snapshot

        Returns:
            Idempotent unsubscribe function, safe to call from inside a callback
        """
        token = self._next_token
        self._next_token += 1
        self._subscribers[token] = callback

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    async def check(self) -> ConnectionState:
        """
        Perform one probe and apply the resulting transition.

        While offline the probe is a reconnect attempt, so the state passes
        through ``reconnecting`` first.
        """
        async with self._probe_lock:
            if self._state.status in (ConnectionStatus.OFFLINE, ConnectionStatus.RECONNECTING):
                self._set_status(ConnectionStatus.RECONNECTING)
            ok, latency_ms, error = await self._run_probe()
            self._apply_probe(ok, latency_ms, error)
        return self.get_state()

    async def force_reconnect(self) -> ConnectionState:
        """Start a reconnect attempt now, whatever the current state."""
        async with self._probe_lock:
            logger.info("Forced reconnect requested")
            self._set_status(ConnectionStatus.RECONNECTING)
            ok, latency_ms, error = await self._run_probe()
            self._apply_probe(ok, latency_ms, error)
        return self.get_state()

    def force_offline(self) -> None:
        """Force offline mode (for testing or user preference)."""
        self._state.error_message = "Forced offline"
        self._state.quality = ConnectionQuality.CRITICAL
        self._set_status(ConnectionStatus.OFFLINE)
        logger.info("Forced offline mode")

    # =========================================================================
    # BACKGROUND PROBING
    # =========================================================================

    def next_interval(self) -> float:
        """Delay before the next scheduled probe."""
        if self._state.status in (ConnectionStatus.ONLINE, ConnectionStatus.UNSTABLE):
            return self.probe_interval
        failures = max(1, self._state.consecutive_failures)
        return min(self.reconnect_base * (2 ** (failures - 1)), self.reconnect_max)

    def start(self, probe_now: bool = True) -> None:
        """Start periodic probing via the scheduler."""
        if self._scheduler is None:
            raise RuntimeError("ConnectionMonitor.start() requires a scheduler")
        if self._job is not None and not self._job.done:
            return
        self._job = self._scheduler.call_every(
            self.next_interval,
            self.check,
            name="connection-probe",
            run_immediately=probe_now,
        )
        logger.debug("Connection monitoring started")

    async def stop(self) -> None:
        """Stop periodic probing and wait for an in-flight probe to unwind."""
        job, self._job = self._job, None
        if job is None:
            return
        job.cancel()
        if job.task is not None and job.task is not asyncio.current_task():
            await asyncio.gather(job.task, return_exceptions=True)
        logger.debug("Connection monitoring stopped")

    def reset(self) -> None:
        """Return to the initial offline state, keeping subscribers."""
        self._state = ConnectionState()
        self._total_probes = 0
        self._failed_probes = 0

    async def initialize(self) -> None:
        """Establish the initial state with one probe."""
        await self.check()

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    async def _run_probe(self) -> Tuple[bool, Optional[float], Optional[str]]:
        self._total_probes += 1
        started = self._clock()
        try:
            await asyncio.wait_for(self._probe(), timeout=self.probe_timeout)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError:
            self._failed_probes += 1
            return False, None, f"Probe timed out after {self.probe_timeout:.1f}s"
        except Exception as e:
            self._failed_probes += 1
            logger.debug(f"Probe failed: {e}")
            return False, None, str(e) or e.__class__.__name__
        return True, (self._clock() - started) * 1000, None

    def _apply_probe(self, ok: bool, latency_ms: Optional[float], error: Optional[str]) -> None:
        state = self._state
        previous = state.status
        state.last_checked_at = datetime.now()

        if ok:
            state.latency_ms = latency_ms
            state.consecutive_failures = 0
            state.error_message = None
            if previous == ConnectionStatus.RECONNECTING:
                new_status = ConnectionStatus.ONLINE
            elif latency_ms is not None and latency_ms > self.latency_threshold_ms:
                new_status = ConnectionStatus.UNSTABLE
            else:
                new_status = ConnectionStatus.ONLINE
            if new_status == ConnectionStatus.ONLINE:
                state.last_online_at = state.last_checked_at
        else:
            state.consecutive_failures += 1
            state.error_message = error
            if previous == ConnectionStatus.ONLINE:
                new_status = ConnectionStatus.UNSTABLE
            elif previous == ConnectionStatus.UNSTABLE:
                if state.consecutive_failures >= self.failure_threshold:
                    new_status = ConnectionStatus.OFFLINE
                else:
                    new_status = ConnectionStatus.UNSTABLE
            else:
                new_status = ConnectionStatus.OFFLINE

        old_quality = state.quality
        state.quality = derive_quality(state.latency_ms, state.consecutive_failures)

        if new_status != previous:
            self._set_status(new_status)
        elif state.quality != old_quality:
            self._notify_subscribers()

    def _set_status(self, status: ConnectionStatus) -> None:
        old_status = self._state.status
        if old_status == status:
            return
        self._state.status = status
        logger.info(f"Connection status changed: {old_status.value} -> {status.value}")
        self._notify_subscribers()

    def _notify_subscribers(self) -> None:
        """Notify all registered callbacks of a state change."""
        snapshot = self.get_state()
        for token, callback in list(self._subscribers.items()):
            # Skip callbacks unsubscribed earlier in this round
            if token not in self._subscribers:
                continue
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}", exc_info=True)

    # =========================================================================
    # REPORTING
    # =========================================================================

    def health(self) -> ServiceHealth:
        if self._state.status == ConnectionStatus.ONLINE:
            return ServiceHealth.HEALTHY
        if self._state.status == ConnectionStatus.OFFLINE:
            return ServiceHealth.DOWN
        return ServiceHealth.DEGRADED

    def get_status_display(self) -> Dict[str, Any]:
        """Get status information for UI display."""
        state = self._state
        return {
            "status": state.status.value,
            "quality": state.quality.value,
            "is_online": self.is_online(),
            "is_stable": self.is_stable(),
            "latency_ms": round(state.latency_ms, 1) if state.latency_ms is not None else None,
            "last_check": state.last_checked_at.isoformat() if state.last_checked_at else None,
            "last_online": state.last_online_at.isoformat() if state.last_online_at else None,
            "failures": state.consecutive_failures,
            "error": state.error_message,
            "total_probes": self._total_probes,
            "failed_probes": self._failed_probes,
            "subscribers": len(self._subscribers),
        }
