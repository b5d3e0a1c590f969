# =============================================================================
# portfolio_core/services/orchestrator.py
# Orchestrator - Single Entry Point for Every Subsystem Operation
# =============================================================================
"""
Orchestrator - dispatches (service, method) calls and keeps telemetry.

Features:
- Enum-based dispatch table; unknown pairs raise UnknownOperationError
- Bounded history of OperationRecord entries (newest first on read)
- Running totals: requests, average latency, error rate, uptime
- Periodic health aggregation across subsystems
- restart_service(), sync_offline_data(), start() / shutdown()

Usage:
    orchestrator = build_orchestrator(load_settings())
    await orchestrator.start()
    result = await orchestrator.execute("api", "add_skill", {"data": {...}})
    await orchestrator.shutdown()
"""

from __future__ import annotations
import inspect
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import pandas as pd

from portfolio_core.cache import TTLCache
from portfolio_core.config import Settings
from portfolio_core.data.supabase_client import InMemoryRemote, RemoteService, SupabaseRemote
from portfolio_core.errors import PortfolioCoreError, UnknownOperationError, ValidationError, normalize_error
from portfolio_core.logging import get_logger
from portfolio_core.offline.connection_monitor import ConnectionMonitor
from portfolio_core.offline.fallback_router import FallbackRouter, ReplayReport
from portfolio_core.offline.local_database import LocalDatabase
from portfolio_core.offline.scheduler import Scheduler
from portfolio_core.services.analysis_service import AnalysisService
from portfolio_core.services.auth_service import AuthService
from portfolio_core.services.base_service import Result, ServiceHealth
from portfolio_core.services.cache_service import CacheService
from portfolio_core.services.data_service import DataService
from portfolio_core.services.portfolio_service import PortfolioService
from portfolio_core.services.realtime_service import RealtimeHub
from portfolio_core.services.request_executor import RequestExecutor

logger = get_logger(__name__)

HEALTH_JOB = "orchestrator-health"
SWEEP_JOB = "cache-sweep"


class Operation(Enum):
    """Every (service, method) pair the orchestrator accepts."""

    # Auth
    AUTH_LOGIN = ("auth", "login")
    AUTH_REGISTER = ("auth", "register")
    AUTH_LOGOUT = ("auth", "logout")
    AUTH_REFRESH_TOKEN = ("auth", "refresh_token")
    AUTH_GET_CURRENT_USER = ("auth", "get_current_user")
    AUTH_IS_AUTHENTICATED = ("auth", "is_authenticated")

    # Portfolio API
    API_GET_PORTFOLIO = ("api", "get_portfolio")
    API_UPDATE_PORTFOLIO = ("api", "update_portfolio")
    API_CREATE_PROJECT = ("api", "create_project")
    API_UPDATE_PROJECT = ("api", "update_project")
    API_DELETE_PROJECT = ("api", "delete_project")
    API_ADD_SKILL = ("api", "add_skill")
    API_UPDATE_SKILL = ("api", "update_skill")
    API_DELETE_SKILL = ("api", "delete_skill")
    API_SEARCH = ("api", "search")

    # Generic collections
    DATABASE_QUERY = ("database", "query")
    DATABASE_INSERT = ("database", "insert")
    DATABASE_UPDATE = ("database", "update")
    DATABASE_DELETE = ("database", "delete")

    # Cache
    CACHE_GET = ("cache", "get")
    CACHE_SET = ("cache", "set")
    CACHE_INVALIDATE = ("cache", "invalidate")
    CACHE_CLEAR = ("cache", "clear")
    CACHE_STATS = ("cache", "stats")

    # Realtime
    REALTIME_PUBLISH = ("realtime", "publish")
    REALTIME_SUBSCRIBE = ("realtime", "subscribe")
    REALTIME_UNSUBSCRIBE = ("realtime", "unsubscribe")
    REALTIME_JOIN_ROOM = ("realtime", "join_room")
    REALTIME_LEAVE_ROOM = ("realtime", "leave_room")

    # Analysis
    AI_ANALYZE_PORTFOLIO = ("ai", "analyze_portfolio")
    AI_GET_SKILL_RECOMMENDATIONS = ("ai", "get_skill_recommendations")
    AI_GENERATE_RECOMMENDATIONS = ("ai", "generate_recommendations")

    @property
    def service(self) -> str:
        return self.value[0]

    @property
    def method(self) -> str:
        return self.value[1]

    @classmethod
    def services(cls) -> List[str]:
        return sorted({op.service for op in cls})

    @classmethod
    def methods(cls, service: str) -> List[str]:
        return [op.method for op in cls if op.service == service]

    @classmethod
    def resolve(cls, service: str, method: str) -> Operation:
        """Look up a pair, raising UnknownOperationError with the allowed names."""
        try:
            return cls((service, method))
        except ValueError:
            pass

        allowed_methods = cls.methods(service)
        if not allowed_methods:
            raise UnknownOperationError(
                f"Unknown service '{service}'",
                service=service,
                method=method,
                allowed=cls.services(),
            ) from None
        raise UnknownOperationError(
            f"Unknown {service} method '{method}'",
            service=service,
            method=method,
            allowed=allowed_methods,
        ) from None


class OperationStatus(Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class OperationRecord:
    """Telemetry for one dispatched operation."""
    id: str
    service: str
    method: str
    started_at: datetime
    status: OperationStatus = OperationStatus.PENDING
    duration_ms: Optional[float] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    provenance: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "service": self.service,
            "method": self.method,
            "started_at": self.started_at.isoformat(),
            "status": self.status.value,
            "duration_ms": round(self.duration_ms, 2) if self.duration_ms is not None else None,
            "error_message": self.error_message,
            "error_code": self.error_code,
            "provenance": self.provenance,
        }


@dataclass
class HealthStatus:
    """Aggregated health, recomputed on every health check."""
    overall: ServiceHealth = ServiceHealth.HEALTHY
    services: Dict[str, ServiceHealth] = field(default_factory=dict)
    metrics: Dict[str, float] = field(default_factory=dict)
    last_check: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall.value,
            "services": {name: health.value for name, health in self.services.items()},
            "metrics": dict(self.metrics),
            "last_check": self.last_check.isoformat() if self.last_check else None,
        }


def aggregate_health(services: Dict[str, ServiceHealth], healthy_ratio: float = 0.7) -> ServiceHealth:
    """All healthy -> healthy; at least ``healthy_ratio`` healthy -> degraded; else down."""
    if not services:
        return ServiceHealth.HEALTHY
    healthy = sum(1 for h in services.values() if h == ServiceHealth.HEALTHY)
    if healthy == len(services):
        return ServiceHealth.HEALTHY
    if healthy >= len(services) * healthy_ratio:
        return ServiceHealth.DEGRADED
    return ServiceHealth.DOWN


class Orchestrator:
    """
    Facade over auth, portfolio API, collections, cache, realtime and analysis.

    All collaborators are passed in; use build_orchestrator() to wire the
    default graph from Settings.
    """

    def __init__(
        self,
        settings: Settings,
        scheduler: Scheduler,
        monitor: ConnectionMonitor,
        router: FallbackRouter,
        auth: AuthService,
        api: PortfolioService,
        database: DataService,
        cache: CacheService,
        realtime: RealtimeHub,
        ai: AnalysisService,
        remote: Optional[RemoteService] = None,
    ):
        self.settings = settings
        self.scheduler = scheduler
        self.monitor = monitor
        self.router = router
        self.auth = auth
        self.api = api
        self.database = database
        self.cache = cache
        self.realtime = realtime
        self.ai = ai
        self.remote = remote

        self._subsystems: Dict[str, Any] = {
            "auth": auth,
            "api": api,
            "database": database,
            "cache": cache,
            "realtime": realtime,
            "ai": ai,
            "connection": monitor,
        }
        self._handlers: Dict[Operation, Callable[..., Any]] = self._build_handlers()

        self._history: Deque[OperationRecord] = deque(maxlen=settings.history_size)
        self._total_requests = 0
        self._total_duration_ms = 0.0
        self._errors = 0
        self._started_at = time.monotonic()
        self._health = HealthStatus(services={name: ServiceHealth.HEALTHY for name in self._subsystems})
        self._started = False

    def _build_handlers(self) -> Dict[Operation, Callable[..., Any]]:
        handlers = {
            Operation.AUTH_LOGIN: self.auth.login,
            Operation.AUTH_REGISTER: self.auth.register,
            Operation.AUTH_LOGOUT: self.auth.logout,
            Operation.AUTH_REFRESH_TOKEN: self.auth.refresh_token,
            Operation.AUTH_GET_CURRENT_USER: self.auth.get_current_user,
            Operation.AUTH_IS_AUTHENTICATED: self.auth.is_authenticated,

            Operation.API_GET_PORTFOLIO: self.api.get_portfolio,
            Operation.API_UPDATE_PORTFOLIO: self.api.update_portfolio,
            Operation.API_CREATE_PROJECT: self.api.create_project,
            Operation.API_UPDATE_PROJECT: self.api.update_project,
            Operation.API_DELETE_PROJECT: self.api.delete_project,
            Operation.API_ADD_SKILL: self.api.add_skill,
            Operation.API_UPDATE_SKILL: self.api.update_skill,
            Operation.API_DELETE_SKILL: self.api.delete_skill,
            Operation.API_SEARCH: self.api.search,

            Operation.DATABASE_QUERY: self.database.query,
            Operation.DATABASE_INSERT: self.database.insert,
            Operation.DATABASE_UPDATE: self.database.update,
            Operation.DATABASE_DELETE: self.database.delete,

            Operation.CACHE_GET: self.cache.get,
            Operation.CACHE_SET: self.cache.set,
            Operation.CACHE_INVALIDATE: self.cache.invalidate,
            Operation.CACHE_CLEAR: self.cache.clear,
            Operation.CACHE_STATS: self.cache.stats,

            Operation.REALTIME_PUBLISH: self.realtime.publish,
            Operation.REALTIME_SUBSCRIBE: self.realtime.subscribe,
            Operation.REALTIME_UNSUBSCRIBE: self.realtime.unsubscribe,
            Operation.REALTIME_JOIN_ROOM: self.realtime.join_room,
            Operation.REALTIME_LEAVE_ROOM: self.realtime.leave_room,

            Operation.AI_ANALYZE_PORTFOLIO: self.ai.analyze_portfolio,
            Operation.AI_GET_SKILL_RECOMMENDATIONS: self._skill_recommendations,
            Operation.AI_GENERATE_RECOMMENDATIONS: self._recommendations,
        }
        missing = set(Operation) - set(handlers)
        if missing:
            raise RuntimeError(f"No handler for {sorted(op.name for op in missing)}")
        return handlers

    def _skill_recommendations(self, skills: List[Dict[str, Any]], department: Optional[str] = None):
        return [r.to_dict() for r in self.ai.get_skill_recommendations(skills, department)]

    def _recommendations(self, portfolio: Dict[str, Any], user: Optional[Dict[str, Any]] = None):
        return [r.to_dict() for r in self.ai.generate_recommendations(portfolio, user)]

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def execute(
        self,
        service: str,
        method: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Run one operation.

        Args:
            service: Subsystem name ("auth", "api", "database", "cache",
                "realtime", "ai")
            method: Method of that subsystem
            params: Keyword arguments for the method

        Returns:
            Whatever the subsystem returns (a Result for routed data operations)

        Raises:
            UnknownOperationError: The pair is not in the dispatch table
            PortfolioCoreError: Any subsystem failure, normalized
        """
        operation = Operation.resolve(service, method)
        handler = self._handlers[operation]
        params = dict(params or {})

        record = OperationRecord(
            id=str(uuid.uuid4()),
            service=service,
            method=method,
            started_at=datetime.now(),
        )
        self._history.append(record)
        self._total_requests += 1
        started = time.perf_counter()

        try:
            try:
                inspect.signature(handler).bind(**params)
            except TypeError as e:
                raise ValidationError(
                    f"Invalid parameters for {service}.{method}: {e}",
                    expected=str(inspect.signature(handler)),
                    actual=", ".join(sorted(params)) or None,
                ) from None

            result = handler(**params)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            error = normalize_error(e, service=service)
            self._settle(record, started, error=error)
            if not isinstance(e, PortfolioCoreError):
                logger.error(f"{service}.{method} failed: {e}", exc_info=True)
            else:
                logger.warning(f"{service}.{method} failed: [{error.code}] {error.message}")
            if error is e:
                raise
            raise error from e

        if isinstance(result, Result):
            record.provenance = result.provenance.value if result.provenance else None
            if not result.success:
                self._settle(record, started, error_message=result.error, error_code=result.error_code)
                return result
        self._settle(record, started)
        return result

    def _settle(
        self,
        record: OperationRecord,
        started: float,
        error: Optional[PortfolioCoreError] = None,
        error_message: Optional[str] = None,
        error_code: Optional[str] = None,
    ) -> None:
        record.duration_ms = (time.perf_counter() - started) * 1000
        self._total_duration_ms += record.duration_ms
        if error is not None:
            error_message, error_code = error.message, error.code
        if error_message or error_code:
            record.status = OperationStatus.ERROR
            record.error_message = error_message
            record.error_code = error_code
            self._errors += 1
        else:
            record.status = OperationStatus.SUCCESS

    # =========================================================================
    # TELEMETRY
    # =========================================================================

    def get_operation_history(
        self,
        limit: Optional[int] = None,
        as_dataframe: bool = False,
    ) -> Union[List[OperationRecord], pd.DataFrame]:
        """
        Recent operations, newest first.

        Args:
            limit: Maximum number of records
            as_dataframe: Return a pandas DataFrame instead of record copies
        """
        records = list(reversed(self._history))
        if limit is not None:
            records = records[:limit]
        if as_dataframe:
            return pd.DataFrame([r.to_dict() for r in records])
        return [OperationRecord(**vars(r)) for r in records]

    def _metrics(self) -> Dict[str, float]:
        total = self._total_requests
        return {
            "total_requests": total,
            "average_response_time_ms": round(self._total_duration_ms / total, 2) if total else 0.0,
            "error_rate": round(self._errors / total * 100, 2) if total else 0.0,
            "uptime_s": round(time.monotonic() - self._started_at, 1),
        }

    def get_service_metrics(self) -> Dict[str, Any]:
        """Orchestrator totals plus every subsystem's own counters."""
        return {
            "orchestrator": self._metrics(),
            "executor": self.router.executor.metrics(),
            "router": self.router.stats(),
            "connection": self.monitor.get_status_display(),
            **{name: sub.metrics() for name, sub in self._subsystems.items() if name != "connection"},
        }

    # =========================================================================
    # HEALTH
    # =========================================================================

    async def perform_health_check(self) -> HealthStatus:
        """Poll every subsystem and recompute the aggregate."""
        services: Dict[str, ServiceHealth] = {}
        for name, subsystem in self._subsystems.items():
            try:
                services[name] = subsystem.health()
            except Exception as e:
                logger.error(f"Health check of '{name}' failed: {e}", exc_info=True)
                services[name] = ServiceHealth.DOWN

        overall = aggregate_health(services, self.settings.healthy_ratio)
        if overall != self._health.overall:
            logger.info(f"Overall health changed: {self._health.overall.value} -> {overall.value}")

        self._health = HealthStatus(
            overall=overall,
            services=services,
            metrics=self._metrics(),
            last_check=datetime.now(),
        )

        # Catch up on queued writes left over from an earlier failed round
        if self.monitor.is_online() and self.router.pending_count and not self.router.is_replaying:
            self.router.schedule_replay()
        return self._health

    def get_health_status(self) -> HealthStatus:
        """Last computed health (metrics refreshed on read)."""
        self._health.metrics = self._metrics()
        return self._health

    async def restart_service(self, name: str) -> ServiceHealth:
        """Reset and re-initialize one subsystem, then re-check health."""
        subsystem = self._subsystems.get(name)
        if subsystem is None:
            raise UnknownOperationError(
                f"Unknown service '{name}'",
                service=name,
                allowed=sorted(self._subsystems),
            )

        logger.info(f"Restarting service '{name}'")
        for step in ("reset", "initialize"):
            outcome = getattr(subsystem, step)()
            if inspect.isawaitable(outcome):
                await outcome

        await self.perform_health_check()
        return self._health.services[name]

    async def sync_offline_data(self) -> ReplayReport:
        """Replay the offline queue now, including a replay already started by a reconnect."""
        earlier = await self.router.wait_for_replay()
        report = await self.router.replay_pending()
        if earlier is not None and not earlier.skipped:
            report = earlier.combine(report)
        await self.perform_health_check()
        return report

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self) -> None:
        """Initialize subsystems and start background jobs."""
        if self._started:
            return
        self.scheduler.reopen()
        for name, subsystem in self._subsystems.items():
            if name == "connection":
                continue
            await subsystem.initialize()

        self.monitor.start(probe_now=True)
        self.scheduler.call_every(self.settings.cache_sweep_interval, self.cache.sweep, name=SWEEP_JOB)
        self.scheduler.call_every(
            self.settings.health_check_interval,
            self.perform_health_check,
            name=HEALTH_JOB,
            run_immediately=True,
        )
        self._started = True
        logger.info("Orchestrator started")

    async def shutdown(self) -> None:
        """Stop every scheduled task and release resources."""
        await self.monitor.stop()
        await self.scheduler.shutdown()
        await self.router.close()
        if self.remote is not None:
            await self.remote.close()
        self.router.local_db.close()
        self._started = False
        logger.info("Orchestrator stopped")

    async def __aenter__(self) -> Orchestrator:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()


def build_orchestrator(
    settings: Settings,
    remote: Optional[RemoteService] = None,
    local_db: Optional[LocalDatabase] = None,
    scheduler: Optional[Scheduler] = None,
) -> Orchestrator:
    """
    Wire the default object graph.

    Args:
        settings: Validated settings
        remote: Remote adapter; defaults to SupabaseRemote when credentials
            are configured, otherwise an InMemoryRemote
        local_db: Local database; defaults to one at settings.local_db_path
        scheduler: Scheduler shared by every background job

    Returns:
        Orchestrator (call ``await start()`` to begin probing)
    """
    settings.validate()

    if remote is None:
        if settings.remote_configured:
            remote = SupabaseRemote(settings.supabase_url, settings.supabase_key, settings.probe_timeout)
        else:
            logger.warning("Supabase not configured; using in-process remote")
            remote = InMemoryRemote()

    local_db = local_db or LocalDatabase(settings.local_db_path)
    scheduler = scheduler or Scheduler()

    executor = RequestExecutor(
        timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        backoff_base=settings.backoff_base,
        backoff_max=settings.backoff_max,
    )
    monitor = ConnectionMonitor(
        probe=remote.ping,
        scheduler=scheduler,
        probe_interval=settings.probe_interval,
        probe_timeout=settings.probe_timeout,
        latency_threshold_ms=settings.latency_threshold_ms,
        failure_threshold=settings.failure_threshold,
        reconnect_base=settings.reconnect_base,
        reconnect_max=settings.reconnect_max,
    )
    cache = TTLCache(default_ttl=settings.cache_default_ttl)
    realtime = RealtimeHub()
    router = FallbackRouter(
        monitor=monitor,
        executor=executor,
        cache=cache,
        local_db=local_db,
        remote=remote,
        freshness_window=settings.freshness_window,
        max_replay_attempts=settings.max_replay_attempts,
        publisher=realtime.publish,
    )
    auth = AuthService(
        remote=remote,
        executor=executor,
        local_db=local_db,
        scheduler=scheduler,
        refresh_margin=settings.token_refresh_margin,
    )

    return Orchestrator(
        settings=settings,
        scheduler=scheduler,
        monitor=monitor,
        router=router,
        auth=auth,
        api=PortfolioService(router),
        database=DataService(router),
        cache=CacheService(cache),
        realtime=realtime,
        ai=AnalysisService(),
        remote=remote,
    )
