# =============================================================================
# tests/unit/test_orchestrator.py
# Unit Tests for Dispatch, Telemetry and Health Aggregation
# =============================================================================

from dataclasses import replace

import pandas as pd
import pytest

from portfolio_core.errors import UnknownOperationError, ValidationError
from portfolio_core.offline import LocalDatabase, Scheduler
from portfolio_core.services import Provenance, Result, ServiceHealth
from portfolio_core.services.orchestrator import (
    Operation,
    OperationStatus,
    aggregate_health,
    build_orchestrator,
)


SKILL = {"portfolio_id": "p1", "name": "SQL", "level": "beginner"}


class TestOperationTable:

    def test_every_pair_resolves(self):
        assert len(Operation) == 32
        assert Operation.resolve("api", "add_skill") is Operation.API_ADD_SKILL
        assert Operation.API_ADD_SKILL.service == "api"
        assert Operation.API_ADD_SKILL.method == "add_skill"

    def test_services(self):
        assert Operation.services() == ["ai", "api", "auth", "cache", "database", "realtime"]

    def test_unknown_service_lists_services(self):
        with pytest.raises(UnknownOperationError) as exc_info:
            Operation.resolve("billing", "charge")
        assert exc_info.value.code == "OP_001"
        assert "api" in exc_info.value.details["allowed"]

    def test_unknown_method_lists_methods(self):
        with pytest.raises(UnknownOperationError) as exc_info:
            Operation.resolve("cache", "flush")
        assert exc_info.value.details["allowed"] == ["get", "set", "invalidate", "clear", "stats"]


class TestAggregateHealth:

    def test_all_healthy(self):
        services = {name: ServiceHealth.HEALTHY for name in "abcdefg"}
        assert aggregate_health(services) == ServiceHealth.HEALTHY

    def test_mostly_healthy_is_degraded(self):
        services = {name: ServiceHealth.HEALTHY for name in "abcdef"}
        services["g"] = ServiceHealth.DOWN
        assert aggregate_health(services, 0.7) == ServiceHealth.DEGRADED

    def test_below_ratio_is_down(self):
        services = {name: ServiceHealth.HEALTHY for name in "abcd"}
        services.update({name: ServiceHealth.DEGRADED for name in "efg"})
        assert aggregate_health(services, 0.7) == ServiceHealth.DOWN


class TestExecute:
    """Test dispatch through the orchestrator"""

    @pytest.mark.asyncio
    async def test_unknown_operation_raises_without_history(self, orchestrator):
        with pytest.raises(UnknownOperationError):
            await orchestrator.execute("api", "drop_everything")
        assert orchestrator.get_operation_history() == []

    @pytest.mark.asyncio
    async def test_offline_write_returns_queued_result(self, orchestrator):
        result = await orchestrator.execute("api", "add_skill", {"data": SKILL})

        assert isinstance(result, Result)
        assert result.provenance == Provenance.QUEUED

        record = orchestrator.get_operation_history()[0]
        assert record.status == OperationStatus.SUCCESS
        assert record.provenance == "queued"
        assert record.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_online_write_reaches_remote(self, orchestrator, remote):
        await orchestrator.monitor.check()

        result = await orchestrator.execute("database", "insert", {"table": "skills", "data": SKILL})

        assert result.provenance == Provenance.REMOTE
        assert len(remote.rows("skills")) == 1

    @pytest.mark.asyncio
    async def test_sync_handler(self, orchestrator):
        await orchestrator.execute("cache", "set", {"key": "greeting", "value": "hi"})
        value = await orchestrator.execute("cache", "get", {"key": "greeting"})
        assert value == "hi"

    @pytest.mark.asyncio
    async def test_cache_rejects_none_value(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.execute("cache", "set", {"key": "greeting", "value": None})
        assert await orchestrator.execute("cache", "get", {"key": "greeting"}) is None

    @pytest.mark.asyncio
    async def test_bad_params_raise_validation_error(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.execute("cache", "get", {"name": "x"})

        record = orchestrator.get_operation_history()[0]
        assert record.status == OperationStatus.ERROR
        assert record.error_code == "VALID_001"

    @pytest.mark.asyncio
    async def test_subsystem_error_is_recorded_and_reraised(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.execute("api", "add_skill", {"data": {"name": "SQL", "level": "guru"}})

        metrics = orchestrator.get_service_metrics()["orchestrator"]
        assert metrics["total_requests"] == 1
        assert metrics["error_rate"] == 100.0

    @pytest.mark.asyncio
    async def test_analysis_returns_plain_dicts(self, orchestrator):
        recommendations = await orchestrator.execute(
            "ai", "get_skill_recommendations", {"skills": [], "department": "Data Science"}
        )
        assert recommendations[0]["skill"] == "Python"
        assert recommendations[0]["priority"] == "high"


class TestHistory:

    @pytest.mark.asyncio
    async def test_newest_first_with_limit(self, orchestrator):
        await orchestrator.execute("cache", "stats")
        await orchestrator.execute("cache", "clear")
        await orchestrator.execute("cache", "get", {"key": "k"})

        history = orchestrator.get_operation_history(limit=2)

        assert [r.method for r in history] == ["get", "clear"]

    @pytest.mark.asyncio
    async def test_history_returns_copies(self, orchestrator):
        await orchestrator.execute("cache", "stats")

        orchestrator.get_operation_history()[0].method = "tampered"

        assert orchestrator.get_operation_history()[0].method == "stats"

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, settings, remote):
        orchestrator = build_orchestrator(
            replace(settings, history_size=3),
            remote=remote,
            local_db=LocalDatabase(":memory:"),
            scheduler=Scheduler(),
        )
        await orchestrator.router.initialize()
        for _ in range(5):
            await orchestrator.execute("cache", "stats")

        assert len(orchestrator.get_operation_history()) == 3
        assert orchestrator.get_service_metrics()["orchestrator"]["total_requests"] == 5
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_history_as_dataframe(self, orchestrator):
        await orchestrator.execute("cache", "stats")

        df = orchestrator.get_operation_history(as_dataframe=True)

        assert isinstance(df, pd.DataFrame)
        assert {"service", "method", "status", "duration_ms"} <= set(df.columns)
        assert df.iloc[0]["status"] == "success"

    @pytest.mark.asyncio
    async def test_error_rate_is_a_percentage(self, orchestrator):
        await orchestrator.execute("cache", "stats")
        with pytest.raises(ValidationError):
            await orchestrator.execute("cache", "set", {"key": "", "value": 1})

        assert orchestrator.get_service_metrics()["orchestrator"]["error_rate"] == 50.0


class TestHealth:

    @pytest.mark.asyncio
    async def test_online_is_healthy(self, orchestrator):
        await orchestrator.monitor.check()

        health = await orchestrator.perform_health_check()

        assert health.overall == ServiceHealth.HEALTHY
        assert set(health.services) == {"auth", "api", "database", "cache", "realtime", "ai", "connection"}

    @pytest.mark.asyncio
    async def test_offline_connection_degrades_overall(self, orchestrator):
        await orchestrator.monitor.check()
        orchestrator.monitor.force_offline()

        health = await orchestrator.perform_health_check()

        assert health.services["connection"] == ServiceHealth.DOWN
        assert health.overall == ServiceHealth.DEGRADED
        assert orchestrator.get_health_status().overall == ServiceHealth.DEGRADED

    @pytest.mark.asyncio
    async def test_health_to_dict(self, orchestrator):
        health = await orchestrator.perform_health_check()
        data = health.to_dict()
        assert data["services"]["cache"] == "healthy"
        assert data["last_check"] is not None


class TestRestartAndSync:

    @pytest.mark.asyncio
    async def test_restart_service(self, orchestrator):
        await orchestrator.execute("cache", "set", {"key": "k", "value": 1})

        health = await orchestrator.restart_service("cache")

        assert health == ServiceHealth.HEALTHY
        assert await orchestrator.execute("cache", "get", {"key": "k"}) is None

    @pytest.mark.asyncio
    async def test_restart_unknown_service(self, orchestrator):
        with pytest.raises(UnknownOperationError):
            await orchestrator.restart_service("billing")

    @pytest.mark.asyncio
    async def test_restart_database_keeps_replay_on_reconnect(self, orchestrator, remote):
        await orchestrator.restart_service("database")
        await orchestrator.execute("api", "add_skill", {"data": SKILL})

        await orchestrator.monitor.check()
        report = await orchestrator.sync_offline_data()

        assert report.replayed == 1
        assert len(remote.rows("skills")) == 1

    @pytest.mark.asyncio
    async def test_sync_offline_data(self, orchestrator, remote):
        await orchestrator.execute("api", "add_skill", {"data": SKILL})
        await orchestrator.execute("api", "create_project", {"data": {"portfolio_id": "p1", "title": "Site"}})

        await orchestrator.monitor.check()
        report = await orchestrator.sync_offline_data()

        assert report.replayed == 2
        assert report.remaining == 0
        assert remote.calls.count("insert:skills") == 1
        assert remote.calls.count("insert:projects") == 1

    @pytest.mark.asyncio
    async def test_sync_while_offline_is_skipped(self, orchestrator):
        await orchestrator.execute("api", "add_skill", {"data": SKILL})

        report = await orchestrator.sync_offline_data()

        assert report.skipped is True
        assert report.remaining == 1


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_schedules_background_jobs(self, orchestrator):
        await orchestrator.start()

        assert {"connection-probe", "cache-sweep", "orchestrator-health"} <= set(orchestrator.scheduler.active)

        await orchestrator.shutdown()
        assert orchestrator.scheduler.active == {}

    @pytest.mark.asyncio
    async def test_async_context_manager(self, settings, remote):
        orchestrator = build_orchestrator(
            settings, remote=remote, local_db=LocalDatabase(":memory:"), scheduler=Scheduler()
        )
        async with orchestrator:
            result = await orchestrator.execute("api", "search", {"query": "sql", "type": "skills"})
            assert result.success
        assert orchestrator.scheduler.active == {}

    def test_default_remote_is_in_memory_without_credentials(self, settings):
        orchestrator = build_orchestrator(settings, local_db=LocalDatabase(":memory:"))
        assert orchestrator.remote.__class__.__name__ == "InMemoryRemote"
