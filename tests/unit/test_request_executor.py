# =============================================================================
# tests/unit/test_request_executor.py
# Unit Tests for Timeout and Retry Handling
# =============================================================================

import asyncio

import httpx
import pytest

from portfolio_core.errors import AuthorizationError, ValidationError
from portfolio_core.services import RequestExecutor


class FlakyCall:
    """Raises the queued errors in order, then returns ``value``"""

    def __init__(self, errors=(), value="ok"):
        self.errors = list(errors)
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class TestExecutorSuccess:

    @pytest.mark.asyncio
    async def test_first_attempt_success(self, executor, no_sleep):
        call = FlakyCall(value=[{"id": 1}])

        result = await executor.execute(call)

        assert result.success
        assert result.data == [{"id": 1}]
        assert result.attempts == 1
        assert call.calls == 1
        assert no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, executor, no_sleep):
        call = FlakyCall(errors=[httpx.ConnectError("down"), httpx.ConnectError("down")])

        result = await executor.execute(call)

        assert result.success
        assert result.attempts == 3
        assert no_sleep.delays == [1.0, 2.0]


class TestExecutorRetryPolicy:
    """Test which failures are retried and how often"""

    @pytest.mark.asyncio
    async def test_transient_failure_uses_every_attempt(self, executor, no_sleep):
        call = FlakyCall(errors=[httpx.ConnectError("down")] * 5)

        result = await executor.execute(call)

        assert not result.success
        assert result.error_code == "NET_001"
        assert call.calls == 3
        assert result.attempts == 3
        # One wait between consecutive attempts, never shrinking
        assert len(no_sleep.delays) == 2
        assert no_sleep.delays == sorted(no_sleep.delays)

    @pytest.mark.asyncio
    async def test_authorization_error_not_retried(self, executor, no_sleep):
        call = FlakyCall(errors=[AuthorizationError("expired", status_code=401)])

        result = await executor.execute(call)

        assert result.error_code == "AUTH_001"
        assert isinstance(result.exception, AuthorizationError)
        assert call.calls == 1
        assert no_sleep.delays == []

    @pytest.mark.asyncio
    async def test_validation_error_not_retried(self, executor):
        call = FlakyCall(errors=[ValidationError("bad", field="level")])

        result = await executor.execute(call)

        assert result.error_code == "VALID_001"
        assert result.metadata["field"] == "level"
        assert call.calls == 1

    @pytest.mark.asyncio
    async def test_server_error_status_is_retried(self, executor):
        request = httpx.Request("GET", "https://example.supabase.co/rest/v1/skills")
        response = httpx.Response(503, request=request)
        call = FlakyCall(errors=[httpx.HTTPStatusError("unavailable", request=request, response=response)])

        result = await executor.execute(call)

        assert result.success
        assert call.calls == 2

    @pytest.mark.asyncio
    async def test_per_call_max_retries(self, executor):
        call = FlakyCall(errors=[httpx.ConnectError("down")] * 5)

        result = await executor.execute(call, max_retries=1)

        assert not result.success
        assert call.calls == 1

    def test_backoff_is_exponential_and_capped(self):
        executor = RequestExecutor(backoff_base=1.0, backoff_max=10.0)

        delays = [executor.backoff_delay(n) for n in range(1, 7)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


class TestExecutorTimeout:

    @pytest.mark.asyncio
    async def test_attempt_times_out(self, no_sleep):
        executor = RequestExecutor(timeout=0.05, max_retries=2, sleep=no_sleep)
        started = []

        async def hang():
            started.append(True)
            await asyncio.sleep(5)

        result = await executor.execute(hang)

        assert not result.success
        assert result.error_code == "NET_001"
        assert result.metadata["timeout_s"] == 0.05
        assert len(started) == 2
        assert executor.metrics()["timeouts"] == 2

    @pytest.mark.asyncio
    async def test_timed_out_attempt_is_cancelled(self, no_sleep):
        executor = RequestExecutor(timeout=0.05, max_retries=1, sleep=no_sleep)
        side_effects = []

        async def slow_write():
            await asyncio.sleep(0.2)
            side_effects.append("written")

        await executor.execute(slow_write)
        await asyncio.sleep(0.3)

        assert side_effects == []


class TestExecutorMetrics:

    @pytest.mark.asyncio
    async def test_counters(self, executor):
        await executor.execute(FlakyCall())
        await executor.execute(FlakyCall(errors=[httpx.ConnectError("down")]))
        await executor.execute(FlakyCall(errors=[AuthorizationError("no")]))

        metrics = executor.metrics()
        assert metrics["total_calls"] == 3
        assert metrics["successes"] == 2
        assert metrics["failures"] == 1
        assert metrics["retries"] == 1

        executor.reset_metrics()
        assert executor.metrics()["total_calls"] == 0
