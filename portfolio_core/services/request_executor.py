# =============================================================================
# portfolio_core/services/request_executor.py
# Single Remote Call with Timeout and Exponential Backoff Retry
# =============================================================================
"""
RequestExecutor - runs one remote call under a hard per-attempt timeout.

Features:
- asyncio.wait_for per attempt; a timed-out attempt is cancelled, so it
  cannot touch shared state afterwards
- Exponential backoff: min(backoff_base * 2**(attempt-1), backoff_max)
- Only TransientNetworkError is retried
- Never raises: every outcome is a Result envelope
"""

from __future__ import annotations
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar
import logging

from portfolio_core.errors import TransientNetworkError, classify_exception
from portfolio_core.services.base_service import Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ExecutorMetrics:
    """Running counters since the last reset."""
    total_calls: int = 0
    successes: int = 0
    failures: int = 0
    retries: int = 0
    timeouts: int = 0
    total_latency_ms: float = 0.0

    @property
    def average_latency_ms(self) -> float:
        return self.total_latency_ms / self.total_calls if self.total_calls else 0.0


class RequestExecutor:
    """
    Executes remote operations with timeout and retry.

    Usage:
        executor = RequestExecutor(timeout=10, max_retries=3)
        result = await executor.execute(lambda: remote.select("skills", {}))
        if result:
            rows = result.data
    """

    def __init__(
        self,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        backoff_max: float = 10.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        """
        Args:
            timeout: Default per-attempt timeout in seconds
            max_retries: Default total number of attempts, first call included
            backoff_base: Delay before the second attempt
            backoff_max: Upper bound for any single delay
            sleep: Coroutine used to wait between attempts (injectable for tests)
        """
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._sleep = sleep or asyncio.sleep
        self._metrics = ExecutorMetrics()

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> Result:
        """
        Run ``operation`` until it succeeds, fails permanently, or runs out of attempts.

        Args:
            operation: Zero-argument callable returning an awaitable
            timeout: Per-attempt timeout in seconds (default: executor's)
            max_retries: Total attempts allowed (default: executor's)

        Returns:
            Result with ``data`` on success or ``error``/``error_code`` on failure;
            ``attempts`` holds the number of invocations made
        """
        timeout = self.timeout if timeout is None else timeout
        max_attempts = max(1, self.max_retries if max_retries is None else max_retries)

        self._metrics.total_calls += 1
        started = time.perf_counter()
        attempt = 0
        result: Optional[Result] = None

        while attempt < max_attempts:
            attempt += 1
            try:
                data = await asyncio.wait_for(operation(), timeout=timeout)
                result = Result.ok(data)
                break
            except asyncio.TimeoutError:
                self._metrics.timeouts += 1
                result = Result.from_exception(
                    TransientNetworkError(
                        f"Attempt {attempt} timed out after {timeout:.2f}s",
                        timeout=timeout,
                    )
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result = Result.from_exception(classify_exception(e))

            if not result.exception.retryable:
                logger.debug(f"Not retrying [{result.error_code}] {result.error}")
                break

            if attempt < max_attempts:
                delay = self.backoff_delay(attempt)
                self._metrics.retries += 1
                logger.info(f"Attempt {attempt}/{max_attempts} failed ({result.error}); retrying in {delay:.2f}s")
                await self._sleep(delay)

        result.attempts = attempt
        self._metrics.total_latency_ms += (time.perf_counter() - started) * 1000
        if result.success:
            self._metrics.successes += 1
        else:
            self._metrics.failures += 1
            logger.warning(f"Remote call failed after {attempt} attempt(s): [{result.error_code}] {result.error}")

        return result

    def metrics(self) -> Dict[str, Any]:
        m = self._metrics
        return {
            "total_calls": m.total_calls,
            "successes": m.successes,
            "failures": m.failures,
            "retries": m.retries,
            "timeouts": m.timeouts,
            "average_latency_ms": round(m.average_latency_ms, 2),
        }

    def reset_metrics(self) -> None:
        self._metrics = ExecutorMetrics()
