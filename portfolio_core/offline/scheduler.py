# =============================================================================
# portfolio_core/offline/scheduler.py
# Cancellable Recurring and Delayed Tasks on the Event Loop
# =============================================================================
"""
Scheduler - owns every timer the resilience layer starts.

Connection probes, health checks, cache sweeps and token refreshes all run
through one Scheduler so that ``await scheduler.shutdown()`` stops every
one of them; nothing is left ticking after the application closes.
"""

from __future__ import annotations
import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union
import logging

logger = logging.getLogger(__name__)

TaskCallable = Callable[[], Union[Awaitable[Any], Any]]
Interval = Union[float, Callable[[], float]]


@dataclass
class ScheduledTask:
    """Handle for a scheduled job; cancel() is safe to call more than once."""
    name: str
    task: Optional[asyncio.Task] = None
    runs: int = 0
    errors: int = 0
    _cancelled: bool = field(default=False, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self.task is None or self.task.done()

    def cancel(self) -> None:
        self._cancelled = True
        if self.task is not None and not self.task.done():
            self.task.cancel()


class Scheduler:
    """
    Runs coroutine or plain callables after a delay or on an interval.

    Usage:
        scheduler = Scheduler()
        handle = scheduler.call_every(30, monitor.check, name="probe")
        ...
        handle.cancel()              # stop one job
        await scheduler.shutdown()   # stop all of them
    """

    def __init__(self, sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        self._sleep = sleep or asyncio.sleep
        self._tasks: Dict[str, ScheduledTask] = {}
        self._closed = False

    @property
    def active(self) -> Dict[str, ScheduledTask]:
        """Jobs that have not finished or been cancelled."""
        return {name: job for name, job in self._tasks.items() if not job.done}

    def call_every(
        self,
        interval: Interval,
        func: TaskCallable,
        name: str,
        run_immediately: bool = False,
    ) -> ScheduledTask:
        """
        Run ``func`` repeatedly.

        Args:
            interval: Seconds between runs, or a callable returning the next
                delay (used for backoff that depends on current state)
            func: Coroutine function or plain callable taking no arguments
            name: Unique job name; an existing job with that name is replaced
            run_immediately: Run once before the first wait

        Returns:
            ScheduledTask handle
        """
        job = self._register(name)
        job.task = asyncio.get_running_loop().create_task(
            self._repeat(job, interval, func, run_immediately),
            name=f"scheduler:{name}",
        )
        return job

    def call_later(self, delay: float, func: TaskCallable, name: str) -> ScheduledTask:
        """Run ``func`` once after ``delay`` seconds."""
        job = self._register(name)
        job.task = asyncio.get_running_loop().create_task(
            self._once(job, delay, func),
            name=f"scheduler:{name}",
        )
        return job

    def cancel(self, name: str) -> bool:
        """Cancel a job by name. Returns True if a job was found."""
        job = self._tasks.pop(name, None)
        if job is None:
            return False
        job.cancel()
        return True

    async def shutdown(self) -> None:
        """Cancel every job and wait until all of them have stopped."""
        self._closed = True
        jobs = list(self._tasks.values())
        self._tasks.clear()

        for job in jobs:
            job.cancel()

        pending = [job.task for job in jobs if job.task is not None]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.debug(f"Scheduler stopped {len(pending)} task(s)")

    def reopen(self) -> None:
        """Allow scheduling again after shutdown()."""
        self._closed = False

    def _register(self, name: str) -> ScheduledTask:
        if self._closed:
            raise RuntimeError("Scheduler has been shut down")
        previous = self._tasks.pop(name, None)
        # A job that reschedules itself must not cancel its own running task
        if previous is not None and previous.task is not asyncio.current_task():
            previous.cancel()
        job = ScheduledTask(name=name)
        self._tasks[name] = job
        return job

    async def _invoke(self, job: ScheduledTask, func: TaskCallable) -> None:
        try:
            result = func()
            if inspect.isawaitable(result):
                await result
            job.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.errors += 1
            logger.error(f"Scheduled task '{job.name}' failed: {e}", exc_info=True)

    async def _repeat(
        self,
        job: ScheduledTask,
        interval: Interval,
        func: TaskCallable,
        run_immediately: bool,
    ) -> None:
        if run_immediately:
            await self._invoke(job, func)

        while not job.cancelled:
            delay = interval() if callable(interval) else interval
            await self._sleep(max(0.0, delay))
            if job.cancelled:
                break
            await self._invoke(job, func)

    async def _once(self, job: ScheduledTask, delay: float, func: TaskCallable) -> None:
        await self._sleep(max(0.0, delay))
        if not job.cancelled:
            await self._invoke(job, func)
        if self._tasks.get(job.name) is job:
            del self._tasks[job.name]
