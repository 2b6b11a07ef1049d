"""Task manager lifecycle — start, stop, schedule.

The ``TaskManager`` owns a set of ``CronJob`` definitions and runs them
on asyncio background tasks. Each job has a ``period`` (seconds) and a
handler coroutine. ``run_now`` executes a job once, out of schedule,
which is how operators trigger a sweep on demand.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from account_guard.metrics.collector import GuardMetrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CronJob:
    """A recurring background job."""

    handler: Callable[[], Awaitable[None]]
    period: float  # seconds
    name: str = ""


class TaskManager:
    """Manages asyncio-based cron jobs.

    Usage::

        tm = TaskManager(metrics=guard_metrics)
        tm.register("rate_limit_sweep", CronJob(handler=..., period=60))
        await tm.start()
        ...
        await tm.stop()
    """

    def __init__(self, *, metrics: GuardMetrics | None = None) -> None:
        self._jobs: dict[str, CronJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running = False
        self._metrics = metrics

    @property
    def is_running(self) -> bool:
        """Whether the task manager is currently running."""
        return self._running

    @property
    def jobs(self) -> dict[str, CronJob]:
        """Registered jobs (name → CronJob)."""
        return dict(self._jobs)

    def register(self, name: str, job: CronJob) -> None:
        """Register a cron job. Can be called before or after start().

        If the manager is already running the job is started immediately.
        """
        if job.period <= 0:
            msg = f"Cron job {name!r} needs a positive period"
            raise ValueError(msg)
        resolved = CronJob(handler=job.handler, period=job.period, name=name)
        previous = self._tasks.pop(name, None)
        if previous is not None:
            previous.cancel()
        self._jobs[name] = resolved
        if self._running:
            self._tasks[name] = asyncio.create_task(self._run_loop(resolved))

    async def run_now(self, name: str) -> None:
        """Execute a registered job once, immediately.

        Raises:
            KeyError: If no job is registered under *name*.
        """
        job = self._jobs[name]
        await self._execute(job)

    async def start(self) -> None:
        """Start all registered cron jobs."""
        if self._running:
            return
        self._running = True
        for name, job in self._jobs.items():
            self._tasks[name] = asyncio.create_task(self._run_loop(job))
        logger.info("TaskManager started with %d jobs", len(self._jobs))

    async def stop(self) -> None:
        """Cancel all running jobs and wait for cleanup."""
        if not self._running:
            return
        self._running = False
        for task in self._tasks.values():
            task.cancel()
        results = await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        for r in results:
            if isinstance(r, Exception) and not isinstance(r, asyncio.CancelledError):
                logger.error("Task error during shutdown: %s", r)
        self._tasks.clear()
        logger.info("TaskManager stopped")

    async def _execute(self, job: CronJob) -> None:
        name = job.name or "unnamed"
        if self._metrics:
            with self._metrics.track_cron(name):
                await job.handler()
        else:
            await job.handler()

    async def _run_loop(self, job: CronJob) -> None:
        """Repeatedly execute *job* every *job.period* seconds."""
        name = job.name or "unnamed"
        while self._running:
            try:
                await asyncio.sleep(job.period)
                if not self._running:
                    break
                await self._execute(job)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Cron job %r failed", name)
