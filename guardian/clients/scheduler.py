"""
Guardian -- Detector Scheduler

Every periodic job (detector cycles, the content sweep, rate-anomaly checks,
incident cleanup) is registered here by name instead of owning a sleep loop.
One asyncio task per job, so a slow RPC poll never delays the watchdog and a
job never overlaps with itself.

    scheduler = DetectorScheduler()
    scheduler.register("wallet_sentinel", 120, sentinel.check)
    scheduler.register("incident_cleanup", 300, incidents.cleanup, run_immediately=False)
    await scheduler.start()
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Coroutine

import structlog

logger = structlog.get_logger("guardian.scheduler")

JobFn = Callable[[], Coroutine[Any, Any, Any]]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: float
    fn: JobFn
    run_immediately: bool = True

    run_count: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    last_error: str = ""
    last_duration_ms: float = 0.0
    handle: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self.handle is not None and not self.handle.done()

    def snapshot(self) -> dict[str, Any]:
        return {
            "interval_seconds": self.interval_seconds,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "consecutive_errors": self.consecutive_errors,
            "last_error": self.last_error,
            "last_duration_ms": self.last_duration_ms,
            "active": self.active,
        }


class DetectorScheduler:
    """
    Owns the background tasks for all periodic security jobs.

    ``sleep`` replaces ``asyncio.sleep`` between ticks; tests pass one that
    returns immediately a fixed number of times.
    """

    def __init__(self, sleep: SleepFn | None = None) -> None:
        self._sleep: SleepFn = sleep or asyncio.sleep
        self._jobs: dict[str, ScheduledJob] = {}
        self._running = False

    # ─── Registration ─────────────────────────────────────────────

    def register(
        self,
        name: str,
        interval_seconds: float,
        fn: JobFn,
        run_immediately: bool = True,
    ) -> None:
        """Add a job, replacing any job of the same name. Starts it at once when running."""
        self.unregister(name)
        job = ScheduledJob(
            name=name,
            interval_seconds=interval_seconds,
            fn=fn,
            run_immediately=run_immediately,
        )
        self._jobs[name] = job
        if self._running:
            self._spawn(job)
            logger.info("scheduler_job_registered_live", job=name, interval_s=interval_seconds)

    def unregister(self, name: str) -> None:
        job = self._jobs.pop(name, None)
        if job is None:
            return
        if job.active:
            job.handle.cancel()  # type: ignore[union-attr]
        logger.info("scheduler_job_unregistered", job=name)

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        for job in self._jobs.values():
            if not job.active:
                self._spawn(job)
        logger.info("scheduler_started", jobs=sorted(self._jobs))

    async def stop(self) -> None:
        self._running = False
        handles = [job.handle for job in self._jobs.values() if job.active]
        for handle in handles:
            handle.cancel()  # type: ignore[union-attr]
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        logger.info("scheduler_stopped", jobs=len(self._jobs))

    @property
    def running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "tasks": {name: job.snapshot() for name, job in self._jobs.items()},
        }

    # ─── Internals ────────────────────────────────────────────────

    def _spawn(self, job: ScheduledJob) -> None:
        job.handle = asyncio.create_task(self._loop(job), name=f"guardian:{job.name}")

    async def _loop(self, job: ScheduledJob) -> None:
        if not job.run_immediately:
            await self._sleep(job.interval_seconds)
        while True:
            await self._tick(job)
            await self._sleep(job.interval_seconds)

    async def _tick(self, job: ScheduledJob) -> None:
        started = time.monotonic()
        try:
            await job.fn()
        except Exception as exc:
            job.error_count += 1
            job.consecutive_errors += 1
            job.last_error = str(exc)
            logger.warning(
                "scheduler_job_failed",
                job=job.name,
                error=str(exc),
                consecutive_errors=job.consecutive_errors,
            )
            return
        finally:
            job.last_duration_ms = round((time.monotonic() - started) * 1000, 2)

        job.run_count += 1
        job.consecutive_errors = 0
