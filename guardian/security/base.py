"""
Guardian -- Detector Base

Every periodic detector shares the same plumbing: an injected reporter, an
optional store, an injectable clock, a non-reentrant check cycle, and
best-effort persistence that logs instead of raising.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Coroutine

import structlog

from guardian.primitives.common import utc_now

if TYPE_CHECKING:
    from guardian.clients.store import SecurityStore
    from guardian.security.types import SecurityEvent, SecurityReporter

logger = structlog.get_logger()

Clock = Callable[[], datetime]


class BaseDetector(ABC):
    """
    Strategy base class for all Guardian detectors.

    Contract:
    - ``detector_name`` is a stable identifier used for logging, scheduling
      and status output.
    - ``_cycle`` performs one full check. It is only ever entered through
      ``run_cycle``, which refuses to start while a previous cycle is still
      in flight and never lets an exception escape.
    - Detectors share no mutable state with each other. Everything they
      learn leaves through the reporter.
    """

    def __init__(
        self,
        report: SecurityReporter,
        store: SecurityStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._report = report
        self._store = store
        self._clock = clock
        self._cycle_running = False
        self._cycles_completed = 0
        self._cycles_skipped = 0
        self._cycle_errors = 0
        self._last_cycle_at: datetime | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._logger = logger.bind(system="guardian", component=self.detector_name)

    @property
    @abstractmethod
    def detector_name(self) -> str:
        ...

    @abstractmethod
    async def _cycle(self) -> None:
        ...

    # ─── Cycle Guard ──────────────────────────────────────────────

    async def run_cycle(self) -> bool:
        """
        Run one check cycle unless one is already running.

        Returns False if the cycle was skipped. Never raises.
        """
        if self._cycle_running:
            self._cycles_skipped += 1
            self._logger.debug("cycle_skipped_overlap")
            return False

        self._cycle_running = True
        try:
            await self._cycle()
            self._cycles_completed += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._cycle_errors += 1
            self._logger.error("cycle_failed", error=str(exc), exc_info=True)
        finally:
            self._cycle_running = False
            self._last_cycle_at = self._clock()
        return True

    # ─── Reporting ────────────────────────────────────────────────

    async def _emit(self, event: SecurityEvent) -> None:
        try:
            await self._report(event)
        except Exception as exc:
            self._logger.warning("report_failed", title=event.title, error=str(exc))

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> bool:
        """
        Fire-and-forget. Holds a reference until the task finishes.
        Returns False when there is no running loop and the work was dropped.
        """
        try:
            task = asyncio.get_running_loop().create_task(coro, name=f"{self.detector_name}:{name}")
        except RuntimeError:
            coro.close()
            self._logger.warning("background_task_dropped_no_loop", task=name)
            return False
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return True

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("background_task_failed", task=task.get_name(), error=str(exc))

    async def drain(self) -> None:
        """Wait for in-flight fire-and-forget work."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _best_effort(self, what: str, op: Callable[[], Awaitable[Any]]) -> Any:
        """Run a store write/read. Failures are logged and return None."""
        if self._store is None:
            return None
        try:
            return await op()
        except Exception as exc:
            self._logger.warning(f"{what}_failed", error=str(exc))
            return None

    # ─── Status ───────────────────────────────────────────────────

    def _cycle_stats(self) -> dict[str, Any]:
        return {
            "cycles_completed": self._cycles_completed,
            "cycles_skipped": self._cycles_skipped,
            "cycle_errors": self._cycle_errors,
            "last_cycle_at": self._last_cycle_at.isoformat() if self._last_cycle_at else None,
        }
