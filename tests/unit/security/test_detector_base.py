"""
Tests for BaseDetector.

Covers:
  - A cycle never overlaps itself
  - Cycle failures are counted, never raised
  - Fire-and-forget work without a running loop
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from guardian.security.base import BaseDetector


class _GatedDetector(BaseDetector):
    """A detector whose cycle waits on an event, or raises if told to."""

    def __init__(self, fail: bool = False) -> None:
        super().__init__(AsyncMock())
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.fail = fail
        self.cycles_entered = 0

    @property
    def detector_name(self) -> str:
        return "gated"

    async def _cycle(self) -> None:
        self.cycles_entered += 1
        self.entered.set()
        if self.fail:
            raise RuntimeError("rpc exploded")
        await self.gate.wait()


class TestCycleGuard:
    @pytest.mark.asyncio
    async def test_second_cycle_skipped_while_first_runs(self):
        detector = _GatedDetector()
        first = asyncio.create_task(detector.run_cycle())
        await detector.entered.wait()

        assert await detector.run_cycle() is False
        stats = detector._cycle_stats()
        assert stats["cycles_skipped"] == 1
        assert stats["cycles_completed"] == 0

        detector.gate.set()
        assert await first is True
        assert detector.cycles_entered == 1
        assert detector._cycle_stats()["cycles_completed"] == 1

    @pytest.mark.asyncio
    async def test_next_cycle_runs_after_first_finishes(self):
        detector = _GatedDetector()
        detector.gate.set()
        assert await detector.run_cycle() is True
        assert await detector.run_cycle() is True
        assert detector.cycles_entered == 2
        assert detector._cycle_stats()["cycles_skipped"] == 0

    @pytest.mark.asyncio
    async def test_failure_is_contained_and_releases_guard(self):
        detector = _GatedDetector(fail=True)
        assert await detector.run_cycle() is True
        assert await detector.run_cycle() is True
        stats = detector._cycle_stats()
        assert stats["cycle_errors"] == 2
        assert stats["last_cycle_at"] is not None


class TestSpawn:
    def test_without_loop_reports_dropped(self):
        detector = _GatedDetector()
        assert detector._spawn(asyncio.sleep(0), "noop") is False

    @pytest.mark.asyncio
    async def test_with_loop_tracks_task(self):
        detector = _GatedDetector()
        assert detector._spawn(asyncio.sleep(0), "noop") is True
        await detector.drain()
        assert not detector._background
