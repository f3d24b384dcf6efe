"""
Tests for the Agent Watchdog.

Covers:
  - Anomaly scoring (independent, cumulative signals)
  - Warning vs quarantine thresholds
  - Quarantine state machine: idempotence, manual and timed release
  - Quarantined agents are not re-scored
  - Restore of persisted quarantines
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from guardian.config import AgentWatchdogConfig
from guardian.security.agent_watchdog import AgentWatchdog
from guardian.security.types import (
    AgentBehavior,
    AgentProfile,
    AgentState,
    SecurityCategory,
    SecuritySeverity,
)


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _make_store(
    heartbeats: list[dict] | None = None,
    volumes: list[dict] | None = None,
    active_quarantines: list[dict] | None = None,
) -> MagicMock:
    store = MagicMock()
    store.fetch_agent_heartbeats = AsyncMock(return_value=heartbeats or [])
    store.fetch_message_volumes = AsyncMock(return_value=volumes or [])
    store.fetch_active_quarantines = AsyncMock(return_value=active_quarantines or [])
    store.upsert_quarantine = AsyncMock()
    store.mark_quarantine_released = AsyncMock()
    store.set_agent_enabled = AsyncMock()
    return store


def _make_watchdog(
    store: MagicMock | None = None, clock: _Clock | None = None
) -> tuple[AgentWatchdog, AsyncMock, _Clock]:
    clock = clock or _Clock()
    report = AsyncMock()
    watchdog = AgentWatchdog(AgentWatchdogConfig(), report, store=store, clock=clock)
    return watchdog, report, clock


def _flooding_guardian(clock: _Clock) -> MagicMock:
    """nova-guardian (cap 20) with 65 messages and a heartbeat 400s old."""
    return _make_store(
        heartbeats=[
            {
                "agent_name": "nova-guardian",
                "status": "running",
                "last_beat": clock.now - timedelta(seconds=400),
                "memory_mb": 256,
            }
        ],
        volumes=[
            {
                "from_agent": "nova-guardian",
                "msg_count": 65,
                "recipients": ["nova"],
                "message_types": ["alert"],
            }
        ],
    )


# ─── Scoring ──────────────────────────────────────────────────────


class TestScore:
    def _score(self, **behavior_fields) -> tuple[int, list[str]]:
        watchdog, _, clock = _make_watchdog()
        profile = AgentProfile(
            agent_name="nova-test",
            max_messages_per_window=20,
            expected_types=frozenset({"report", "heartbeat"}),
        )
        behavior = AgentBehavior(agent_name="nova-test", **behavior_fields)
        return watchdog.score(profile, behavior, clock.now)

    def test_quiet_agent_scores_zero(self):
        score, anomalies = self._score(status="running", message_count=5)
        assert score == 0
        assert anomalies == []

    def test_flood_also_counts_as_high_volume(self):
        score, anomalies = self._score(message_count=65)
        assert score == 4
        assert any("Message flood" in a for a in anomalies)
        assert any("High message volume" in a for a in anomalies)

    def test_high_volume_only(self):
        score, _ = self._score(message_count=35)
        assert score == 1

    def test_dead_heartbeat_also_delayed(self):
        now = _Clock().now
        score, _ = self._score(last_beat=now - timedelta(seconds=400))
        assert score == 4

    def test_delayed_heartbeat_only(self):
        now = _Clock().now
        score, anomalies = self._score(last_beat=now - timedelta(seconds=250))
        assert score == 1
        assert anomalies == ["Delayed heartbeat: 250s"]

    def test_reported_status(self):
        assert self._score(status="degraded")[0] == 1
        assert self._score(status="dead")[0] == 3

    def test_each_unexpected_type_counts(self):
        score, anomalies = self._score(message_types={"report", "trade", "transfer"})
        assert score == 4
        assert anomalies == [
            "Unexpected message type: trade",
            "Unexpected message type: transfer",
        ]

    def test_memory_ceiling(self):
        assert self._score(memory_mb=2048.0)[0] == 1

    def test_no_heartbeat_data_is_not_an_anomaly(self):
        assert self._score(last_beat=None)[0] == 0

    def test_crashed_agent_reaches_quarantine_threshold(self):
        now = _Clock().now
        score, anomalies = self._score(status="dead", last_beat=now - timedelta(seconds=400))
        assert score == 7
        assert anomalies == [
            "No heartbeat for 400s",
            "Delayed heartbeat: 400s",
            "Agent reported as dead",
        ]


# ─── Check Cycle ──────────────────────────────────────────────────


class TestCheck:
    @pytest.mark.asyncio
    async def test_flood_with_dead_heartbeat_quarantines(self):
        clock = _Clock()
        store = _flooding_guardian(clock)
        watchdog, report, _ = _make_watchdog(store=store, clock=clock)

        await watchdog.check()

        assert watchdog.is_quarantined("nova-guardian") is True
        assert watchdog.behavior("nova-guardian").anomaly_score == 8
        assert watchdog.behavior("nova-guardian").state == AgentState.QUARANTINED

        report.assert_awaited_once()
        event = report.await_args.args[0]
        assert event.category == SecurityCategory.AGENT
        assert event.severity == SecuritySeverity.CRITICAL
        assert event.title == "AGENT QUARANTINED: nova-guardian"

        store.upsert_quarantine.assert_awaited_once()
        store.set_agent_enabled.assert_awaited_once_with("nova-guardian", False)

    @pytest.mark.asyncio
    async def test_crashed_agent_quarantined_again_after_auto_release(self):
        clock = _Clock()
        store = _make_store()

        def crashed_scout() -> list[dict]:
            return [
                {
                    "agent_name": "nova-scout",
                    "status": "dead",
                    "last_beat": clock.now - timedelta(seconds=400),
                    "memory_mb": 0,
                }
            ]

        store.fetch_agent_heartbeats = AsyncMock(side_effect=crashed_scout)
        watchdog, _, _ = _make_watchdog(store=store, clock=clock)

        await watchdog.check()
        assert watchdog.is_quarantined("nova-scout") is True
        assert watchdog.behavior("nova-scout").anomaly_score == 7

        # Auto-release fires at the end of this check; the agent is still down.
        clock.advance(hours=1, seconds=1)
        await watchdog.check()
        assert watchdog.is_quarantined("nova-scout") is False

        await watchdog.check()
        assert watchdog.is_quarantined("nova-scout") is True

    @pytest.mark.asyncio
    async def test_quarantined_agent_not_rescored(self):
        clock = _Clock()
        store = _flooding_guardian(clock)
        watchdog, report, _ = _make_watchdog(store=store, clock=clock)
        await watchdog.check()

        store.fetch_message_volumes.return_value = [
            {"from_agent": "nova-guardian", "msg_count": 500, "recipients": [], "message_types": ["x", "y"]}
        ]
        clock.advance(seconds=60)
        await watchdog.check()

        assert watchdog.behavior("nova-guardian").anomaly_score == 8
        assert report.await_count == 1
        store.upsert_quarantine.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_warning_below_quarantine_threshold(self):
        store = _make_store(
            heartbeats=[{"agent_name": "nova-scout", "status": "degraded", "last_beat": None}],
            volumes=[
                {"from_agent": "nova-scout", "msg_count": 4, "recipients": ["nova"], "message_types": ["trade"]}
            ],
        )
        watchdog, report, _ = _make_watchdog(store=store)
        await watchdog.check()

        assert watchdog.is_quarantined("nova-scout") is False
        report.assert_awaited_once()
        event = report.await_args.args[0]
        assert event.severity == SecuritySeverity.WARNING
        assert event.title == "Behavioral anomaly: nova-scout"
        assert event.details["anomaly_score"] == 3

    @pytest.mark.asyncio
    async def test_silent_agents_zeroed(self):
        store = _make_store(
            volumes=[{"from_agent": "nova-scout", "msg_count": 10, "recipients": [], "message_types": []}]
        )
        watchdog, _, _ = _make_watchdog(store=store)
        await watchdog.check()
        assert watchdog.behavior("nova-scout").message_count == 10

        store.fetch_message_volumes.return_value = []
        await watchdog.check()
        assert watchdog.behavior("nova-scout").message_count == 0

    @pytest.mark.asyncio
    async def test_unknown_agents_ignored(self):
        store = _make_store(
            heartbeats=[{"agent_name": "rogue", "status": "dead", "last_beat": None}],
            volumes=[{"from_agent": "rogue", "msg_count": 999, "recipients": [], "message_types": []}],
        )
        watchdog, report, _ = _make_watchdog(store=store)
        await watchdog.check()
        assert watchdog.behavior("rogue") is None
        report.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_store_read_failure_is_not_fatal(self):
        store = _make_store()
        store.fetch_agent_heartbeats.side_effect = RuntimeError("db down")
        watchdog, _, _ = _make_watchdog(store=store)
        assert await watchdog.run_cycle() is True
        assert watchdog.status()["cycle_errors"] == 0


# ─── Quarantine State Machine ─────────────────────────────────────


class TestQuarantineStateMachine:
    @pytest.mark.asyncio
    async def test_quarantine_is_idempotent(self):
        watchdog, report, _ = _make_watchdog()
        assert await watchdog.quarantine_agent("nova-cfo", ["manual check"]) is True
        assert await watchdog.quarantine_agent("nova-cfo", ["again"]) is False
        assert report.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_agent_cannot_be_quarantined(self):
        watchdog, _, _ = _make_watchdog()
        assert await watchdog.quarantine_agent("ghost", ["x"]) is False
        assert watchdog.is_quarantined("ghost") is False

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self):
        store = _make_store()
        watchdog, report, _ = _make_watchdog(store=store)
        await watchdog.quarantine_agent("nova-cfo", ["x"])

        assert await watchdog.release_agent("nova-cfo") is True
        assert await watchdog.release_agent("nova-cfo") is False

        assert watchdog.is_quarantined("nova-cfo") is False
        store.mark_quarantine_released.assert_awaited_once()
        store.set_agent_enabled.assert_awaited_with("nova-cfo", True)

        released = report.await_args.args[0]
        assert released.severity == SecuritySeverity.INFO
        assert released.title == "Agent released: nova-cfo"
        assert released.details["released_by"] == "manual"

    @pytest.mark.asyncio
    async def test_auto_release_after_deadline(self):
        watchdog, report, clock = _make_watchdog()
        await watchdog.quarantine_agent("nova-launcher", ["x"])

        clock.advance(seconds=3599)
        assert await watchdog.release_expired() == []
        assert watchdog.is_quarantined("nova-launcher") is True

        clock.advance(seconds=2)
        assert await watchdog.release_expired() == ["nova-launcher"]
        assert watchdog.is_quarantined("nova-launcher") is False
        assert report.await_args.args[0].details["released_by"] == "auto-timer"

    @pytest.mark.asyncio
    async def test_check_cycle_runs_auto_release(self):
        watchdog, _, clock = _make_watchdog(store=_make_store())
        await watchdog.quarantine_agent("nova-analyst", ["x"])
        clock.advance(hours=2)
        await watchdog.check()
        assert watchdog.is_quarantined("nova-analyst") is False

    @pytest.mark.asyncio
    async def test_release_resets_score(self):
        clock = _Clock()
        watchdog, _, _ = _make_watchdog(store=_flooding_guardian(clock), clock=clock)
        await watchdog.check()
        await watchdog.release_agent("nova-guardian")
        behavior = watchdog.behavior("nova-guardian")
        assert behavior.anomaly_score == 0
        assert behavior.auto_release_at is None

    @pytest.mark.asyncio
    async def test_restores_persisted_quarantines(self):
        clock = _Clock()
        store = _make_store(
            active_quarantines=[
                {
                    "agent_name": "nova-community",
                    "quarantined_at": clock.now - timedelta(minutes=5),
                    "reason": "Message flood",
                    "auto_release_at": clock.now + timedelta(minutes=55),
                },
                {"agent_name": "retired-agent", "reason": "old"},
            ]
        )
        watchdog, _, _ = _make_watchdog(store=store, clock=clock)
        await watchdog.initialize()

        assert watchdog.is_quarantined("nova-community") is True
        assert watchdog.behavior("nova-community").quarantine_reason == "Message flood"
        assert watchdog.status()["quarantined"] == ["nova-community"]
