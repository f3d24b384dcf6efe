"""
Guardian -- Agent Watchdog

Behavioral profiling and containment for the agent fleet.

Each cycle refreshes heartbeat and message-traffic data from the store,
scores every active profiled agent against its static baseline, and drives
a two-state machine per agent:

    ACTIVE ──(score >= quarantine threshold)──> QUARANTINED
    QUARANTINED ──(auto-release deadline | manual release)──> ACTIVE

Quarantine happens inline with detection, not through the event path: the
registry flag that stops the supervisor restarting the agent is written
before the event is reported. A quarantined agent is not re-scored until
it is released.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from guardian.primitives.common import utc_now
from guardian.security.base import BaseDetector, Clock
from guardian.security.types import (
    AgentBehavior,
    AgentProfile,
    SecurityCategory,
    SecurityEvent,
    SecuritySeverity,
)

if TYPE_CHECKING:
    from guardian.clients.store import SecurityStore
    from guardian.config import AgentWatchdogConfig
    from guardian.security.types import SecurityReporter


# ─── Signal Weights ───────────────────────────────────────────────

_HEARTBEAT_DEAD = 3
_HEARTBEAT_DELAYED = 1
_STATUS_DEGRADED = 1
_STATUS_DEAD = 3
_MESSAGE_FLOOD = 3
_MESSAGE_HIGH = 1
_UNEXPECTED_TYPE = 2  # per type
_MEMORY_HIGH = 1

_FLOOD_FACTOR = 3.0
_HIGH_FACTOR = 1.5
_DELAY_FACTOR = 2.0


class AgentWatchdog(BaseDetector):
    def __init__(
        self,
        config: AgentWatchdogConfig,
        report: SecurityReporter,
        store: SecurityStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(report, store, clock)
        self._config = config
        self._profiles: dict[str, AgentProfile] = {p.agent_name: p for p in config.profiles}
        self._behaviors: dict[str, AgentBehavior] = {
            name: AgentBehavior(agent_name=name) for name in self._profiles
        }
        self._quarantine_duration = timedelta(seconds=config.quarantine_duration_s)
        self._total_checks = 0
        self._total_alerts = 0
        self._total_quarantines = 0
        self._total_releases = 0

    @property
    def detector_name(self) -> str:
        return "agent_watchdog"

    def behavior(self, agent_name: str) -> AgentBehavior | None:
        return self._behaviors.get(agent_name)

    def is_quarantined(self, agent_name: str) -> bool:
        behavior = self._behaviors.get(agent_name)
        return behavior.quarantined if behavior else False

    async def initialize(self) -> None:
        """Restore quarantines that outlived the previous process."""
        store = self._store
        restored = 0
        if store is not None:
            rows = await self._best_effort(
                "active_quarantines_load", store.fetch_active_quarantines
            )
            for row in rows or []:
                behavior = self._behaviors.get(row["agent_name"])
                if behavior is None:
                    continue
                behavior.quarantined = True
                behavior.quarantined_at = row.get("quarantined_at")
                behavior.quarantine_reason = row.get("reason") or ""
                behavior.auto_release_at = row.get("auto_release_at")
                restored += 1

        self._logger.info(
            "agent_watchdog_initialized",
            agents=len(self._profiles),
            restored_quarantines=restored,
        )

    # ─── Check Cycle ──────────────────────────────────────────────

    async def _cycle(self) -> None:
        await self.check()

    async def check(self) -> None:
        self._total_checks += 1
        await self._refresh_heartbeats()
        await self._refresh_message_volumes()
        await self._analyze_all()
        await self.release_expired()

    async def _refresh_heartbeats(self) -> None:
        store = self._store
        if store is None:
            return
        rows = await self._best_effort("heartbeat_fetch", store.fetch_agent_heartbeats)
        for row in rows or []:
            behavior = self._behaviors.get(row.get("agent_name"))
            if behavior is None:
                continue
            behavior.last_beat = row.get("last_beat")
            behavior.status = row.get("status") or "unknown"
            behavior.memory_mb = float(row.get("memory_mb") or 0)

    async def _refresh_message_volumes(self) -> None:
        store = self._store
        if store is None:
            return
        window = timedelta(seconds=self._config.message_window_s)
        rows = await self._best_effort(
            "message_volume_fetch", lambda: store.fetch_message_volumes(window)
        )
        if rows is None:
            return

        seen: set[str] = set()
        for row in rows:
            behavior = self._behaviors.get(row.get("from_agent"))
            if behavior is None:
                continue
            seen.add(behavior.agent_name)
            behavior.message_count = int(row.get("msg_count") or 0)
            behavior.recipients = set(row.get("recipients") or [])
            behavior.message_types = set(row.get("message_types") or [])

        # Silent agents sent nothing this window
        for name, behavior in self._behaviors.items():
            if name not in seen:
                behavior.message_count = 0
                behavior.recipients = set()
                behavior.message_types = set()

    async def _analyze_all(self) -> None:
        now = self._clock()
        for name, behavior in self._behaviors.items():
            if behavior.quarantined:
                continue

            score, anomalies = self.score(self._profiles[name], behavior, now)
            behavior.anomaly_score = score
            behavior.anomalies = anomalies

            if score >= self._config.quarantine_threshold:
                await self.quarantine_agent(name, anomalies)
            elif score >= self._config.warn_threshold:
                self._total_alerts += 1
                await self._emit(
                    SecurityEvent(
                        category=SecurityCategory.AGENT,
                        severity=SecuritySeverity.WARNING,
                        title=f"Behavioral anomaly: {name}",
                        details={
                            "agent_name": name,
                            "anomaly_score": score,
                            "anomalies": anomalies,
                            "message_count": behavior.message_count,
                            "status": behavior.status,
                            "memory_mb": behavior.memory_mb,
                        },
                        timestamp=now,
                    )
                )

    def score(
        self, profile: AgentProfile, behavior: AgentBehavior, now: datetime
    ) -> tuple[int, list[str]]:
        """
        Sum every signal that fires. Signals are independent: a dead
        heartbeat is also a delayed one, and a flood is also high volume.

        Consequence: a crashed agent (dead heartbeat plus ``status == "dead"``)
        scores 3 + 1 + 3 = 7 and is quarantined rather than warned about. The
        same holds for an agent auto-released while it is still down: it is
        quarantined again on the next check.
        """
        cfg = self._config
        score = 0
        anomalies: list[str] = []

        if behavior.last_beat is not None:
            age = (now - behavior.last_beat).total_seconds()
            if age >= cfg.dead_agent_s:
                score += _HEARTBEAT_DEAD
                anomalies.append(f"No heartbeat for {round(age)}s")
            if age > profile.expected_beat_interval_s * _DELAY_FACTOR:
                score += _HEARTBEAT_DELAYED
                anomalies.append(f"Delayed heartbeat: {round(age)}s")

        if behavior.status == "degraded":
            score += _STATUS_DEGRADED
            anomalies.append("Agent in degraded state")
        elif behavior.status == "dead":
            score += _STATUS_DEAD
            anomalies.append("Agent reported as dead")

        count = behavior.message_count
        window_min = round(cfg.message_window_s / 60)
        if count > profile.max_messages_per_window * _FLOOD_FACTOR:
            score += _MESSAGE_FLOOD
            anomalies.append(f"Message flood: {count} msgs in {window_min}m")
        if count > profile.max_messages_per_window * _HIGH_FACTOR:
            score += _MESSAGE_HIGH
            anomalies.append(f"High message volume: {count} msgs in {window_min}m")

        for msg_type in sorted(behavior.message_types - profile.expected_types):
            score += _UNEXPECTED_TYPE
            anomalies.append(f"Unexpected message type: {msg_type}")

        if behavior.memory_mb > cfg.memory_ceiling_mb:
            score += _MEMORY_HIGH
            anomalies.append(f"High memory: {behavior.memory_mb:.0f}MB")

        return score, anomalies

    # ─── Quarantine State Machine ─────────────────────────────────

    async def quarantine_agent(
        self, agent_name: str, reasons: list[str], quarantined_by: str = "guardian"
    ) -> bool:
        """
        ACTIVE -> QUARANTINED. Returns False (and does nothing) if the agent
        is unknown or already quarantined.
        """
        behavior = self._behaviors.get(agent_name)
        if behavior is None or behavior.quarantined:
            return False

        now = self._clock()
        reason = "; ".join(reasons) or "manual"
        behavior.quarantined = True
        behavior.quarantined_at = now
        behavior.quarantine_reason = reason
        behavior.auto_release_at = now + self._quarantine_duration
        self._total_quarantines += 1

        store = self._store
        if store is not None:
            auto_release_at = behavior.auto_release_at
            await self._best_effort(
                "quarantine_persist",
                lambda: store.upsert_quarantine(
                    agent_name, reason, auto_release_at, now, quarantined_by=quarantined_by
                ),
            )
            await self._best_effort(
                "registry_disable", lambda: store.set_agent_enabled(agent_name, False)
            )

        self._logger.warning("agent_quarantined", agent=agent_name, reasons=reasons)
        await self._emit(
            SecurityEvent(
                category=SecurityCategory.AGENT,
                severity=SecuritySeverity.CRITICAL,
                title=f"AGENT QUARANTINED: {agent_name}",
                details={
                    "agent_name": agent_name,
                    "reasons": reasons,
                    "anomaly_score": behavior.anomaly_score,
                    "quarantined_at": now.isoformat(),
                    "auto_release_at": behavior.auto_release_at.isoformat(),
                    "quarantined_by": quarantined_by,
                },
                auto_response="Agent disabled in registry, quarantine record created",
                timestamp=now,
            )
        )
        return True

    async def release_agent(self, agent_name: str, released_by: str = "manual") -> bool:
        """
        QUARANTINED -> ACTIVE. Returns False (and does nothing) if the agent
        is unknown or not quarantined, so releasing twice equals releasing once.
        """
        behavior = self._behaviors.get(agent_name)
        if behavior is None or not behavior.quarantined:
            return False

        now = self._clock()
        behavior.quarantined = False
        behavior.quarantined_at = None
        behavior.quarantine_reason = ""
        behavior.auto_release_at = None
        behavior.anomaly_score = 0
        behavior.anomalies = []
        self._total_releases += 1

        store = self._store
        if store is not None:
            await self._best_effort(
                "quarantine_release_persist",
                lambda: store.mark_quarantine_released(agent_name, released_by, now),
            )
            await self._best_effort(
                "registry_enable", lambda: store.set_agent_enabled(agent_name, True)
            )

        self._logger.info("agent_released", agent=agent_name, released_by=released_by)
        await self._emit(
            SecurityEvent(
                category=SecurityCategory.AGENT,
                severity=SecuritySeverity.INFO,
                title=f"Agent released: {agent_name}",
                details={"agent_name": agent_name, "released_by": released_by},
                timestamp=now,
            )
        )
        return True

    async def release_expired(self) -> list[str]:
        """Release every quarantine whose auto-release deadline has passed."""
        now = self._clock()
        due = [
            name
            for name, b in self._behaviors.items()
            if b.quarantined and b.auto_release_at is not None and b.auto_release_at <= now
        ]
        released = []
        for name in due:
            if await self.release_agent(name, released_by="auto-timer"):
                released.append(name)
        return released

    # ─── Status ───────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        agents: dict[str, Any] = {}
        for name, b in self._behaviors.items():
            agents[name] = {
                "state": str(b.state),
                "status": b.status,
                "anomaly_score": b.anomaly_score,
                "message_count": b.message_count,
                "memory_mb": b.memory_mb,
                "last_beat": b.last_beat.isoformat() if b.last_beat else None,
                "auto_release_at": b.auto_release_at.isoformat() if b.auto_release_at else None,
            }
        return {
            "agents_monitored": len(self._behaviors),
            "agents": agents,
            "quarantined": sorted(n for n, b in self._behaviors.items() if b.quarantined),
            "total_checks": self._total_checks,
            "total_alerts": self._total_alerts,
            "total_quarantines": self._total_quarantines,
            "total_releases": self._total_releases,
            **self._cycle_stats(),
        }
