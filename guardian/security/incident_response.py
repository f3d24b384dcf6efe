"""
Guardian -- Incident Response

The single ingress point for every detector's events.

Pipeline per event:
  1. persist (best-effort, append-only)
  2. fold into the active incident for ``category:title-prefix``, raising
     its severity to the worst seen
  3. escalation rules: N events of the trigger severity inside a window
     escalate the incident once; escalation alerts bypass cooldown
  4. alerting: per-(category, severity) cooldown; critical and emergency go
     to the operator callback, warning and above are logged

``report`` is the hand-off detectors call. While the consumer task is
running it only enqueues, so detector latency never includes alert
delivery. Incident mutation is serialised by one lock.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

from guardian.primitives.common import utc_now
from guardian.security.types import (
    EscalationRule,
    Incident,
    SecurityEvent,
    SecuritySeverity,
    max_severity,
)

if TYPE_CHECKING:
    from guardian.clients.store import SecurityStore
    from guardian.config import IncidentResponseConfig

logger = structlog.get_logger()

AdminAlertFn = Callable[[str, SecuritySeverity], Awaitable[None]]
ChannelPostFn = Callable[[str], Awaitable[None]]

_SEVERITY_ICON: dict[str, str] = {
    SecuritySeverity.INFO: "ℹ️",
    SecuritySeverity.WARNING: "⚠️",
    SecuritySeverity.CRITICAL: "🚨",
    SecuritySeverity.EMERGENCY: "🆘",
}

# Detail keys worth surfacing in an operator alert, in display order.
_ALERT_DETAIL_KEYS = (
    "wallet_label",
    "wallet_address",
    "dropped",
    "drop_percent",
    "agent_name",
    "anomaly_score",
    "url",
    "service",
    "threat_count",
    "message",
)

_ADMIN_SEVERITIES = frozenset({SecuritySeverity.CRITICAL, SecuritySeverity.EMERGENCY})


@dataclass
class AlertCallbacks:
    """Outbound notification hooks. Transport lives elsewhere."""

    on_admin_alert: AdminAlertFn | None = None
    on_channel_post: ChannelPostFn | None = None


def incident_key(event: SecurityEvent) -> str:
    return f"{event.category}:{event.title.split(':')[0].strip()}"


class IncidentResponse:
    def __init__(
        self,
        config: IncidentResponseConfig,
        store: SecurityStore | None = None,
        callbacks: AlertCallbacks | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._store = store
        self._callbacks = callbacks or AlertCallbacks()
        self._clock = clock
        self._rules: list[EscalationRule] = list(config.escalation_rules)
        self._cooldowns = {
            SecuritySeverity(k): timedelta(seconds=v) for k, v in config.cooldowns_s.items()
        }
        self._expiry = timedelta(seconds=config.expiry_s)

        self._incidents: dict[str, Incident] = {}
        self._last_alert: dict[tuple[str, str], datetime] = {}
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[SecurityEvent] | None = None
        self._consumer: asyncio.Task[None] | None = None

        self._total_events = 0
        self._total_incidents = 0
        self._total_escalations = 0
        self._alerts_sent = 0
        self._alerts_suppressed = 0
        self._alert_failures = 0
        self._dropped_events = 0

        self._logger = logger.bind(system="guardian", component="incident_response")

    def set_callbacks(self, callbacks: AlertCallbacks) -> None:
        self._callbacks = callbacks

    # ─── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            return
        self._queue = asyncio.Queue(maxsize=self._config.queue_size)
        self._consumer = asyncio.create_task(self._consume(), name="incident_response:consumer")
        self._logger.info("incident_response_started")

    async def stop(self) -> None:
        """Drain what is already queued, then stop the consumer."""
        if self._queue is not None and self._consumer is not None and not self._consumer.done():
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self._config.alert_timeout_s)
            except asyncio.TimeoutError:
                self._logger.warning("incident_queue_drain_timeout", pending=self._queue.qsize())
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
        self._consumer = None
        self._queue = None
        self._logger.info("incident_response_stopped")

    async def flush(self) -> None:
        """Wait until every queued event has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def _consume(self) -> None:
        assert self._queue is not None
        queue = self._queue
        while True:
            event = await queue.get()
            try:
                await self.handle_event(event)
            finally:
                queue.task_done()

    # ─── Ingress ──────────────────────────────────────────────────

    async def report(self, event: SecurityEvent) -> None:
        """
        The reporter handed to every detector. Enqueues when the consumer is
        running, otherwise handles inline. Never raises.
        """
        queue = self._queue
        if queue is not None and self._consumer is not None and not self._consumer.done():
            try:
                queue.put_nowait(event)
                return
            except asyncio.QueueFull:
                self._dropped_events += 1
                self._logger.warning("incident_queue_full_inline", title=event.title)
        await self.handle_event(event)

    async def handle_event(self, event: SecurityEvent) -> Incident | None:
        """Process one event end to end. Never raises."""
        try:
            async with self._lock:
                return await self._handle(event)
        except Exception as exc:
            self._logger.error("incident_handle_failed", title=event.title, error=str(exc), exc_info=True)
            return None

    async def _handle(self, event: SecurityEvent) -> Incident:
        self._total_events += 1
        now = self._clock()

        await self._persist(event)

        key = incident_key(event)
        incident = self._incidents.get(key)
        if incident is None:
            incident = Incident(
                key=key,
                category=event.category,
                severity=event.severity,
                title=event.title,
                first_seen=now,
                last_seen=now,
            )
            self._incidents[key] = incident
            self._total_incidents += 1

        incident.events.append(event)
        incident.received_at.append(now)
        incident.last_seen = now
        incident.severity = max_severity(incident.severity, event.severity)

        await self._check_escalation(incident, now)
        await self._alert_if_needed(event, incident, now)
        return incident

    async def _persist(self, event: SecurityEvent) -> None:
        if self._store is None:
            return
        try:
            await self._store.log_security_event(event)
        except Exception as exc:
            self._logger.warning("security_event_persist_failed", title=event.title, error=str(exc))

    # ─── Escalation ───────────────────────────────────────────────

    def count_in_window(
        self, incident: Incident, severity: SecuritySeverity, window: timedelta, now: datetime
    ) -> int:
        return sum(
            1
            for ev, at in zip(incident.events, incident.received_at)
            if ev.severity == severity and now - at <= window
        )

    async def _check_escalation(self, incident: Incident, now: datetime) -> None:
        if incident.escalated:
            return

        for rule in self._rules:
            if incident.severity != rule.trigger_severity:
                continue
            window = timedelta(minutes=rule.window_minutes)
            count = self.count_in_window(incident, rule.trigger_severity, window, now)
            if count < rule.count_threshold:
                continue

            incident.escalated = True
            incident.severity = max_severity(incident.severity, rule.escalate_to)
            self._total_escalations += 1

            escalation = SecurityEvent(
                category=incident.category,
                severity=rule.escalate_to,
                title=f"ESCALATED: {incident.title}",
                details={
                    "incident_id": incident.id,
                    "original_severity": str(rule.trigger_severity),
                    "escalated_to": str(rule.escalate_to),
                    "event_count": count,
                    "window_minutes": rule.window_minutes,
                    "message": (
                        f"{count} {rule.trigger_severity} events in {rule.window_minutes:g}m, "
                        f"escalated to {rule.escalate_to}"
                    ),
                },
                auto_response="Incident escalated",
                timestamp=now,
            )
            self._logger.warning(
                "incident_escalated",
                incident_id=incident.id,
                key=incident.key,
                to=str(rule.escalate_to),
                count=count,
            )
            await self._persist(escalation)
            await self._send_alert(escalation, incident)
            return

    # ─── Alerting ─────────────────────────────────────────────────

    async def _alert_if_needed(self, event: SecurityEvent, incident: Incident, now: datetime) -> None:
        if event.severity == SecuritySeverity.INFO:
            self._logger.debug("security_event_info", title=event.title)
            return

        cooldown_key = (str(event.category), str(event.severity))
        last = self._last_alert.get(cooldown_key)
        cooldown = self._cooldowns.get(event.severity, timedelta(0))
        if last is not None and now - last < cooldown:
            self._alerts_suppressed += 1
            self._logger.debug("alert_suppressed_cooldown", title=event.title, severity=str(event.severity))
            return

        self._last_alert[cooldown_key] = now
        await self._send_alert(event, incident)

    async def _send_alert(self, event: SecurityEvent, incident: Incident) -> None:
        self._alerts_sent += 1
        self._logger.warning(
            "security_alert",
            severity=str(event.severity),
            title=event.title,
            incident_id=incident.id,
        )

        if event.severity not in _ADMIN_SEVERITIES:
            return
        callback = self._callbacks.on_admin_alert
        if callback is None:
            return

        message = self.format_alert_message(event, incident)
        try:
            await asyncio.wait_for(callback(message, event.severity), timeout=self._config.alert_timeout_s)
        except asyncio.TimeoutError:
            self._alert_failures += 1
            self._logger.warning("admin_alert_timeout", title=event.title)
        except Exception as exc:
            self._alert_failures += 1
            self._logger.warning("admin_alert_failed", title=event.title, error=str(exc))

    def format_alert_message(self, event: SecurityEvent, incident: Incident) -> str:
        lines = [
            f"{_SEVERITY_ICON[event.severity]} SECURITY {str(event.severity).upper()}",
            "",
            event.title,
        ]
        for key in _ALERT_DETAIL_KEYS:
            if event.details.get(key) is not None:
                lines.append(f"• {key}: {event.details[key]}")
        if event.auto_response:
            lines.extend(["", f"Auto-response: {event.auto_response}"])
        if len(incident.events) > 1:
            lines.extend(["", f"Part of incident {incident.id} ({len(incident.events)} events)"])
        return "\n".join(lines)

    # ─── Incident Management ──────────────────────────────────────

    async def cleanup(self) -> int:
        """Resolve and evict incidents idle longer than the expiry window."""
        now = self._clock()
        async with self._lock:
            stale = [k for k, inc in self._incidents.items() if now - inc.last_seen > self._expiry]
            for key in stale:
                self._incidents.pop(key).resolved = True
        if stale:
            self._logger.info("incidents_resolved", count=len(stale))
        return len(stale)

    def get_incident(self, key: str) -> Incident | None:
        return self._incidents.get(key)

    @property
    def active_incidents(self) -> list[Incident]:
        return list(self._incidents.values())

    def generate_report(self) -> str:
        if not self._incidents:
            return "✅ No active security incidents."

        now = self._clock()
        lines = ["🛡️ Security Status Report", ""]
        for severity in reversed(list(SecuritySeverity)):
            group = [inc for inc in self._incidents.values() if inc.severity == severity]
            if not group:
                continue
            lines.append(f"{str(severity).upper()} ({len(group)}):")
            for inc in group:
                age_min = round((now - inc.first_seen).total_seconds() / 60)
                lines.append(f"  • {inc.title} ({len(inc.events)} events, {age_min}m ago)")
            lines.append("")

        lines.append(
            f"Total events: {self._total_events} | Escalations: {self._total_escalations} "
            f"| Active incidents: {len(self._incidents)}"
        )
        return "\n".join(lines)

    async def publish_summary(self) -> bool:
        """Post the current report to the public channel, if one is wired."""
        callback = self._callbacks.on_channel_post
        if callback is None:
            return False
        try:
            await asyncio.wait_for(callback(self.generate_report()), timeout=self._config.alert_timeout_s)
            return True
        except asyncio.TimeoutError:
            self._logger.warning("channel_post_timeout")
        except Exception as exc:
            self._logger.warning("channel_post_failed", error=str(exc))
        return False

    # ─── Status ───────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return {
            "total_events": self._total_events,
            "total_incidents": self._total_incidents,
            "total_escalations": self._total_escalations,
            "alerts_sent": self._alerts_sent,
            "alerts_suppressed": self._alerts_suppressed,
            "alert_failures": self._alert_failures,
            "dropped_to_inline": self._dropped_events,
            "queue_depth": self._queue.qsize() if self._queue is not None else 0,
            "active_incidents": len(self._incidents),
            "incidents": [
                {
                    "id": inc.id,
                    "key": inc.key,
                    "category": str(inc.category),
                    "severity": str(inc.severity),
                    "title": inc.title,
                    "event_count": len(inc.events),
                    "first_seen": inc.first_seen.isoformat(),
                    "last_seen": inc.last_seen.isoformat(),
                    "escalated": inc.escalated,
                }
                for inc in self._incidents.values()
            ],
        }
