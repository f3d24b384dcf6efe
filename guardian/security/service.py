"""
Guardian -- Security Service

Owns the detector set and the incident responder, and drives the detector
cycles from one scheduler.

Wiring:
    detectors ──report──> IncidentResponse ──> store / admin / channel

Every detector receives ``IncidentResponse.report`` as its reporter, so the
event contract is the only coupling between them. Synchronous pass-throughs
(``scan_inbound``, ``scan_outbound``, ``record_request``,
``is_quarantined``) are exposed for in-process callers that sit on the
message path.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Mapping

import structlog

from guardian.clients.rpc import RpcClient
from guardian.clients.scheduler import DetectorScheduler
from guardian.errors import CommandError
from guardian.primitives.common import utc_now
from guardian.security.agent_watchdog import AgentWatchdog
from guardian.security.base import Clock
from guardian.security.content_filter import ContentFilter
from guardian.security.incident_response import AlertCallbacks, IncidentResponse
from guardian.security.network_shield import NetworkShield
from guardian.security.types import (
    ScanResult,
    SecurityCategory,
    SecurityEvent,
    SecuritySeverity,
)
from guardian.security.wallet_sentinel import WalletSentinel

if TYPE_CHECKING:
    from guardian.clients.store import SecurityStore
    from guardian.config import GuardianConfig

logger = structlog.get_logger()

COMMANDS = ("status", "report", "scan", "release", "check_secrets")
_MAX_EVENT_HISTORY = 500


class GuardianService:
    """
    The security layer for the agent fleet.

    Lifecycle:
        service = GuardianService(config, store=store)
        await service.initialize()   # builds detectors, starts scheduler
        ...
        await service.shutdown()
    """

    system_id: str = "guardian"

    def __init__(
        self,
        config: GuardianConfig,
        store: SecurityStore | None = None,
        rpc: RpcClient | None = None,
        callbacks: AlertCallbacks | None = None,
        clock: Clock = utc_now,
        environ: Mapping[str, str] | None = None,
        scheduler: DetectorScheduler | None = None,
    ) -> None:
        self._config = config
        self._store = store
        self._owns_rpc = rpc is None
        self._rpc = rpc or RpcClient(config.rpc)
        self._clock = clock
        self._environ = environ
        self._scheduler = scheduler or DetectorScheduler()
        self._initialized = False
        self._logger = logger.bind(system="guardian", component="service")

        self.incidents = IncidentResponse(
            config.incident_response, store=store, callbacks=callbacks, clock=clock
        )
        report = self.incidents.report
        self.content_filter = ContentFilter(
            config.content_filter, report, store=store, clock=clock, environ=environ
        )
        self.wallet_sentinel = WalletSentinel(
            config.wallet_sentinel, self._rpc, report, store=store, clock=clock
        )
        self.network_shield = NetworkShield(
            config.network_shield, self._rpc, report, store=store, clock=clock, environ=environ
        )
        self.agent_watchdog = AgentWatchdog(
            config.agent_watchdog, report, store=store, clock=clock
        )

    @property
    def scheduler(self) -> DetectorScheduler:
        return self._scheduler

    def set_callbacks(self, callbacks: AlertCallbacks) -> None:
        self.incidents.set_callbacks(callbacks)

    # ─── Lifecycle ────────────────────────────────────────────────

    async def initialize(self) -> None:
        """
        Restore persisted state, start the incident consumer and register
        every periodic check with the scheduler.
        """
        if self._initialized:
            return

        await self.content_filter.initialize()
        await self.agent_watchdog.initialize()
        await self.incidents.start()

        intervals = self._config.scheduler
        self._scheduler.register(
            "agent_watchdog", intervals.watchdog_interval_s, self.agent_watchdog.run_cycle
        )
        self._scheduler.register(
            "wallet_sentinel", intervals.wallet_interval_s, self.wallet_sentinel.run_cycle
        )
        self._scheduler.register(
            "network_shield", intervals.network_interval_s, self.network_shield.run_cycle
        )
        self._scheduler.register(
            "content_sweep", intervals.content_sweep_interval_s, self.content_filter.run_cycle
        )
        self._scheduler.register(
            "rate_anomalies",
            intervals.rate_anomaly_interval_s,
            self.network_shield.check_rate_anomalies,
            run_immediately=False,
        )
        self._scheduler.register(
            "incident_cleanup",
            intervals.incident_cleanup_interval_s,
            self.incidents.cleanup,
            run_immediately=False,
        )
        await self._scheduler.start()

        self._initialized = True
        self._logger.info(
            "guardian_initialized",
            wallets=len(self.wallet_sentinel.wallets),
            endpoints=len(self.network_shield.endpoints),
            agents=len(self._config.agent_watchdog.profiles),
            store_attached=self._store is not None,
        )

    async def shutdown(self) -> None:
        """Stop the scheduler, flush in-flight reports, close owned clients."""
        self._logger.info("guardian_shutting_down")
        await self._scheduler.stop()

        for detector in (
            self.content_filter,
            self.wallet_sentinel,
            self.network_shield,
            self.agent_watchdog,
        ):
            await detector.drain()
        await self.incidents.stop()

        if self._owns_rpc:
            await self._rpc.close()

        self._initialized = False
        self._logger.info(
            "guardian_shutdown",
            active_incidents=len(self.incidents.active_incidents),
            quarantined=self.agent_watchdog.status()["quarantined"],
        )

    # ─── Pass-throughs ────────────────────────────────────────────

    def is_quarantined(self, agent_name: str) -> bool:
        return self.agent_watchdog.is_quarantined(agent_name)

    def scan_inbound(
        self, text: str, user_id: str | None = None, chat_id: str | None = None
    ) -> ScanResult:
        return self.content_filter.scan_inbound(text, user_id=user_id, chat_id=chat_id)

    def scan_outbound(self, text: str, destination: str) -> ScanResult:
        return self.content_filter.scan_outbound(text, destination)

    def record_request(self, service: str) -> bool:
        return self.network_shield.record_request(service)

    async def release_agent(self, agent_name: str, released_by: str = "manual") -> bool:
        return await self.agent_watchdog.release_agent(agent_name, released_by=released_by)

    async def check_secrets(self, text: str, source: str) -> bool:
        """Last gate before content leaves the process. True means clean."""
        return await self.network_shield.scan_and_report(text, source)

    # ─── Commands ─────────────────────────────────────────────────

    async def handle_command(
        self, command: str, args: Mapping[str, Any] | None = None
    ) -> dict[str, Any]:
        """
        Execute an inbound operator command and report it as an info event.

        Raises CommandError for unknown commands or missing arguments.
        """
        args = dict(args or {})
        command = command.strip().lower()
        requested_by = str(args.get("requested_by") or "unknown")

        if command == "status":
            result: dict[str, Any] = self.stats
        elif command == "report":
            published = False
            if args.get("publish"):
                published = await self.incidents.publish_summary()
            result = {"report": self.incidents.generate_report(), "published": published}
        elif command == "scan":
            text = _require(args, "text")
            direction = str(args.get("direction") or "inbound")
            if direction == "outbound":
                scan = self.scan_outbound(text, str(args.get("destination") or "command"))
            else:
                scan = self.scan_inbound(text, user_id=args.get("user_id"), chat_id=args.get("chat_id"))
            result = scan.model_dump(mode="json")
        elif command == "release":
            agent_name = _require(args, "agent_name")
            released = await self.release_agent(agent_name, released_by=requested_by)
            result = {"agent_name": agent_name, "released": released}
        elif command == "check_secrets":
            text = _require(args, "text")
            source = str(args.get("source") or "command")
            leaks = self.network_shield.scan_for_leaked_secrets(text)
            clean = await self.check_secrets(text, source)
            result = {"clean": clean, "leaks": leaks}
        else:
            raise CommandError(f"Unknown command: {command!r}. Expected one of {', '.join(COMMANDS)}")

        await self.incidents.report(
            SecurityEvent(
                category=SecurityCategory.INCIDENT,
                severity=SecuritySeverity.INFO,
                title=f"Security command: {command}",
                details={"command": command, "requested_by": requested_by},
                timestamp=self._clock(),
            )
        )
        self._logger.info("security_command_handled", command=command, requested_by=requested_by)
        return {"command": command, "result": result}

    # ─── History ──────────────────────────────────────────────────

    async def recent_events(self, limit: int = 50) -> list[dict[str, Any]] | None:
        """Persisted security events, newest first. None when running detached."""
        if self._store is None:
            return None
        limit = max(1, min(limit, _MAX_EVENT_HISTORY))
        return await self._store.fetch_recent_events(limit)

    # ─── Health ───────────────────────────────────────────────────

    async def health(self) -> dict[str, Any]:
        store_health: dict[str, Any] = {"status": "detached"}
        if self._store is not None:
            try:
                store_health = await asyncio.wait_for(self._store.health_check(), timeout=5.0)
            except Exception as exc:
                store_health = {"status": "unhealthy", "error": str(exc)}

        quarantined = self.agent_watchdog.status()["quarantined"]
        worst = SecuritySeverity.INFO
        for incident in self.incidents.active_incidents:
            if incident.severity.rank > worst.rank:
                worst = incident.severity

        if worst in (SecuritySeverity.CRITICAL, SecuritySeverity.EMERGENCY):
            status = "alert"
        elif quarantined or store_health["status"] not in ("connected", "detached"):
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "initialized": self._initialized,
            "worst_active_severity": str(worst),
            "active_incidents": len(self.incidents.active_incidents),
            "quarantined_agents": quarantined,
            "store": store_health,
            "scheduler": self._scheduler.stats,
        }

    @property
    def stats(self) -> dict[str, Any]:
        """Synchronous stats for logging and the status endpoint."""
        return {
            "initialized": self._initialized,
            "content_filter": self.content_filter.status(),
            "wallet_sentinel": self.wallet_sentinel.status(),
            "network_shield": self.network_shield.status(),
            "agent_watchdog": self.agent_watchdog.status(),
            "incidents": self.incidents.status(),
            "rpc": self._rpc.stats,
        }


def _require(args: Mapping[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value:
        raise CommandError(f"Missing required argument: {key}")
    return value
