"""
Guardian -- Network Shield

Two responsibilities that share configuration:

1. RPC validation (periodic). Each endpoint's chain height must advance
   between checks; the primary endpoint of a chain is cross-checked against
   a known-good reference and flagged on divergence; consecutive failures
   per endpoint become an alert once they cross a threshold.

2. Egress hygiene (on demand). A fixed-window rate limiter keyed by
   logical service name, and a secret-leak scan that runs before any
   content leaves the process. The leak scan overlaps with the content
   filter's outbound checks on purpose: it is the last gate before the
   network.
"""

from __future__ import annotations

import os
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Mapping

from guardian.errors import RpcError
from guardian.primitives.common import utc_now
from guardian.security.base import BaseDetector, Clock
from guardian.security.patterns import DEFAULT_SECRET_RULES, PatternRule, mask_url
from guardian.security.types import (
    SOLANA_MAINNET_RPC,
    Chain,
    RateLimitBucket,
    RpcEndpoint,
    RpcEndpointConfig,
    SecurityCategory,
    SecurityEvent,
    SecuritySeverity,
)

if TYPE_CHECKING:
    from guardian.clients.rpc import RpcClient
    from guardian.clients.store import SecurityStore
    from guardian.config import NetworkShieldConfig
    from guardian.security.types import SecurityReporter

_MIN_SECRET_LEN = 9

_SOLANA_BACKUP_RPCS = (SOLANA_MAINNET_RPC, "https://rpc.helius.xyz")
_EVM_RPC_ENV = (("CFO_POLYGON_RPC_URL", Chain.POLYGON), ("CFO_ARBITRUM_RPC_URL", Chain.ARBITRUM))


def fleet_rpc_endpoints(environ: Mapping[str, str]) -> list[RpcEndpointConfig]:
    """
    The RPC nodes the fleet actually talks to: the Solana primary from
    SOLANA_RPC_URL, the public backups, and the CFO's EVM nodes when set.
    Used when no endpoints are configured explicitly.
    """
    solana_rpc = environ.get("SOLANA_RPC_URL") or SOLANA_MAINNET_RPC
    endpoints = [
        RpcEndpointConfig(url=solana_rpc, label="solana-primary", chain=Chain.SOLANA, primary=True)
    ]
    backups = [url for url in _SOLANA_BACKUP_RPCS if url != solana_rpc]
    for i, url in enumerate(backups, start=1):
        endpoints.append(RpcEndpointConfig(url=url, label=f"solana-backup-{i}", chain=Chain.SOLANA))

    for var, chain in _EVM_RPC_ENV:
        if url := environ.get(var):
            endpoints.append(
                RpcEndpointConfig(url=url, label=f"{chain}-primary", chain=chain, primary=True)
            )
    return endpoints


class NetworkShield(BaseDetector):
    def __init__(
        self,
        config: NetworkShieldConfig,
        rpc: RpcClient,
        report: SecurityReporter,
        store: SecurityStore | None = None,
        clock: Clock = utc_now,
        environ: Mapping[str, str] | None = None,
        secret_rules: list[PatternRule] | None = None,
    ) -> None:
        super().__init__(report, store, clock)
        self._config = config
        self._rpc = rpc
        self._environ = environ if environ is not None else os.environ
        self._secret_rules = list(secret_rules or DEFAULT_SECRET_RULES)

        self._endpoints: list[RpcEndpoint] = [
            RpcEndpoint(url=ep.url, label=ep.label, chain=ep.chain, primary=ep.primary)
            for ep in config.endpoints or fleet_rpc_endpoints(self._environ)
        ]
        now = self._clock()
        self._buckets: dict[str, RateLimitBucket] = {
            rl.service: RateLimitBucket(
                service=rl.service,
                window_start=now,
                window_s=rl.window_s,
                max_per_window=rl.max_per_window,
            )
            for rl in config.rate_limits
        }

        self._total_checks = 0
        self._total_alerts = 0
        self._requests_blocked = 0

    @property
    def detector_name(self) -> str:
        return "network_shield"

    @property
    def endpoints(self) -> list[RpcEndpoint]:
        return self._endpoints

    def bucket(self, service: str) -> RateLimitBucket | None:
        return self._buckets.get(service)

    # ─── RPC Validation ───────────────────────────────────────────

    async def _cycle(self) -> None:
        await self.check_rpc_endpoints()

    async def check_rpc_endpoints(self) -> None:
        self._total_checks += 1
        for ep in self._endpoints:
            try:
                await self._validate(ep)
            except RpcError as exc:
                ep.consecutive_failures += 1
                self._logger.warning(
                    "rpc_endpoint_check_failed",
                    endpoint=ep.label,
                    consecutive_failures=ep.consecutive_failures,
                    error=str(exc),
                )
                if ep.consecutive_failures >= self._config.max_consecutive_failures:
                    await self._alert(
                        SecurityEvent(
                            category=SecurityCategory.NETWORK,
                            severity=SecuritySeverity.CRITICAL,
                            title=f"RPC endpoint unreachable: {ep.label}",
                            details={
                                "url": mask_url(ep.url),
                                "chain": str(ep.chain),
                                "consecutive_failures": ep.consecutive_failures,
                                "error": str(exc),
                            },
                            auto_response="RPC rotation recommended",
                            timestamp=self._clock(),
                        )
                    )

    async def _validate(self, ep: RpcEndpoint) -> None:
        height = await self._rpc.get_chain_height(ep.chain, ep.url)
        ep.last_check_at = self._clock()

        if ep.last_height is not None and height <= ep.last_height:
            await self._alert(
                SecurityEvent(
                    category=SecurityCategory.NETWORK,
                    severity=SecuritySeverity.WARNING,
                    title=f"RPC returning stale data: {ep.label}",
                    details={
                        "url": mask_url(ep.url),
                        "chain": str(ep.chain),
                        "previous_height": ep.last_height,
                        "current_height": height,
                        "message": "Chain height not advancing. Possible MITM or stale cache.",
                    },
                    timestamp=ep.last_check_at,
                )
            )

        reference = self._config.reference_urls.get(ep.chain)
        if ep.primary and reference and reference != ep.url:
            await self._cross_check(ep, height, reference)

        ep.last_height = height
        ep.consecutive_failures = 0
        ep.validated = True

    async def _cross_check(self, ep: RpcEndpoint, height: int, reference: str) -> None:
        try:
            reference_height = await self._rpc.get_chain_height(ep.chain, reference)
        except RpcError as exc:
            self._logger.debug("reference_rpc_check_failed", chain=str(ep.chain), error=str(exc))
            return

        divergence = abs(height - reference_height)
        if divergence > self._config.divergence_threshold:
            await self._alert(
                SecurityEvent(
                    category=SecurityCategory.NETWORK,
                    severity=SecuritySeverity.CRITICAL,
                    title=f"RPC height divergence: {ep.label}",
                    details={
                        "chain": str(ep.chain),
                        "primary_height": height,
                        "reference_height": reference_height,
                        "divergence": divergence,
                        "message": "Primary RPC disagrees with reference. Possible MITM or fork.",
                    },
                    auto_response="RPC rotation recommended",
                    timestamp=self._clock(),
                )
            )

    async def _alert(self, event: SecurityEvent) -> None:
        self._total_alerts += 1
        await self._emit(event)

    # ─── Rate Limiting ────────────────────────────────────────────

    def record_request(self, service: str) -> bool:
        """
        Count one request against ``service``.

        Returns False once the window's cap is exceeded. Unknown services are
        always allowed. The first blocked request in a window raises one
        warning; later ones in the same window are silent.
        """
        bucket = self._buckets.get(service)
        if bucket is None:
            return True

        now = self._clock()
        if now - bucket.window_start > timedelta(seconds=bucket.window_s):
            bucket.window_start = now
            bucket.request_count = 0
            bucket.blocked = False

        bucket.request_count += 1

        if bucket.request_count <= bucket.max_per_window:
            return True

        self._requests_blocked += 1
        if not bucket.blocked:
            bucket.blocked = True
            self._total_alerts += 1
            self._spawn(
                self._emit(
                    SecurityEvent(
                        category=SecurityCategory.NETWORK,
                        severity=SecuritySeverity.WARNING,
                        title=f"Rate limit exceeded: {service}",
                        details={
                            "service": service,
                            "request_count": bucket.request_count,
                            "max_per_window": bucket.max_per_window,
                            "window_s": bucket.window_s,
                        },
                        auto_response="Requests throttled",
                        timestamp=now,
                    )
                ),
                "rate_limit_alert",
            )
            store = self._store
            if store is not None:
                snapshot = bucket.model_copy()
                self._spawn(
                    self._best_effort(
                        "rate_limit_persist",
                        lambda: store.record_rate_limit(
                            snapshot.service,
                            snapshot.request_count,
                            snapshot.window_start,
                            int(snapshot.window_s),
                            True,
                        ),
                    ),
                    "rate_limit_persist",
                )
        return False

    async def check_rate_anomalies(self) -> int:
        """
        Log (but do not alert on) services running hot in their current
        window. Returns the number of hot services.
        """
        now = self._clock()
        hot = 0
        for name, bucket in self._buckets.items():
            if now - bucket.window_start > timedelta(seconds=bucket.window_s):
                continue
            usage = bucket.request_count / bucket.max_per_window
            if usage <= self._config.high_usage_ratio or bucket.blocked:
                continue

            hot += 1
            event = SecurityEvent(
                category=SecurityCategory.NETWORK,
                severity=SecuritySeverity.INFO,
                title=f"High API usage: {name} ({usage * 100:.0f}%)",
                details={
                    "service": name,
                    "request_count": bucket.request_count,
                    "max_per_window": bucket.max_per_window,
                    "usage_percent": round(usage * 100, 1),
                },
                timestamp=now,
            )
            store = self._store
            if store is not None:
                await self._best_effort(
                    "rate_anomaly_persist", lambda e=event: store.log_security_event(e)
                )
            self._logger.info("high_api_usage", service=name, usage_percent=round(usage * 100, 1))
        return hot

    # ─── Secret Leak Gate ─────────────────────────────────────────

    def scan_for_leaked_secrets(self, text: str) -> list[str]:
        """
        Names of every secret rule and sensitive variable found in ``text``.
        Never returns the secret itself.
        """
        leaks = [rule.label for rule in self._secret_rules if rule.search(text)]
        for name in self._config.sensitive_env_vars:
            value = self._environ.get(name)
            if value and len(value) >= _MIN_SECRET_LEN and value in text:
                leaks.append(f"ENV:{name}")
        return leaks

    async def scan_and_report(self, text: str, source: str) -> bool:
        """Returns True when ``text`` is clean; otherwise raises an emergency and returns False."""
        leaks = self.scan_for_leaked_secrets(text)
        if not leaks:
            return True

        await self._alert(
            SecurityEvent(
                category=SecurityCategory.NETWORK,
                severity=SecuritySeverity.EMERGENCY,
                title=f"API KEY LEAK DETECTED in {source}",
                details={
                    "source": source,
                    "leak_patterns": leaks,
                    "content_length": len(text),
                    "message": "Secret detected in outbound content. Content was blocked.",
                },
                auto_response="Content blocked, admin notified",
                timestamp=self._clock(),
            )
        )
        return False

    # ─── Status ───────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return {
            "endpoints_monitored": len(self._endpoints),
            "endpoints": [
                {
                    "label": ep.label,
                    "chain": str(ep.chain),
                    "primary": ep.primary,
                    "validated": ep.validated,
                    "consecutive_failures": ep.consecutive_failures,
                    "last_height": ep.last_height,
                }
                for ep in self._endpoints
            ],
            "rate_buckets": {
                name: {
                    "requests": b.request_count,
                    "max": b.max_per_window,
                    "blocked": b.blocked,
                }
                for name, b in self._buckets.items()
            },
            "requests_blocked": self._requests_blocked,
            "total_checks": self._total_checks,
            "total_alerts": self._total_alerts,
            **self._cycle_stats(),
        }
