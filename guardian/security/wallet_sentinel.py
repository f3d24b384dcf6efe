"""
Guardian -- Wallet Sentinel

Polls the native balance of every configured wallet and diffs it against
the previous in-memory snapshot:
  - drain   : drop >= wallet threshold from a non-dust balance
              (critical, or emergency at >= 80%)
  - low     : crossed below the low-balance threshold (edge-triggered)
  - spike   : balance grew more than 10x from a non-trivial base

The first observation of a wallet is a baseline and never alerts. RPC
failures are swallowed per wallet; a run of consecutive failures across
wallets raises one degraded-monitoring warning.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from guardian.errors import RpcError
from guardian.primitives.common import utc_now
from guardian.security.base import BaseDetector, Clock
from guardian.security.types import (
    SecurityCategory,
    SecurityEvent,
    SecuritySeverity,
    WalletConfig,
    WalletSnapshot,
)

if TYPE_CHECKING:
    from guardian.clients.rpc import RpcClient
    from guardian.clients.store import SecurityStore
    from guardian.config import WalletSentinelConfig
    from guardian.security.types import SecurityReporter


class WalletSentinel(BaseDetector):
    def __init__(
        self,
        config: WalletSentinelConfig,
        rpc: RpcClient,
        report: SecurityReporter,
        store: SecurityStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        super().__init__(report, store, clock)
        self._config = config
        self._rpc = rpc
        self._wallets: list[WalletConfig] = list(config.wallets)
        self._snapshots: dict[str, WalletSnapshot] = {}
        self._consecutive_failures = 0
        self._total_checks = 0
        self._total_alerts = 0

    @property
    def detector_name(self) -> str:
        return "wallet_sentinel"

    @property
    def wallets(self) -> list[WalletConfig]:
        return list(self._wallets)

    def last_snapshot(self, address: str) -> WalletSnapshot | None:
        return self._snapshots.get(address)

    # ─── Check Cycle ──────────────────────────────────────────────

    async def _cycle(self) -> None:
        await self.check()

    async def check(self) -> None:
        if not self._wallets:
            return
        self._total_checks += 1

        for wallet in self._wallets:
            try:
                await self._check_wallet(wallet)
            except RpcError as exc:
                self._consecutive_failures += 1
                self._logger.warning(
                    "wallet_balance_fetch_failed",
                    wallet=wallet.label,
                    consecutive_failures=self._consecutive_failures,
                    error=str(exc),
                )
                if self._consecutive_failures >= self._config.max_consecutive_failures:
                    await self._emit(
                        SecurityEvent(
                            category=SecurityCategory.WALLET,
                            severity=SecuritySeverity.WARNING,
                            title="Wallet monitoring degraded",
                            details={
                                "wallet": wallet.label,
                                "consecutive_failures": self._consecutive_failures,
                                "error": str(exc),
                            },
                            timestamp=self._clock(),
                        )
                    )
            else:
                self._consecutive_failures = 0

    async def _check_wallet(self, wallet: WalletConfig) -> None:
        url = wallet.rpc_url or self._rpc.url_for(wallet.chain)
        balance, balance_raw = await self._rpc.get_balance(wallet.chain, url, wallet.address)
        now = self._clock()

        store = self._store
        if store is not None:
            await self._best_effort(
                "wallet_snapshot_persist",
                lambda: store.record_wallet_snapshot(
                    wallet.address, wallet.label, str(wallet.chain), balance, balance_raw, now
                ),
            )

        previous = self._snapshots.get(wallet.address)
        self._snapshots[wallet.address] = WalletSnapshot(
            address=wallet.address,
            label=wallet.label,
            chain=wallet.chain,
            balance=balance,
            balance_raw=balance_raw,
            timestamp=now,
        )

        if previous is None:
            self._logger.info("wallet_baseline_recorded", wallet=wallet.label, balance=balance)
            return

        for event in self.evaluate(wallet, previous, balance, now):
            self._total_alerts += 1
            await self._emit(event)

    # ─── Diff Rules ───────────────────────────────────────────────

    def evaluate(
        self,
        wallet: WalletConfig,
        previous: WalletSnapshot,
        balance: float,
        now: datetime,
    ) -> list[SecurityEvent]:
        """Pure diff of one observation against the previous snapshot."""
        events: list[SecurityEvent] = []
        prev = previous.balance
        base = {"wallet_address": wallet.address, "wallet_label": wallet.label, "chain": str(wallet.chain)}

        if prev > self._config.dust_threshold:
            drop_pct = (prev - balance) * 100 / prev
            if drop_pct >= wallet.drain_threshold_pct:
                emergency = drop_pct >= self._config.emergency_drop_pct
                events.append(
                    SecurityEvent(
                        category=SecurityCategory.WALLET,
                        severity=SecuritySeverity.EMERGENCY if emergency else SecuritySeverity.CRITICAL,
                        title=f"WALLET DRAIN DETECTED: {wallet.label}",
                        details={
                            **base,
                            "previous_balance": round(prev, 6),
                            "current_balance": round(balance, 6),
                            "dropped": round(prev - balance, 6),
                            "drop_percent": round(drop_pct, 1),
                            "seconds_since_last_check": round(
                                (now - previous.timestamp).total_seconds()
                            ),
                        },
                        auto_response=(
                            "Emergency alert sent to admin" if emergency else "Alert sent to supervisor"
                        ),
                        timestamp=now,
                    )
                )

        threshold = wallet.low_balance_threshold
        if balance < threshold <= prev:
            events.append(
                SecurityEvent(
                    category=SecurityCategory.WALLET,
                    severity=SecuritySeverity.WARNING,
                    title=f"Low balance: {wallet.label}",
                    details={**base, "balance": round(balance, 6), "threshold": threshold},
                    timestamp=now,
                )
            )

        if prev > self._config.spike_min_previous and balance > prev * self._config.spike_multiplier:
            events.append(
                SecurityEvent(
                    category=SecurityCategory.WALLET,
                    severity=SecuritySeverity.WARNING,
                    title=f"Suspicious balance spike: {wallet.label}",
                    details={
                        **base,
                        "previous_balance": round(prev, 6),
                        "current_balance": round(balance, 6),
                        "multiplier": round(balance / prev, 1),
                    },
                    timestamp=now,
                )
            )

        return events

    # ─── Queries ──────────────────────────────────────────────────

    async def get_balance_history(self, address: str, hours: float = 24) -> list[dict[str, Any]]:
        store = self._store
        if store is None:
            return []
        since = self._clock() - timedelta(hours=hours)
        rows = await self._best_effort(
            "balance_history_fetch", lambda: store.get_balance_history(address, since)
        )
        return rows or []

    def status(self) -> dict[str, Any]:
        return {
            "wallets": [
                {
                    "label": w.label,
                    "chain": str(w.chain),
                    "address": f"{w.address[:8]}...",
                    "last_balance": (
                        self._snapshots[w.address].balance if w.address in self._snapshots else None
                    ),
                }
                for w in self._wallets
            ],
            "total_checks": self._total_checks,
            "total_alerts": self._total_alerts,
            "consecutive_failures": self._consecutive_failures,
            **self._cycle_stats(),
        }
