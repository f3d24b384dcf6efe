"""
Tests for the Wallet Sentinel.

Covers:
  - Baseline observation never alerts
  - Drain detection (critical vs emergency, dust floor)
  - Low-balance edge trigger
  - Balance spike
  - RPC failure counting and degraded-monitoring warning
  - Snapshot persistence
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from guardian.config import WalletSentinelConfig
from guardian.errors import RpcError
from guardian.security.types import (
    Chain,
    SecurityCategory,
    SecuritySeverity,
    WalletConfig,
    WalletSnapshot,
)
from guardian.security.wallet_sentinel import WalletSentinel

_T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _make_wallet(**overrides) -> WalletConfig:
    fields = {"address": "FundWa11etAddr", "label": "funding", "chain": Chain.SOLANA}
    fields.update(overrides)
    return WalletConfig(**fields)


def _make_rpc(balances: list[float | Exception]) -> MagicMock:
    """RPC mock that returns (or raises) each balance in turn."""
    rpc = MagicMock()
    rpc.url_for = MagicMock(return_value="https://rpc.test")

    results = []
    for b in balances:
        results.append(b if isinstance(b, Exception) else (b, int(b * 1_000_000_000)))
    rpc.get_balance = AsyncMock(side_effect=results)
    return rpc


def _make_sentinel(
    balances: list[float | Exception],
    wallets: list[WalletConfig] | None = None,
    store: MagicMock | None = None,
) -> tuple[WalletSentinel, AsyncMock, MagicMock]:
    report = AsyncMock()
    rpc = _make_rpc(balances)
    config = WalletSentinelConfig(wallets=wallets or [_make_wallet()])
    sentinel = WalletSentinel(config, rpc, report, store=store, clock=lambda: _T0)
    return sentinel, report, rpc


def _snapshot(balance: float, at: datetime = _T0) -> WalletSnapshot:
    return WalletSnapshot(
        address="FundWa11etAddr",
        label="funding",
        chain=Chain.SOLANA,
        balance=balance,
        balance_raw=int(balance * 1e9),
        timestamp=at,
    )


# ─── Check Cycle ──────────────────────────────────────────────────


class TestCheckCycle:
    @pytest.mark.asyncio
    async def test_first_observation_is_baseline(self):
        sentinel, report, _ = _make_sentinel([0.0])
        await sentinel.check()
        report.assert_not_awaited()
        assert sentinel.last_snapshot("FundWa11etAddr").balance == 0.0

    @pytest.mark.asyncio
    async def test_drain_to_emergency(self):
        sentinel, report, _ = _make_sentinel([10.0, 10.0, 2.0])
        await sentinel.check()
        await sentinel.check()
        report.assert_not_awaited()

        await sentinel.check()
        report.assert_awaited_once()
        event = report.await_args.args[0]
        assert event.category == SecurityCategory.WALLET
        assert event.severity == SecuritySeverity.EMERGENCY
        assert event.title == "WALLET DRAIN DETECTED: funding"
        assert event.details["drop_percent"] == 80.0
        assert event.details["dropped"] == 8.0

    @pytest.mark.asyncio
    async def test_wallet_rpc_url_overrides_default(self):
        wallet = _make_wallet(rpc_url="https://private.rpc")
        sentinel, _, rpc = _make_sentinel([1.0], wallets=[wallet])
        await sentinel.check()
        assert rpc.get_balance.await_args.args[1] == "https://private.rpc"
        rpc.url_for.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_wallets_is_noop(self):
        report = AsyncMock()
        rpc = _make_rpc([])
        sentinel = WalletSentinel(WalletSentinelConfig(), rpc, report)
        await sentinel.check()
        rpc.get_balance.assert_not_awaited()
        assert sentinel.status()["total_checks"] == 0

    @pytest.mark.asyncio
    async def test_snapshot_persisted_every_check(self):
        store = MagicMock()
        store.record_wallet_snapshot = AsyncMock()
        sentinel, _, _ = _make_sentinel([1.5, 1.25], store=store)
        await sentinel.check()
        await sentinel.check()
        assert store.record_wallet_snapshot.await_count == 2
        args = store.record_wallet_snapshot.await_args.args
        assert args[:5] == ("FundWa11etAddr", "funding", "solana", 1.25, 1_250_000_000)

    @pytest.mark.asyncio
    async def test_snapshot_persist_failure_still_evaluates(self):
        store = MagicMock()
        store.record_wallet_snapshot = AsyncMock(side_effect=RuntimeError("db down"))
        sentinel, report, _ = _make_sentinel([10.0, 1.0], store=store)
        await sentinel.check()
        await sentinel.check()
        report.assert_awaited_once()


# ─── RPC Failures ─────────────────────────────────────────────────


class TestRpcFailures:
    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self):
        sentinel, report, _ = _make_sentinel([RpcError("timeout")])
        await sentinel.check()
        report.assert_not_awaited()
        assert sentinel.status()["consecutive_failures"] == 1

    @pytest.mark.asyncio
    async def test_degraded_warning_at_five_failures(self):
        sentinel, report, _ = _make_sentinel([RpcError("timeout")] * 5)
        for _ in range(4):
            await sentinel.check()
        report.assert_not_awaited()

        await sentinel.check()
        report.assert_awaited_once()
        event = report.await_args.args[0]
        assert event.severity == SecuritySeverity.WARNING
        assert event.title == "Wallet monitoring degraded"

    @pytest.mark.asyncio
    async def test_success_resets_counter(self):
        sentinel, _, _ = _make_sentinel([RpcError("a"), RpcError("b"), 1.0])
        for _ in range(3):
            await sentinel.check()
        assert sentinel.status()["consecutive_failures"] == 0

    @pytest.mark.asyncio
    async def test_one_failing_wallet_does_not_block_others(self):
        wallets = [_make_wallet(), _make_wallet(address="Other", label="ops")]
        sentinel, _, _ = _make_sentinel([RpcError("down"), 3.0], wallets=wallets)
        await sentinel.check()
        assert sentinel.last_snapshot("Other").balance == 3.0
        assert sentinel.last_snapshot("FundWa11etAddr") is None


# ─── Diff Rules ───────────────────────────────────────────────────


class TestEvaluate:
    def _evaluate(self, previous: float, current: float, **wallet_overrides):
        sentinel, _, _ = _make_sentinel([])
        wallet = _make_wallet(**wallet_overrides)
        return sentinel.evaluate(
            wallet, _snapshot(previous), current, _T0 + timedelta(minutes=2)
        )

    def test_small_drop_is_quiet(self):
        assert self._evaluate(10.0, 9.0) == []

    def test_drain_threshold_is_critical(self):
        events = self._evaluate(10.0, 7.0)
        assert len(events) == 1
        assert events[0].severity == SecuritySeverity.CRITICAL
        assert events[0].details["drop_percent"] == 30.0
        assert events[0].details["seconds_since_last_check"] == 120

    def test_custom_drain_threshold(self):
        assert self._evaluate(10.0, 9.0, drain_threshold_pct=5) != []

    def test_dust_balance_never_drains(self):
        assert self._evaluate(0.009, 0.0) == []

    def test_low_balance_edge_triggered(self):
        events = self._evaluate(0.06, 0.04)
        titles = [e.title for e in events]
        assert "Low balance: funding" in titles

    def test_low_balance_not_repeated(self):
        assert self._evaluate(0.04, 0.03, drain_threshold_pct=50) == []

    def test_spike(self):
        events = self._evaluate(1.0, 11.0)
        assert [e.title for e in events] == ["Suspicious balance spike: funding"]
        assert events[0].details["multiplier"] == 11.0

    def test_spike_from_trivial_base_ignored(self):
        assert self._evaluate(0.0005, 1.0) == []

    def test_drain_and_low_together(self):
        events = self._evaluate(1.0, 0.01)
        titles = {e.title for e in events}
        assert titles == {"WALLET DRAIN DETECTED: funding", "Low balance: funding"}
        drain = next(e for e in events if e.title.startswith("WALLET DRAIN"))
        assert drain.severity == SecuritySeverity.EMERGENCY
