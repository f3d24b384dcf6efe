"""
Tests for configuration loading.

Covers defaults, YAML loading, deep merge and environment overrides.
"""

from __future__ import annotations

import pytest

from guardian.config import GuardianConfig, StoreConfig, _deep_merge, load_config
from guardian.security.types import Chain, SecuritySeverity

_ENV_VARS = (
    "DATABASE_URL",
    "SOLANA_RPC_URL",
    "POLYGON_RPC_URL",
    "GUARDIAN_LOGGING__LEVEL",
    "GUARDIAN_LOGGING__FORMAT",
    "GUARDIAN_STORE__URL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestDefaults:
    def test_detector_defaults(self):
        config = GuardianConfig()
        assert config.agent_watchdog.warn_threshold == 3
        assert config.agent_watchdog.quarantine_threshold == 7
        assert config.wallet_sentinel.emergency_drop_pct == 80.0
        assert config.network_shield.max_consecutive_failures == 3
        assert config.scheduler.wallet_interval_s == 120.0

    def test_default_profiles(self):
        profiles = {p.agent_name: p for p in GuardianConfig().agent_watchdog.profiles}
        assert profiles["nova-scout"].max_messages_per_window == 30
        assert profiles["nova-launcher"].max_messages_per_window == 15
        assert "heartbeat" in profiles["nova-cfo"].expected_types

    def test_cooldowns(self):
        cooldowns = GuardianConfig().incident_response.cooldowns_s
        assert cooldowns[SecuritySeverity.CRITICAL] == 120.0
        assert cooldowns[SecuritySeverity.EMERGENCY] == 0.0

    def test_escalation_rules(self):
        rules = GuardianConfig().incident_response.escalation_rules
        assert [(r.trigger_severity, r.count_threshold, r.escalate_to) for r in rules] == [
            (SecuritySeverity.WARNING, 5, SecuritySeverity.CRITICAL),
            (SecuritySeverity.CRITICAL, 3, SecuritySeverity.EMERGENCY),
        ]


class TestStoreDsn:
    def test_dsn_from_fields(self):
        store = StoreConfig(host="db", port=5433, database="sec", username="u", password="p")
        assert store.dsn == "postgresql://u:p@db:5433/sec"

    def test_url_wins(self):
        assert StoreConfig(url="postgresql://x/y", host="ignored").dsn == "postgresql://x/y"


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")
        assert config.instance_id == "guardian-default"

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "guardian.yaml"
        path.write_text(
            "instance_id: guardian-test\n"
            "wallet_sentinel:\n"
            "  wallets:\n"
            "    - address: '0xabc'\n"
            "      label: treasury\n"
            "      chain: polygon\n"
            "agent_watchdog:\n"
            "  quarantine_threshold: 9\n"
        )
        config = load_config(path)
        assert config.instance_id == "guardian-test"
        assert config.wallet_sentinel.wallets[0].chain == Chain.POLYGON
        assert config.agent_watchdog.quarantine_threshold == 9
        assert config.agent_watchdog.warn_threshold == 3

    def test_env_overrides_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "guardian.yaml"
        path.write_text("store:\n  url: postgresql://from-yaml/db\nlogging:\n  level: INFO\n")
        monkeypatch.setenv("DATABASE_URL", "postgresql://from-env/db")
        monkeypatch.setenv("SOLANA_RPC_URL", "https://helius.test")
        monkeypatch.setenv("GUARDIAN_LOGGING__LEVEL", "DEBUG")

        config = load_config(path)
        assert config.store.dsn == "postgresql://from-env/db"
        assert config.rpc.url_for(Chain.SOLANA) == "https://helius.test"
        assert config.logging.level == "DEBUG"


class TestDeepMerge:
    def test_nested_merge(self):
        base = {"a": {"b": 1, "c": 2}, "d": 3}
        merged = _deep_merge(base, {"a": {"c": 20}, "e": 5})
        assert merged == {"a": {"b": 1, "c": 20}, "d": 3, "e": 5}
        assert base["a"]["c"] == 2
