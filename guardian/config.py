"""
Guardian -- Configuration System

All configuration is Pydantic-validated and loaded from:
1. default.yaml (defaults)
2. Environment variables (overrides)

Every tunable threshold, interval and baseline lives here.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from guardian.security.types import (
    SOLANA_MAINNET_RPC,
    AgentProfile,
    Chain,
    EscalationRule,
    RateLimitConfig,
    RpcEndpointConfig,
    SecuritySeverity,
    WalletConfig,
)


# ─── Infrastructure ───────────────────────────────────────────────


class ServerConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080


class StoreConfig(BaseModel):
    # A full DSN (e.g. DATABASE_URL) wins over the discrete fields.
    url: str = ""
    host: str = "localhost"
    port: int = 5432
    database: str = "guardian"
    username: str = "guardian"
    password: str = "guardian_dev"
    pool_size: int = 5
    ssl: bool = False
    command_timeout_s: float = 10.0

    @property
    def dsn(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql://{self.username}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


_CHAIN_DEFAULT_URLS: dict[str, str] = {
    Chain.SOLANA: SOLANA_MAINNET_RPC,
    Chain.POLYGON: "https://polygon-rpc.com",
}


class RpcConfig(BaseModel):
    timeout_s: float = 10.0
    # Per-chain overrides for wallets with no explicit rpc_url.
    default_urls: dict[str, str] = Field(default_factory=dict)

    def url_for(self, chain: Chain) -> str:
        return self.default_urls.get(chain) or _CHAIN_DEFAULT_URLS.get(chain, "")


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "console"  # "console" | "json"


# ─── Detectors ────────────────────────────────────────────────────


_OUTBOUND_SENSITIVE_ENV = [
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "PUMP_PORTAL_API_KEY",
    "TELEGRAM_BOT_TOKEN",
    "AGENT_FUNDING_WALLET_SECRET",
    "PUMP_PORTAL_WALLET_SECRET",
    "CFO_EVM_PRIVATE_KEY",
    "CFO_POLYMARKET_API_SECRET",
    "CFO_HYPERLIQUID_API_WALLET_KEY",
]

_EGRESS_SENSITIVE_ENV = [
    *_OUTBOUND_SENSITIVE_ENV,
    "DISCORD_API_TOKEN",
    "TWITTER_API_KEY",
    "TWITTER_API_SECRET",
    "TWITTER_ACCESS_TOKEN",
    "TWITTER_ACCESS_SECRET",
    "CFO_POLYMARKET_API_KEY",
]


class ContentFilterConfig(BaseModel):
    sensitive_env_vars: list[str] = Field(default_factory=lambda: list(_OUTBOUND_SENSITIVE_ENV))
    extra_phishing_domains: list[str] = Field(default_factory=list)
    known_scam_addresses: list[str] = Field(default_factory=list)
    dedup_window_s: float = 7 * 24 * 3600.0
    preload_limit: int = 500
    sweep_lookback_minutes: float = 10.0
    sweep_limit: int = 50


class WalletSentinelConfig(BaseModel):
    wallets: list[WalletConfig] = Field(default_factory=list)
    dust_threshold: float = 0.01  # Ignore drains from near-empty wallets
    emergency_drop_pct: float = 80.0
    spike_multiplier: float = 10.0
    spike_min_previous: float = 0.001
    max_consecutive_failures: int = 5


_DEFAULT_RATE_LIMITS = [
    ("rugcheck", 60),
    ("dexscreener", 30),
    ("jupiter", 20),
    ("telegram-inbound", 200),
    ("openai", 100),
    ("anthropic", 60),
    ("pump-portal", 15),
]


class NetworkShieldConfig(BaseModel):
    # Empty means "derive from the environment" (SOLANA_RPC_URL, CFO_*_RPC_URL).
    endpoints: list[RpcEndpointConfig] = Field(default_factory=list)
    # Known-good endpoint per chain for divergence cross-checks.
    reference_urls: dict[str, str] = Field(
        default_factory=lambda: {Chain.SOLANA: SOLANA_MAINNET_RPC}
    )
    divergence_threshold: int = 50  # Blocks/slots
    max_consecutive_failures: int = 3
    rate_limits: list[RateLimitConfig] = Field(
        default_factory=lambda: [
            RateLimitConfig(service=name, max_per_window=cap) for name, cap in _DEFAULT_RATE_LIMITS
        ]
    )
    high_usage_ratio: float = 0.8
    sensitive_env_vars: list[str] = Field(default_factory=lambda: list(_EGRESS_SENSITIVE_ENV))


def _default_profiles() -> list[AgentProfile]:
    return [
        AgentProfile(
            agent_name="nova-scout",
            max_messages_per_window=30,
            expected_recipients=frozenset({"nova", "nova-guardian", "nova-analyst", "nova-cfo"}),
            expected_types=frozenset({"intel", "report", "status", "heartbeat"}),
        ),
        AgentProfile(
            agent_name="nova-guardian",
            max_messages_per_window=20,
            expected_recipients=frozenset({"nova", "nova-cfo"}),
            expected_types=frozenset({"alert", "report", "status", "heartbeat"}),
        ),
        AgentProfile(
            agent_name="nova-analyst",
            max_messages_per_window=25,
            expected_recipients=frozenset({"nova", "nova-cfo", "nova-guardian"}),
            expected_types=frozenset({"intel", "report", "status", "heartbeat"}),
        ),
        AgentProfile(
            agent_name="nova-launcher",
            max_messages_per_window=15,
            expected_recipients=frozenset({"nova", "nova-guardian"}),
            expected_types=frozenset({"status", "report", "heartbeat"}),
        ),
        AgentProfile(
            agent_name="nova-community",
            max_messages_per_window=20,
            expected_recipients=frozenset({"nova"}),
            expected_types=frozenset({"report", "status", "heartbeat"}),
        ),
        AgentProfile(
            agent_name="nova-cfo",
            max_messages_per_window=25,
            expected_recipients=frozenset({"nova", "nova-guardian"}),
            expected_types=frozenset({"report", "alert", "status", "heartbeat"}),
        ),
    ]


class AgentWatchdogConfig(BaseModel):
    profiles: list[AgentProfile] = Field(default_factory=_default_profiles)
    warn_threshold: int = 3
    quarantine_threshold: int = 7
    dead_agent_s: float = 300.0
    message_window_s: float = 300.0
    memory_ceiling_mb: float = 1024.0
    quarantine_duration_s: float = 3600.0


class IncidentResponseConfig(BaseModel):
    cooldowns_s: dict[SecuritySeverity, float] = Field(
        default_factory=lambda: {
            SecuritySeverity.INFO: 30 * 60.0,
            SecuritySeverity.WARNING: 10 * 60.0,
            SecuritySeverity.CRITICAL: 2 * 60.0,
            SecuritySeverity.EMERGENCY: 0.0,
        }
    )
    escalation_rules: list[EscalationRule] = Field(
        default_factory=lambda: [
            EscalationRule(
                trigger_severity=SecuritySeverity.WARNING,
                count_threshold=5,
                window_minutes=10,
                escalate_to=SecuritySeverity.CRITICAL,
            ),
            EscalationRule(
                trigger_severity=SecuritySeverity.CRITICAL,
                count_threshold=3,
                window_minutes=5,
                escalate_to=SecuritySeverity.EMERGENCY,
            ),
        ]
    )
    expiry_s: float = 3600.0
    alert_timeout_s: float = 10.0
    queue_size: int = 1000


class SchedulerConfig(BaseModel):
    watchdog_interval_s: float = 60.0
    wallet_interval_s: float = 120.0
    network_interval_s: float = 180.0
    content_sweep_interval_s: float = 300.0
    rate_anomaly_interval_s: float = 60.0
    incident_cleanup_interval_s: float = 300.0


# ─── Root Config ──────────────────────────────────────────────────


class GuardianConfig(BaseSettings):
    """
    Root configuration. Loads from YAML, overridable by env vars.
    """

    model_config = SettingsConfigDict(
        env_prefix="GUARDIAN_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    instance_id: str = "guardian-default"

    server: ServerConfig = Field(default_factory=ServerConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    rpc: RpcConfig = Field(default_factory=RpcConfig)
    content_filter: ContentFilterConfig = Field(default_factory=ContentFilterConfig)
    wallet_sentinel: WalletSentinelConfig = Field(default_factory=WalletSentinelConfig)
    network_shield: NetworkShieldConfig = Field(default_factory=NetworkShieldConfig)
    agent_watchdog: AgentWatchdogConfig = Field(default_factory=AgentWatchdogConfig)
    incident_response: IncidentResponseConfig = Field(default_factory=IncidentResponseConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _env_overrides() -> dict[str, Any]:
    """Conventional, unprefixed variables shared with the rest of the fleet."""
    raw: dict[str, Any] = {}
    if database_url := os.environ.get("DATABASE_URL"):
        raw.setdefault("store", {})["url"] = database_url
    if solana_rpc := os.environ.get("SOLANA_RPC_URL"):
        raw.setdefault("rpc", {}).setdefault("default_urls", {})[Chain.SOLANA.value] = solana_rpc
    if polygon_rpc := os.environ.get("POLYGON_RPC_URL"):
        raw.setdefault("rpc", {}).setdefault("default_urls", {})[Chain.POLYGON.value] = polygon_rpc
    if log_level := os.environ.get("GUARDIAN_LOGGING__LEVEL"):
        raw.setdefault("logging", {})["level"] = log_level
    if log_format := os.environ.get("GUARDIAN_LOGGING__FORMAT"):
        raw.setdefault("logging", {})["format"] = log_format
    if store_url := os.environ.get("GUARDIAN_STORE__URL"):
        raw.setdefault("store", {})["url"] = store_url
    return raw


def load_config(config_path: str | Path | None = None) -> GuardianConfig:
    """
    Load configuration from YAML file, then apply environment variable overrides.
    """
    raw: dict[str, Any] = {}

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                raw = yaml.safe_load(f) or {}

    raw = _deep_merge(raw, _env_overrides())
    return GuardianConfig(**raw)
