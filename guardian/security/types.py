"""
Guardian -- Security Type Definitions

The event contract shared by every detector and the incident responder,
plus the static and dynamic records each detector owns.

Detectors never hold a reference to how an event is delivered: they call
the injected ``SecurityReporter`` and move on.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Awaitable, Callable

from pydantic import Field

from guardian.primitives.common import GuardianBaseModel, new_id, utc_now


# ─── Enums ────────────────────────────────────────────────────────


class SecuritySeverity(enum.StrEnum):
    """How loud should this be?"""

    INFO = "info"  # Logged, never alerted
    WARNING = "warning"  # Logged, escalates on frequency
    CRITICAL = "critical"  # Operator alert
    EMERGENCY = "emergency"  # Operator alert, no cooldown

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[str, int] = {
    SecuritySeverity.INFO: 0,
    SecuritySeverity.WARNING: 1,
    SecuritySeverity.CRITICAL: 2,
    SecuritySeverity.EMERGENCY: 3,
}


def max_severity(a: SecuritySeverity, b: SecuritySeverity) -> SecuritySeverity:
    return a if a.rank >= b.rank else b


class SecurityCategory(enum.StrEnum):
    WALLET = "wallet"
    NETWORK = "network"
    CONTENT = "content"
    AGENT = "agent"
    INCIDENT = "incident"


SOLANA_MAINNET_RPC = "https://api.mainnet-beta.solana.com"


class Chain(enum.StrEnum):
    """Chains the RPC client can query. Everything but Solana speaks EVM JSON-RPC."""

    SOLANA = "solana"
    ETHEREUM = "ethereum"
    POLYGON = "polygon"
    ARBITRUM = "arbitrum"
    BASE = "base"

    @property
    def is_evm(self) -> bool:
        return self is not Chain.SOLANA


class ThreatType(enum.StrEnum):
    PHISHING_LINK = "phishing_link"
    SCAM_ADDRESS = "scam_address"
    PROMPT_INJECTION = "prompt_injection"
    LEAKED_SECRET = "leaked_secret"
    SUSPICIOUS_CONTENT = "suspicious_content"


class ThreatSeverity(enum.StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AgentState(enum.StrEnum):
    ACTIVE = "active"
    QUARANTINED = "quarantined"


# ─── Event Contract ───────────────────────────────────────────────


class SecurityEvent(GuardianBaseModel):
    """
    One observation from a detector. Immutable once created and persisted
    append-only.
    """

    model_config = {"populate_by_name": True, "from_attributes": True, "frozen": True}

    id: str = Field(default_factory=new_id)
    category: SecurityCategory
    severity: SecuritySeverity
    title: str
    details: dict[str, Any] = Field(default_factory=dict)
    auto_response: str | None = None
    source_agent: str = "guardian"
    timestamp: datetime = Field(default_factory=utc_now)


SecurityReporter = Callable[[SecurityEvent], Awaitable[None]]


class Incident(GuardianBaseModel):
    """
    A correlated group of events sharing a ``category:title-prefix`` key.

    ``received_at`` holds one receipt time per entry in ``events`` so that
    escalation windows count only events that actually arrived inside them.
    """

    id: str = Field(default_factory=new_id)
    key: str
    category: SecurityCategory
    severity: SecuritySeverity
    title: str
    events: list[SecurityEvent] = Field(default_factory=list)
    received_at: list[datetime] = Field(default_factory=list)
    first_seen: datetime = Field(default_factory=utc_now)
    last_seen: datetime = Field(default_factory=utc_now)
    escalated: bool = False
    resolved: bool = False


class EscalationRule(GuardianBaseModel):
    trigger_severity: SecuritySeverity
    count_threshold: int
    window_minutes: float
    escalate_to: SecuritySeverity


# ─── Agent Watchdog ───────────────────────────────────────────────


class AgentProfile(GuardianBaseModel):
    """Static behavioral baseline for one agent."""

    model_config = {"populate_by_name": True, "from_attributes": True, "frozen": True}

    agent_name: str
    expected_beat_interval_s: float = 120.0
    max_messages_per_window: int = 20
    expected_recipients: frozenset[str] = Field(default_factory=frozenset)
    expected_types: frozenset[str] = Field(default_factory=frozenset)


class AgentBehavior(GuardianBaseModel):
    """Live view of one agent, refreshed every watchdog cycle."""

    agent_name: str
    last_beat: datetime | None = None
    status: str = "unknown"
    message_count: int = 0
    recipients: set[str] = Field(default_factory=set)
    message_types: set[str] = Field(default_factory=set)
    memory_mb: float = 0.0
    anomaly_score: int = 0
    anomalies: list[str] = Field(default_factory=list)
    quarantined: bool = False
    quarantined_at: datetime | None = None
    quarantine_reason: str = ""
    auto_release_at: datetime | None = None

    @property
    def state(self) -> AgentState:
        return AgentState.QUARANTINED if self.quarantined else AgentState.ACTIVE


# ─── Wallet Sentinel ──────────────────────────────────────────────


class WalletConfig(GuardianBaseModel):
    address: str
    label: str
    chain: Chain = Chain.SOLANA
    drain_threshold_pct: float = 25.0
    low_balance_threshold: float = 0.05
    rpc_url: str = ""  # Empty means the chain's default RPC


class WalletSnapshot(GuardianBaseModel):
    address: str
    label: str
    chain: Chain
    balance: float
    balance_raw: int
    timestamp: datetime = Field(default_factory=utc_now)


# ─── Network Shield ───────────────────────────────────────────────


class RpcEndpointConfig(GuardianBaseModel):
    url: str
    label: str
    chain: Chain = Chain.SOLANA
    primary: bool = False


class RpcEndpoint(GuardianBaseModel):
    url: str
    label: str
    chain: Chain
    primary: bool = False
    last_height: int | None = None
    last_check_at: datetime | None = None
    consecutive_failures: int = 0
    validated: bool = False


class RateLimitConfig(GuardianBaseModel):
    service: str
    max_per_window: int
    window_s: float = 60.0


class RateLimitBucket(GuardianBaseModel):
    service: str
    window_start: datetime
    request_count: int = 0
    window_s: float = 60.0
    max_per_window: int
    blocked: bool = False


# ─── Content Filter ───────────────────────────────────────────────


class ContentThreat(GuardianBaseModel):
    type: ThreatType
    severity: ThreatSeverity
    description: str
    match: str | None = None


class ScanResult(GuardianBaseModel):
    clean: bool = True
    threats: list[ContentThreat] = Field(default_factory=list)
