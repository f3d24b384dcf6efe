"""
Guardian -- Security Layer

Detectors observe, IncidentResponse decides who hears about it.
``GuardianService`` lives in ``guardian.security.service``.
"""

from guardian.security.agent_watchdog import AgentWatchdog
from guardian.security.base import BaseDetector
from guardian.security.content_filter import ContentFilter
from guardian.security.incident_response import AlertCallbacks, IncidentResponse
from guardian.security.network_shield import NetworkShield
from guardian.security.types import (
    AgentProfile,
    ContentThreat,
    Incident,
    ScanResult,
    SecurityCategory,
    SecurityEvent,
    SecurityReporter,
    SecuritySeverity,
    ThreatSeverity,
    ThreatType,
    WalletConfig,
)
from guardian.security.wallet_sentinel import WalletSentinel

__all__ = [
    "AgentProfile",
    "AgentWatchdog",
    "AlertCallbacks",
    "BaseDetector",
    "ContentFilter",
    "ContentThreat",
    "Incident",
    "IncidentResponse",
    "NetworkShield",
    "ScanResult",
    "SecurityCategory",
    "SecurityEvent",
    "SecurityReporter",
    "SecuritySeverity",
    "ThreatSeverity",
    "ThreatType",
    "WalletConfig",
    "WalletSentinel",
]
