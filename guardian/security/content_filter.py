"""
Guardian -- Content Filter

Scans text flowing into and out of the fleet:
  - inbound (user messages): phishing links, scam addresses, prompt
    injection, pasted secrets
  - outbound (LLM output, posts): secret-shaped strings, verbatim values of
    sensitive environment variables, hallucinated suspicious URLs, raw keypairs

Detection is synchronous and does no I/O. Reporting and content-block
persistence are handed to a background task so the caller gets its
``ScanResult`` immediately.

A periodic sweep over recent inter-agent messages catches secrets that
bypassed real-time scanning.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Iterator, Mapping
from urllib.parse import urlsplit

from guardian.primitives.common import utc_now
from guardian.security.base import BaseDetector, Clock
from guardian.security.patterns import (
    BASE64_BLOB,
    BASE64_TEXT_MIN_LEN,
    DEFAULT_INJECTION_RULES,
    DEFAULT_SECRET_RULES,
    DEFAULT_URL_RULES,
    INSTRUCTION_PHRASE,
    INSTRUCTION_PHRASE_MAX,
    INSTRUCTION_TEXT_MIN_LEN,
    KNOWN_PHISHING_DOMAINS,
    SOLANA_KEYPAIR,
    URL_SHORTENERS,
    PatternRule,
    extract_base58_addresses,
    extract_urls,
    hash_content,
)
from guardian.security.types import (
    ContentThreat,
    ScanResult,
    SecurityCategory,
    SecurityEvent,
    SecuritySeverity,
    ThreatSeverity,
    ThreatType,
)

if TYPE_CHECKING:
    from guardian.clients.store import SecurityStore
    from guardian.config import ContentFilterConfig
    from guardian.security.types import SecurityReporter

_MIN_SECRET_LEN = 9  # Shorter env values match too much ordinary text
_MAX_TRACKED_HASHES = 5_000
_PREVIEW_LEN = 200
_BLOCK_PREVIEW_LEN = 500
_REDACTED = "[redacted: secret material]"


class ContentFilter(BaseDetector):
    def __init__(
        self,
        config: ContentFilterConfig,
        report: SecurityReporter,
        store: SecurityStore | None = None,
        clock: Clock = utc_now,
        environ: Mapping[str, str] | None = None,
        url_rules: list[PatternRule] | None = None,
        injection_rules: list[PatternRule] | None = None,
        secret_rules: list[PatternRule] | None = None,
    ) -> None:
        super().__init__(report, store, clock)
        self._config = config
        self._environ = environ if environ is not None else os.environ
        self._phishing_domains = KNOWN_PHISHING_DOMAINS | {
            d.lower() for d in config.extra_phishing_domains
        }
        self._scam_addresses = frozenset(config.known_scam_addresses)
        self._url_rules = list(url_rules or DEFAULT_URL_RULES)
        self._injection_rules = list(injection_rules or DEFAULT_INJECTION_RULES)
        self._secret_rules = list(secret_rules or DEFAULT_SECRET_RULES)
        self._dedup_window = timedelta(seconds=config.dedup_window_s)

        # content hash -> last time it was reported
        self._reported: dict[str, datetime] = {}
        # agent message id -> time the sweep flagged it
        self._swept: dict[Any, datetime] = {}

        self._total_scans = 0
        self._total_blocked = 0
        self._duplicates_suppressed = 0
        self._sweep_leaks = 0

    @property
    def detector_name(self) -> str:
        return "content_filter"

    async def initialize(self) -> None:
        """Seed the dedup window from recently blocked content."""
        store = self._store
        if store is not None:
            since = self._clock() - self._dedup_window
            rows = await self._best_effort(
                "blocked_hashes_load",
                lambda: store.fetch_recent_block_hashes(since, self._config.preload_limit),
            )
            for content_hash, seen_at in rows or []:
                self._reported.setdefault(content_hash, seen_at)

        self._logger.info(
            "content_filter_initialized",
            phishing_domains=len(self._phishing_domains),
            url_rules=len(self._url_rules),
            injection_rules=len(self._injection_rules),
            secret_rules=len(self._secret_rules),
            preloaded_hashes=len(self._reported),
        )

    # ─── Inbound ──────────────────────────────────────────────────

    def scan_inbound(
        self,
        text: str,
        user_id: str | None = None,
        chat_id: str | None = None,
    ) -> ScanResult:
        self._total_scans += 1
        threats: list[ContentThreat] = []

        for url in extract_urls(text):
            threat = self.check_url(url)
            if threat is not None:
                threats.append(threat)

        for address in extract_base58_addresses(text):
            if address in self._scam_addresses:
                threats.append(
                    ContentThreat(
                        type=ThreatType.SCAM_ADDRESS,
                        severity=ThreatSeverity.CRITICAL,
                        description=f"Known scam address detected: {address[:8]}...",
                        match=address,
                    )
                )

        injection = self.check_prompt_injection(text)
        if injection is not None:
            threats.append(injection)

        secret = self.check_secrets(text)
        if secret is not None:
            threats.append(secret)

        if threats:
            self._total_blocked += 1
            content_hash = hash_content(text)
            if self._recently_reported(content_hash):
                self._duplicates_suppressed += 1
            elif self._spawn(
                self._log_and_report(text, content_hash, threats, "inbound", user_id, chat_id),
                "report_inbound",
            ):
                # Only a report that actually went out starts the dedup window.
                self._remember(content_hash)

        return ScanResult(clean=not threats, threats=threats)

    # ─── Outbound ─────────────────────────────────────────────────

    def scan_outbound(self, text: str, destination: str) -> ScanResult:
        self._total_scans += 1
        threats: list[ContentThreat] = []

        # One secret-shaped hit is enough to block
        if self._first_secret_rule(text) is not None:
            threats.append(
                ContentThreat(
                    type=ThreatType.LEAKED_SECRET,
                    severity=ThreatSeverity.CRITICAL,
                    description="API key or secret detected in outbound content",
                )
            )

        for name, value in self._sensitive_values():
            if value in text:
                threats.append(
                    ContentThreat(
                        type=ThreatType.LEAKED_SECRET,
                        severity=ThreatSeverity.CRITICAL,
                        description=f"Environment variable {name} leaked in outbound content",
                    )
                )

        for url in extract_urls(text):
            threat = self.check_url(url)
            if threat is not None:
                threats.append(
                    threat.model_copy(
                        update={"description": f"Generated content contains suspicious URL: {url[:60]}"}
                    )
                )

        if SOLANA_KEYPAIR.search(text):
            threats.append(
                ContentThreat(
                    type=ThreatType.LEAKED_SECRET,
                    severity=ThreatSeverity.CRITICAL,
                    description="Possible Solana private key in outbound content",
                )
            )

        if threats:
            self._total_blocked += 1
            self._spawn(
                self._log_and_report(
                    text, hash_content(text), threats, f"outbound:{destination}"
                ),
                "report_outbound",
            )

        return ScanResult(clean=not threats, threats=threats)

    # ─── Checks ───────────────────────────────────────────────────

    def check_url(self, url: str) -> ContentThreat | None:
        try:
            hostname = (urlsplit(url).hostname or "").lower()
        except ValueError:
            return None
        if not hostname:
            return None

        for domain in self._phishing_domains:
            if hostname == domain or hostname.endswith("." + domain):
                return ContentThreat(
                    type=ThreatType.PHISHING_LINK,
                    severity=ThreatSeverity.CRITICAL,
                    description=f"Known phishing domain: {hostname}",
                    match=url,
                )

        for rule in self._url_rules:
            if rule.search(url):
                return ContentThreat(
                    type=rule.threat_type,
                    severity=rule.severity,
                    description=f"Suspicious URL pattern ({rule.label}): {url[:60]}",
                    match=url,
                )

        if hostname in URL_SHORTENERS:
            return ContentThreat(
                type=ThreatType.SUSPICIOUS_CONTENT,
                severity=ThreatSeverity.MEDIUM,
                description=f"URL shortener detected: {hostname} (could hide phishing)",
                match=url,
            )

        return None

    def check_prompt_injection(self, text: str) -> ContentThreat | None:
        for rule in self._injection_rules:
            match = rule.search(text)
            if match:
                return ContentThreat(
                    type=rule.threat_type,
                    severity=rule.severity,
                    description=f'Prompt injection detected: "{match.group(0)[:50]}"',
                    match=match.group(0),
                )

        if (
            len(text) > INSTRUCTION_TEXT_MIN_LEN
            and len(INSTRUCTION_PHRASE.findall(text)) > INSTRUCTION_PHRASE_MAX
        ):
            return ContentThreat(
                type=ThreatType.PROMPT_INJECTION,
                severity=ThreatSeverity.MEDIUM,
                description="Suspicious: long message with multiple instruction-like patterns",
            )

        if len(text) > BASE64_TEXT_MIN_LEN and BASE64_BLOB.search(text):
            return ContentThreat(
                type=ThreatType.SUSPICIOUS_CONTENT,
                severity=ThreatSeverity.MEDIUM,
                description="Large base64-encoded content detected (possible encoded payload)",
            )

        return None

    def check_secrets(self, text: str) -> ContentThreat | None:
        rule = self._first_secret_rule(text)
        if rule is None:
            return None
        return ContentThreat(
            type=ThreatType.LEAKED_SECRET,
            severity=ThreatSeverity.CRITICAL,
            description=f"Possible API key or private key detected in message ({rule.label})",
        )

    def _first_secret_rule(self, text: str) -> PatternRule | None:
        for rule in self._secret_rules:
            if rule.search(text):
                return rule
        return None

    def _sensitive_values(self) -> Iterator[tuple[str, str]]:
        for name in self._config.sensitive_env_vars:
            value = self._environ.get(name)
            if value and len(value) >= _MIN_SECRET_LEN:
                yield name, value

    def _recently_reported(self, content_hash: str) -> bool:
        last = self._reported.get(content_hash)
        return last is not None and self._clock() - last < self._dedup_window

    def _remember(self, content_hash: str) -> None:
        now = self._clock()
        self._reported[content_hash] = now
        if len(self._reported) > _MAX_TRACKED_HASHES:
            cutoff = now - self._dedup_window
            self._reported = {h: t for h, t in self._reported.items() if t >= cutoff}

    # ─── Reporting ────────────────────────────────────────────────

    async def _log_and_report(
        self,
        text: str,
        content_hash: str,
        threats: list[ContentThreat],
        direction: str,
        user_id: str | None = None,
        chat_id: str | None = None,
    ) -> None:
        if any(t.severity == ThreatSeverity.CRITICAL for t in threats):
            severity = SecuritySeverity.CRITICAL
        elif any(t.severity == ThreatSeverity.HIGH for t in threats):
            severity = SecuritySeverity.WARNING
        else:
            severity = SecuritySeverity.INFO

        # Never copy secret material into events or the block log
        has_secret = any(t.type == ThreatType.LEAKED_SECRET for t in threats)
        preview = _REDACTED if has_secret else text[:_PREVIEW_LEN]
        block_preview = _REDACTED if has_secret else text[:_BLOCK_PREVIEW_LEN]

        await self._emit(
            SecurityEvent(
                category=SecurityCategory.CONTENT,
                severity=severity,
                title=f"Content threat ({direction}): {', '.join(t.type for t in threats)}",
                details={
                    "direction": direction,
                    "threat_count": len(threats),
                    "threats": [
                        {"type": t.type, "severity": t.severity, "description": t.description}
                        for t in threats
                    ],
                    "content_preview": preview,
                    "content_hash": content_hash,
                    "user_id": user_id,
                    "chat_id": chat_id,
                },
                auto_response=(
                    "Content blocked" if severity == SecuritySeverity.CRITICAL else "Logged for review"
                ),
                timestamp=self._clock(),
            )
        )

        store = self._store
        if store is None:
            return
        for threat in threats:
            if threat.severity not in (ThreatSeverity.CRITICAL, ThreatSeverity.HIGH):
                continue
            await self._best_effort(
                "content_block_persist",
                lambda t=threat: store.record_content_block(
                    str(t.type), content_hash, block_preview, user_id, chat_id
                ),
            )

    # ─── Periodic Sweep ───────────────────────────────────────────

    async def _cycle(self) -> None:
        await self.scan_recent_messages()

    async def scan_recent_messages(self) -> int:
        """
        Secret-only scan of recent inter-agent messages.

        Each message raises at most one emergency event, however many sweeps
        see it. Returns the number of new leaks found.
        """
        store = self._store
        if store is None:
            return 0

        lookback = timedelta(minutes=self._config.sweep_lookback_minutes)
        rows = await self._best_effort(
            "recent_messages_fetch",
            lambda: store.fetch_recent_agent_messages(lookback, self._config.sweep_limit),
        )

        now = self._clock()
        self._swept = {k: t for k, t in self._swept.items() if now - t < lookback * 2}

        found = 0
        for row in rows or []:
            message_id = row.get("id")
            if message_id in self._swept:
                continue
            payload = row.get("payload")
            text = payload if isinstance(payload, str) else json.dumps(payload, default=str)
            rule = self._first_secret_rule(text)
            if rule is None:
                continue

            self._swept[message_id] = now
            found += 1
            self._sweep_leaks += 1
            from_agent = row.get("from_agent", "unknown")
            await self._emit(
                SecurityEvent(
                    category=SecurityCategory.CONTENT,
                    severity=SecuritySeverity.EMERGENCY,
                    title=f"SECRET LEAK in agent message from {from_agent}",
                    details={
                        "message_id": message_id,
                        "from_agent": from_agent,
                        "pattern": rule.label,
                        "created_at": row.get("created_at"),
                    },
                    auto_response="Alert sent to admin",
                    timestamp=now,
                )
            )

        if found:
            self._logger.warning("agent_message_secret_leaks", count=found)
        return found

    # ─── Status ───────────────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return {
            "total_scans": self._total_scans,
            "total_blocked": self._total_blocked,
            "duplicates_suppressed": self._duplicates_suppressed,
            "sweep_leaks": self._sweep_leaks,
            "known_phishing_domains": len(self._phishing_domains),
            "url_rules": len(self._url_rules),
            "injection_rules": len(self._injection_rules),
            "secret_rules": len(self._secret_rules),
            "tracked_hashes": len(self._reported),
            **self._cycle_stats(),
        }
