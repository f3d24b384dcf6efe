"""
Guardian -- Detection Rule Tables

Known-bad domains, URL heuristics, prompt-injection and secret-shaped
patterns, expressed as data. Scanners walk these tables in order; adding a
rule never touches scanning code.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from guardian.security.types import ThreatSeverity, ThreatType


@dataclass(frozen=True)
class PatternRule:
    """One row of a detection table."""

    label: str
    pattern: re.Pattern[str]
    threat_type: ThreatType
    severity: ThreatSeverity

    def search(self, text: str) -> re.Match[str] | None:
        return self.pattern.search(text)


def _rule(
    label: str,
    regex: str,
    threat_type: ThreatType,
    severity: ThreatSeverity,
    flags: int = 0,
) -> PatternRule:
    return PatternRule(label, re.compile(regex, flags), threat_type, severity)


# ─── Domains ──────────────────────────────────────────────────────


KNOWN_PHISHING_DOMAINS: frozenset[str] = frozenset({
    # Solana ecosystem impersonation
    "solana-airdrop.com", "solana-claim.com", "phantom-wallet.net", "phantom-connect.com",
    "sol-airdrop.xyz", "solana-free.com", "phantom-update.com", "phantom-app.net",
    "solana-rewards.com", "jupiter-airdrop.com", "jup-claim.com", "raydium-claim.com",
    "solscan-verify.com", "meteora-claim.com", "orca-rewards.com",
    # Generic crypto phishing
    "dex-trade.io", "uniswap-rewards.com", "pancakeswap-claim.com",
    "opensea-verify.com", "metamask-wallet.net", "metamask-update.io",
    "trustwallet-update.com", "coinbase-verify.net", "binance-airdrop.xyz",
    "etherscan-verify.com", "free-crypto-airdrop.com", "claim-crypto.net",
    # Telegram impersonation
    "telegram-security.com", "tg-verify.com", "telegram-update.net",
})

URL_SHORTENERS: frozenset[str] = frozenset({
    "bit.ly", "tinyurl.com", "t.co", "goo.gl", "ow.ly", "is.gd", "buff.ly", "rebrand.ly",
})


# ─── URL Heuristics ───────────────────────────────────────────────


_PHISH = ThreatType.PHISHING_LINK
_HIGH = ThreatSeverity.HIGH

DEFAULT_URL_RULES: list[PatternRule] = [
    _rule(
        "brand_claim",
        r"(?:solana|phantom|jupiter|raydium|orca|drift|jito|bonk|wif)[\-_.]?"
        r"(?:claim|airdrop|reward|verify|update|connect|auth)",
        _PHISH, _HIGH, re.IGNORECASE,
    ),
    _rule("wallet_drainer", r"(?:approve|connect|verify)[\-_.]?(?:wallet|token|nft)", _PHISH, _HIGH, re.IGNORECASE),
    _rule("fake_dex", r"(?:dex|swap|bridge)[\-_.]?(?:trade|exchange|airdrop)", _PHISH, _HIGH, re.IGNORECASE),
    _rule("ip_literal", r"https?://\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}", _PHISH, _HIGH),
    _rule("risky_tld", r"\.(?:xyz|top|club|work|click|link|online|site|fun|icu|buzz)/", _PHISH, _HIGH, re.IGNORECASE),
]


# ─── Prompt Injection ─────────────────────────────────────────────


_INJ = ThreatType.PROMPT_INJECTION
_I = re.IGNORECASE

DEFAULT_INJECTION_RULES: list[PatternRule] = [
    # Direct override
    _rule("ignore_previous", r"ignore\s+(?:all\s+)?previous\s+instructions", _INJ, _HIGH, _I),
    _rule("forget_instructions", r"forget\s+(?:all\s+)?your\s+(?:previous\s+)?instructions", _INJ, _HIGH, _I),
    _rule("disregard_prior", r"disregard\s+(?:all\s+)?prior\s+(?:instructions|rules|guidelines)", _INJ, _HIGH, _I),
    _rule("override_prompt", r"override\s+(?:your|the)\s+(?:system|base)\s+prompt", _INJ, _HIGH, _I),
    _rule("persona_swap", r"you\s+are\s+now\s+(?:a|an)\s+(?:different|new|evil)", _INJ, _HIGH, _I),
    # Prompt extraction
    _rule(
        "reveal_prompt",
        r"(?:show|reveal|print|display|repeat|output)\s+(?:your|the)\s+"
        r"(?:system|base|initial|original)\s+prompt",
        _INJ, _HIGH, _I,
    ),
    _rule(
        "ask_prompt",
        r"what\s+(?:is|are)\s+your\s+(?:system|base|initial)\s+(?:prompt|instructions|rules)",
        _INJ, _HIGH, _I,
    ),
    # Role hijacking
    _rule(
        "pretend_role",
        r"pretend\s+(?:to\s+be|you\s+are|you're)\s+(?:a\s+)?(?:different|evil|hacked|compromised)",
        _INJ, _HIGH, _I,
    ),
    _rule("act_as", r"act\s+as\s+(?:a\s+)?(?:different|new|evil)\s+(?:AI|bot|agent|system)", _INJ, _HIGH, _I),
    # Jailbreaks
    _rule("dan_mode", r"\bDAN\b.*\bmode\b", _INJ, _HIGH, _I),
    _rule("jailbreak", r"\bjailbreak\b", _INJ, _HIGH, _I),
    _rule("developer_mode", r"developer\s+mode\s+(?:enabled|on|activated)", _INJ, _HIGH, _I),
    # Code smuggled in a fenced block
    _rule(
        "code_injection",
        r"```(?:python|javascript|bash|sh|cmd|powershell)\s*\n.*"
        r"(?:import\s+os|subprocess|exec|eval|system\()",
        _INJ, _HIGH, _I | re.DOTALL,
    ),
    # Social-engineered drain
    _rule(
        "drain_request",
        r"(?:send|transfer|withdraw)\s+(?:all|everything|max)\s+(?:sol|tokens?|funds?|balance)",
        _INJ, _HIGH, _I,
    ),
    _rule("admin_grab", r"(?:make|set|grant)\s+(?:me|user)\s+(?:an?\s+)?admin", _INJ, _HIGH, _I),
]

# Long-text heuristic: more than this many instruction-like phrases in a
# message longer than INSTRUCTION_TEXT_MIN_LEN chars.
INSTRUCTION_PHRASE = re.compile(
    r"\b(?:you must|you should|you will|you are|your task|your role)\b", re.IGNORECASE
)
INSTRUCTION_TEXT_MIN_LEN = 2000
INSTRUCTION_PHRASE_MAX = 5

BASE64_BLOB = re.compile(r"[A-Za-z0-9+/]{100,}={0,2}")
BASE64_TEXT_MIN_LEN = 200


# ─── Secrets ──────────────────────────────────────────────────────


_LEAK = ThreatType.LEAKED_SECRET
_CRIT = ThreatSeverity.CRITICAL

DEFAULT_SECRET_RULES: list[PatternRule] = [
    _rule("solana_private_key", r"[1-9A-HJ-NP-Za-km-z]{64,88}", _LEAK, _CRIT),
    _rule("evm_private_key", r"0x[0-9a-fA-F]{64}", _LEAK, _CRIT),
    _rule("openai_key", r"sk-[a-zA-Z0-9]{20,}", _LEAK, _CRIT),
    _rule("anthropic_key", r"sk-ant-[a-zA-Z0-9]{20,}", _LEAK, _CRIT),
    _rule("groq_key", r"gsk_[a-zA-Z0-9]{20,}", _LEAK, _CRIT),
    _rule("github_token", r"ghp_[a-zA-Z0-9]{36}", _LEAK, _CRIT),
    _rule("slack_bot_token", r"xoxb-[0-9]{10,}", _LEAK, _CRIT),
    _rule("google_api_key", r"AIza[0-9A-Za-z_-]{35}", _LEAK, _CRIT),
    _rule("telegram_bot_token", r"\d{8,12}:[A-Za-z0-9_-]{35}", _LEAK, _CRIT, re.ASCII),
    _rule("aws_access_key", r"AKIA[0-9A-Z]{16}", _LEAK, _CRIT),
]

# A full 64-byte Solana keypair in base58. Checked on outbound only.
SOLANA_KEYPAIR = re.compile(r"[1-9A-HJ-NP-Za-km-z]{87,88}")


# ─── Extractors ───────────────────────────────────────────────────


_URL = re.compile(r"https?://[^\s<>\"{}|\\^`\[\]]+", re.IGNORECASE)
_BASE58_ADDRESS = re.compile(r"\b[1-9A-HJ-NP-Za-km-z]{32,44}\b")
_URL_CREDENTIALS = re.compile(r"//.*@")


def extract_urls(text: str) -> list[str]:
    return _URL.findall(text)


def extract_base58_addresses(text: str) -> list[str]:
    return _BASE58_ADDRESS.findall(text)


def hash_content(text: str) -> str:
    """Stable content fingerprint for dedup and content_blocks rows."""
    return hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()


def mask_url(url: str) -> str:
    """Strip userinfo so credentials embedded in RPC URLs never reach logs or events."""
    return _URL_CREDENTIALS.sub("//***@", url)
