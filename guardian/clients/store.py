"""
Guardian -- Security Store

Async Postgres access for the security schema (events, wallet snapshots,
quarantine records, content blocks, rate-limit log) and read access to the
fleet's heartbeat and message tables.

Every method raises on failure. Callers decide whether a failure matters;
detectors treat all of them as best-effort.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import asyncpg
import structlog

if TYPE_CHECKING:
    from guardian.config import StoreConfig
    from guardian.security.types import SecurityEvent

logger = structlog.get_logger()

# Table DDL. Statements are split on ";" so no statement may contain one.
TABLE_SQL = """
CREATE TABLE IF NOT EXISTS security_events (
    id              SERIAL PRIMARY KEY,
    event_id        TEXT UNIQUE,
    category        TEXT NOT NULL
                    CHECK (category IN ('wallet', 'network', 'content', 'agent', 'incident')),
    severity        TEXT NOT NULL
                    CHECK (severity IN ('info', 'warning', 'critical', 'emergency')),
    title           TEXT NOT NULL,
    details         JSONB NOT NULL DEFAULT '{}',
    auto_response   TEXT,
    source_agent    TEXT DEFAULT 'guardian',
    resolved        BOOLEAN DEFAULT FALSE,
    resolved_at     TIMESTAMPTZ,
    resolved_by     TEXT,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_security_events_unresolved
    ON security_events (severity, created_at DESC) WHERE resolved = FALSE;

CREATE INDEX IF NOT EXISTS idx_security_events_category
    ON security_events (category, created_at DESC);

CREATE TABLE IF NOT EXISTS wallet_snapshots (
    id              SERIAL PRIMARY KEY,
    wallet_address  TEXT NOT NULL,
    wallet_label    TEXT NOT NULL,
    chain           TEXT NOT NULL DEFAULT 'solana',
    balance         NUMERIC(30,9) NOT NULL,
    balance_raw     NUMERIC(40,0) NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_wallet_snapshots_addr
    ON wallet_snapshots (wallet_address, created_at DESC);

CREATE TABLE IF NOT EXISTS agent_quarantine (
    agent_name      TEXT PRIMARY KEY,
    quarantined_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    reason          TEXT NOT NULL,
    quarantined_by  TEXT NOT NULL DEFAULT 'guardian',
    severity        TEXT NOT NULL DEFAULT 'critical',
    auto_release_at TIMESTAMPTZ,
    released        BOOLEAN DEFAULT FALSE,
    released_at     TIMESTAMPTZ,
    released_by     TEXT
);

CREATE TABLE IF NOT EXISTS content_blocks (
    id              SERIAL PRIMARY KEY,
    block_type      TEXT NOT NULL
                    CHECK (block_type IN ('phishing_link', 'scam_address', 'prompt_injection',
                                          'leaked_secret', 'suspicious_content')),
    content_hash    TEXT NOT NULL,
    content_preview TEXT,
    source_user_id  TEXT,
    source_chat_id  TEXT,
    action_taken    TEXT NOT NULL DEFAULT 'blocked',
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_content_blocks_type
    ON content_blocks (block_type, created_at DESC);

CREATE TABLE IF NOT EXISTS rate_limit_log (
    id              SERIAL PRIMARY KEY,
    service_name    TEXT NOT NULL,
    request_count   INTEGER NOT NULL DEFAULT 0,
    window_start    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    window_seconds  INTEGER NOT NULL DEFAULT 60,
    blocked         BOOLEAN DEFAULT FALSE,
    created_at      TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_rate_limit_service
    ON rate_limit_log (service_name, window_start DESC);

CREATE OR REPLACE VIEW active_security_incidents AS
SELECT id, category, severity, title, details, auto_response, created_at
FROM security_events
WHERE resolved = FALSE AND severity IN ('critical', 'emergency')
ORDER BY created_at DESC;

CREATE OR REPLACE VIEW quarantined_agents AS
SELECT agent_name, quarantined_at, reason, severity, auto_release_at
FROM agent_quarantine
WHERE released = FALSE
ORDER BY quarantined_at DESC;

CREATE OR REPLACE VIEW wallet_balance_trend AS
SELECT wallet_address, wallet_label, chain, balance, created_at
FROM wallet_snapshots
WHERE created_at > NOW() - INTERVAL '24 hours'
ORDER BY wallet_address, created_at DESC
"""


class SecurityStore:
    """
    Async Postgres client with connection pooling for the security schema.
    """

    def __init__(self, config: StoreConfig) -> None:
        self._config = config
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        """Create connection pool and initialise schema."""
        self._pool = await asyncpg.create_pool(
            dsn=self._config.dsn,
            min_size=1,
            max_size=self._config.pool_size,
            ssl="require" if self._config.ssl else None,
            command_timeout=self._config.command_timeout_s,
        )
        logger.info(
            "security_store_connected",
            host=self._config.host,
            database=self._config.database,
        )
        await self._init_schema()

    async def _init_schema(self) -> None:
        async with self.pool.acquire() as conn:
            for statement in TABLE_SQL.split(";"):
                stmt = statement.strip()
                if stmt:
                    await conn.execute(stmt)
        logger.info("security_schema_initialised")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("security_store_disconnected")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("SecurityStore not connected. Call connect() first.")
        return self._pool

    async def health_check(self) -> dict[str, Any]:
        """Check connectivity."""
        try:
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return {"status": "connected"}
        except Exception as e:
            return {"status": "disconnected", "error": str(e)}

    # ─── Security Events ──────────────────────────────────────────

    async def log_security_event(self, event: SecurityEvent) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO security_events
                    (event_id, category, severity, title, details, auto_response,
                     source_agent, created_at)
                VALUES ($1, $2, $3, $4, $5::jsonb, $6, $7, $8)
                ON CONFLICT (event_id) DO NOTHING
                """,
                event.id,
                str(event.category),
                str(event.severity),
                event.title,
                json.dumps(event.details, default=str),
                event.auto_response,
                event.source_agent,
                event.timestamp,
            )

    async def fetch_recent_events(self, limit: int = 50) -> list[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT category, severity, title, details, auto_response, created_at
                FROM security_events
                ORDER BY created_at DESC
                LIMIT $1
                """,
                limit,
            )
        return [dict(r) for r in rows]

    # ─── Wallet Snapshots ─────────────────────────────────────────

    async def record_wallet_snapshot(
        self,
        address: str,
        label: str,
        chain: str,
        balance: float,
        balance_raw: int,
        at: datetime,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO wallet_snapshots
                    (wallet_address, wallet_label, chain, balance, balance_raw, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                address,
                label,
                chain,
                balance,
                balance_raw,
                at,
            )

    async def get_balance_history(
        self, address: str, since: datetime, limit: int = 100
    ) -> list[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT balance, created_at
                FROM wallet_snapshots
                WHERE wallet_address = $1 AND created_at > $2
                ORDER BY created_at DESC
                LIMIT $3
                """,
                address,
                since,
                limit,
            )
        return [{"balance": float(r["balance"]), "timestamp": r["created_at"]} for r in rows]

    # ─── Quarantine ───────────────────────────────────────────────

    async def upsert_quarantine(
        self,
        agent_name: str,
        reason: str,
        auto_release_at: datetime | None,
        quarantined_at: datetime,
        severity: str = "critical",
        quarantined_by: str = "guardian",
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO agent_quarantine
                    (agent_name, quarantined_at, reason, quarantined_by, severity, auto_release_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (agent_name) DO UPDATE
                SET quarantined_at = EXCLUDED.quarantined_at,
                    reason = EXCLUDED.reason,
                    severity = EXCLUDED.severity,
                    auto_release_at = EXCLUDED.auto_release_at,
                    released = FALSE,
                    released_at = NULL,
                    released_by = NULL
                """,
                agent_name,
                quarantined_at,
                reason,
                quarantined_by,
                severity,
                auto_release_at,
            )

    async def mark_quarantine_released(
        self, agent_name: str, released_by: str, released_at: datetime
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE agent_quarantine
                SET released = TRUE, released_at = $3, released_by = $2
                WHERE agent_name = $1
                """,
                agent_name,
                released_by,
                released_at,
            )

    async def fetch_active_quarantines(self) -> list[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT agent_name, quarantined_at, reason, auto_release_at
                FROM agent_quarantine
                WHERE released = FALSE
                """
            )
        return [dict(r) for r in rows]

    async def set_agent_enabled(self, agent_name: str, enabled: bool) -> None:
        """Toggle the registry flag the supervisor reads before (re)starting an agent."""
        async with self.pool.acquire() as conn:
            if enabled:
                await conn.execute(
                    """
                    UPDATE agent_registry
                    SET enabled = TRUE, config = config - 'quarantined'
                    WHERE agent_name = $1
                    """,
                    agent_name,
                )
            else:
                await conn.execute(
                    """
                    UPDATE agent_registry
                    SET enabled = FALSE, config = config || '{"quarantined": true}'::jsonb
                    WHERE agent_name = $1
                    """,
                    agent_name,
                )

    # ─── Content Blocks ───────────────────────────────────────────

    async def record_content_block(
        self,
        block_type: str,
        content_hash: str,
        preview: str,
        user_id: str | None = None,
        chat_id: str | None = None,
        action: str = "blocked",
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO content_blocks
                    (block_type, content_hash, content_preview, source_user_id,
                     source_chat_id, action_taken)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                block_type,
                content_hash,
                preview,
                user_id,
                chat_id,
                action,
            )

    async def fetch_recent_block_hashes(
        self, since: datetime, limit: int = 500
    ) -> list[tuple[str, datetime]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT content_hash, created_at
                FROM content_blocks
                WHERE created_at > $1
                ORDER BY created_at DESC
                LIMIT $2
                """,
                since,
                limit,
            )
        return [(r["content_hash"], r["created_at"]) for r in rows]

    # ─── Rate Limits ──────────────────────────────────────────────

    async def record_rate_limit(
        self,
        service: str,
        request_count: int,
        window_start: datetime,
        window_seconds: int,
        blocked: bool,
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO rate_limit_log
                    (service_name, request_count, window_start, window_seconds, blocked)
                VALUES ($1, $2, $3, $4, $5)
                """,
                service,
                request_count,
                window_start,
                window_seconds,
                blocked,
            )

    # ─── Fleet Telemetry (read-only) ──────────────────────────────

    async def fetch_agent_heartbeats(self) -> list[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT agent_name, status, last_beat, memory_mb FROM agent_heartbeats"
            )
        return [dict(r) for r in rows]

    async def fetch_message_volumes(self, window: timedelta) -> list[dict[str, Any]]:
        """Per-sender message count, recipients and types over the trailing window."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT from_agent,
                       COUNT(*) AS msg_count,
                       array_agg(DISTINCT to_agent) AS recipients,
                       array_agg(DISTINCT message_type) AS message_types
                FROM agent_messages
                WHERE created_at > NOW() - $1::interval
                GROUP BY from_agent
                """,
                window,
            )
        return [
            {
                "from_agent": r["from_agent"],
                "msg_count": int(r["msg_count"] or 0),
                "recipients": [x for x in (r["recipients"] or []) if x],
                "message_types": [x for x in (r["message_types"] or []) if x],
            }
            for r in rows
        ]

    async def fetch_recent_agent_messages(
        self, window: timedelta, limit: int = 50
    ) -> list[dict[str, Any]]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, from_agent, payload, created_at
                FROM agent_messages
                WHERE created_at > NOW() - $1::interval
                ORDER BY created_at DESC
                LIMIT $2
                """,
                window,
                limit,
            )
        return [dict(r) for r in rows]
