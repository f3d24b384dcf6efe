"""
Guardian -- Security REST Router

Read-mostly operator surface over the running GuardianService.

Endpoints:
  GET  /api/v1/security/status                  -- per-detector status and counters
  GET  /api/v1/security/report                  -- human-readable incident report
  GET  /api/v1/security/incidents               -- active incidents
  GET  /api/v1/security/events                  -- persisted event history
  GET  /api/v1/security/agents/{name}/quarantine -- quarantine state of one agent
  POST /api/v1/security/agents/{name}/release   -- manual quarantine release
  POST /api/v1/security/scan                    -- scan text (inbound or outbound)
  POST /api/v1/security/commands                -- operator command dispatch
"""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import APIRouter, Request

from guardian.errors import CommandError

logger = structlog.get_logger("guardian.api.security")

router = APIRouter()

_UNAVAILABLE = {"status": "unavailable", "error": "Guardian not initialized"}


def _guardian(request: Request) -> Any:
    return getattr(request.app.state, "guardian", None)


@router.get("/api/v1/security/status")
async def get_security_status(request: Request) -> dict[str, Any]:
    guardian = _guardian(request)
    if guardian is None:
        return _UNAVAILABLE
    return {"status": "ok", "data": guardian.stats}


@router.get("/api/v1/security/report")
async def get_security_report(request: Request) -> dict[str, Any]:
    """Return the same report the operator channel receives."""
    guardian = _guardian(request)
    if guardian is None:
        return _UNAVAILABLE
    return {"status": "ok", "data": {"report": guardian.incidents.generate_report()}}


@router.get("/api/v1/security/incidents")
async def get_security_incidents(request: Request) -> dict[str, Any]:
    guardian = _guardian(request)
    if guardian is None:
        return _UNAVAILABLE
    incidents = guardian.incidents.status()["incidents"]
    return {"status": "ok", "data": {"count": len(incidents), "incidents": incidents}}


@router.get("/api/v1/security/events")
async def get_security_events(request: Request, limit: int = 50) -> dict[str, Any]:
    """Persisted event history, newest first. Survives restarts, unlike incidents."""
    guardian = _guardian(request)
    if guardian is None:
        return _UNAVAILABLE

    try:
        events = await guardian.recent_events(limit=limit)
    except Exception as exc:
        logger.warning("api_event_history_failed", error=str(exc))
        return {"status": "error", "error": str(exc)}
    if events is None:
        return {"status": "unavailable", "error": "No store attached"}
    return {"status": "ok", "data": {"count": len(events), "events": events}}


@router.get("/api/v1/security/agents/{name}/quarantine")
async def get_agent_quarantine(name: str, request: Request) -> dict[str, Any]:
    """Whether an agent may be dispatched work. Unknown agents are never quarantined."""
    guardian = _guardian(request)
    if guardian is None:
        return _UNAVAILABLE

    behavior = guardian.agent_watchdog.behavior(name)
    return {
        "status": "ok",
        "data": {
            "agent_name": name,
            "known": behavior is not None,
            "quarantined": guardian.is_quarantined(name),
            "reason": behavior.quarantine_reason if behavior else "",
            "auto_release_at": (
                behavior.auto_release_at.isoformat()
                if behavior and behavior.auto_release_at
                else None
            ),
        },
    }


@router.post("/api/v1/security/agents/{name}/release")
async def release_agent(name: str, request: Request, body: dict[str, Any] | None = None) -> dict[str, Any]:
    """
    Manual quarantine release.
    Body: {released_by?}
    """
    guardian = _guardian(request)
    if guardian is None:
        return _UNAVAILABLE

    released_by = (body or {}).get("released_by") or "api"
    released = await guardian.release_agent(name, released_by=released_by)
    logger.info("api_agent_release", agent=name, released=released, released_by=released_by)
    return {"status": "ok", "data": {"agent_name": name, "released": released}}


@router.post("/api/v1/security/scan")
async def scan_content(request: Request, body: dict[str, Any]) -> dict[str, Any]:
    """
    Scan a piece of text.
    Body: {text, direction?: "inbound" | "outbound", destination?, user_id?, chat_id?}
    """
    guardian = _guardian(request)
    if guardian is None:
        return _UNAVAILABLE

    text = body.get("text", "")
    if not text:
        return {"status": "error", "error": "No text provided"}

    if body.get("direction") == "outbound":
        result = guardian.scan_outbound(text, body.get("destination") or "api")
    else:
        result = guardian.scan_inbound(text, user_id=body.get("user_id"), chat_id=body.get("chat_id"))
    return {"status": "ok", "data": result.model_dump(mode="json")}


@router.post("/api/v1/security/commands")
async def run_command(request: Request, body: dict[str, Any]) -> dict[str, Any]:
    """
    Dispatch an operator command.
    Body: {command, args?}
    """
    guardian = _guardian(request)
    if guardian is None:
        return _UNAVAILABLE

    command = body.get("command", "")
    if not command:
        return {"status": "error", "error": "No command provided"}

    try:
        data = await guardian.handle_command(command, body.get("args") or {})
    except CommandError as exc:
        return {"status": "error", "error": str(exc)}
    return {"status": "ok", "data": data}
