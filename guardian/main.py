"""
Guardian -- Application Entry Point

`uvicorn guardian.main:app`
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load .env file before any configuration is loaded
load_dotenv()

from guardian import __version__
from guardian.api.routers.security import router as security_router
from guardian.clients.rpc import RpcClient
from guardian.clients.store import SecurityStore
from guardian.config import load_config
from guardian.security.service import GuardianService
from guardian.telemetry.logging import setup_logging

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown sequence."""
    # ── 1. Load configuration ─────────────────────────────────
    config_path = os.environ.get("GUARDIAN_CONFIG_PATH", "config/default.yaml")
    config = load_config(config_path)
    app.state.config = config

    # ── 2. Set up logging ─────────────────────────────────────
    setup_logging(config.logging, instance_id=config.instance_id)
    logger.info("guardian_starting", instance_id=config.instance_id, config_path=config_path)

    # ── 3. Connect to the store ───────────────────────────────
    # Detectors run without persistence if Postgres is down.
    store: SecurityStore | None = SecurityStore(config.store)
    try:
        await store.connect()
    except Exception as exc:
        logger.warning("store_unavailable_running_detached", error=str(exc))
        store = None
    app.state.store = store

    # ── 4. Start the security layer ───────────────────────────
    rpc = RpcClient(config.rpc)
    guardian = GuardianService(config, store=store, rpc=rpc)
    await guardian.initialize()
    app.state.guardian = guardian

    logger.info("guardian_ready", instance_id=config.instance_id)
    yield

    # ── Shutdown ──────────────────────────────────────────────
    logger.info("guardian_stopping")
    await guardian.shutdown()
    await rpc.close()
    if store is not None:
        await store.close()
    logger.info("guardian_stopped")


app = FastAPI(
    title="Guardian",
    description="Behavioral security layer for the agent fleet",
    version=__version__,
    lifespan=lifespan,
)

_cors_origins = ["http://localhost:3000"]
_extra_origins = os.environ.get("CORS_ALLOWED_ORIGINS", "")
if _extra_origins:
    _cors_origins.extend(o.strip() for o in _extra_origins.split(",") if o.strip())

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(security_router)


@app.get("/health")
async def health() -> dict[str, Any]:
    """System health check."""
    guardian: GuardianService | None = getattr(app.state, "guardian", None)
    if guardian is None:
        return {"status": "starting"}
    return await guardian.health()


def run() -> None:
    """Console entry point: serve on the configured host and port."""
    import uvicorn

    config = load_config(os.environ.get("GUARDIAN_CONFIG_PATH", "config/default.yaml"))
    uvicorn.run("guardian.main:app", host=config.server.host, port=config.server.port)
