"""
Guardian -- Structured Logging

All logging goes through structlog. Detectors bind ``system="guardian"`` and
their own ``component``; the process-wide ``instance_id`` rides in contextvars.

A masking processor runs before rendering so RPC URLs with embedded
credentials are never written to a log sink.
"""

from __future__ import annotations

import logging
import re
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from structlog.typing import EventDict

    from guardian.config import LoggingConfig

_URL_USERINFO = re.compile(r"//[^/@\s]+@")
_URL_KEYS = frozenset({"url", "endpoint", "reference", "rpc_url"})

# Libraries whose INFO chatter drowns detector output.
_QUIET_LOGGERS = ("httpx", "httpcore", "asyncpg", "asyncio", "uvicorn.access")


def mask_credentials(_logger: Any, _method: str, event_dict: EventDict) -> EventDict:
    for key in event_dict.keys() & _URL_KEYS:
        value = event_dict[key]
        if isinstance(value, str):
            event_dict[key] = _URL_USERINFO.sub("//***@", value)
    return event_dict


def _renderer(fmt: str) -> Any:
    if fmt == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())


def setup_logging(config: LoggingConfig, instance_id: str = "") -> None:
    """
    Configure structlog and route stdlib logging (uvicorn, asyncpg) through
    the same renderer.
    """
    structlog.contextvars.clear_contextvars()
    if instance_id:
        structlog.contextvars.bind_contextvars(instance_id=instance_id)

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        mask_credentials,
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(config.format),
            ],
        )
    )

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.getLevelNamesMapping().get(config.level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
