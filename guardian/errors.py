"""
Guardian -- Error Hierarchy

Nothing raised here is fatal to the process. Detectors catch these at the
per-target boundary, count them, and try again on the next cycle.

Severity guide:
  RpcError      transient -- counted per wallet/endpoint; alert after threshold
  CommandError  caller    -- unknown or malformed operator command
"""

from __future__ import annotations


class GuardianError(RuntimeError):
    """Base for all Guardian errors."""


class RpcError(GuardianError):
    """
    A JSON-RPC call failed: transport error, timeout, HTTP status, or an
    ``error`` member in the response body.

    Recovery: none inline. The next scheduled cycle retries.
    """

    def __init__(self, message: str, url: str = "", method: str = "") -> None:
        super().__init__(message)
        self.url = url
        self.method = method


class CommandError(GuardianError):
    """An operator command could not be parsed or is not supported."""
