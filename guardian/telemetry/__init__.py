"""
Guardian -- Observability Infrastructure
"""

from guardian.telemetry.logging import mask_credentials, setup_logging

__all__ = ["mask_credentials", "setup_logging"]
