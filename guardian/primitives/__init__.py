"""
Guardian -- Shared Primitives
"""

from guardian.primitives.common import GuardianBaseModel, new_id, utc_now

__all__ = ["GuardianBaseModel", "new_id", "utc_now"]
