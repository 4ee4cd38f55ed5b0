"""
infinet.api.admin - Admin package

Exports:
  usage_router    - subscriptions overview, tier overrides, ledger corrections
  require_admin   - FastAPI dependency for admin-only endpoints
"""

from infinet.api.admin.usage import router as usage_router
from infinet.api.admin.deps import require_admin

__all__ = [
    "usage_router",
    "require_admin",
]
