"""Shared admin dependencies - require_admin guard."""

from fastapi import Depends, HTTPException, status

from infinet.api.auth import get_current_identity
from infinet.config import settings
from infinet.services.auth_service import Identity


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    """FastAPI dependency: reject callers outside the admin allow-list with 403."""
    admins = {e.lower() for e in settings.admin_emails}
    if not identity.email or identity.email.lower() not in admins:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden - Admin access only",
        )
    return identity
