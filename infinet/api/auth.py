"""Identity dependencies for the API routers"""

from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from infinet.logging_config import set_request_context
from infinet.services.auth_service import Identity, decode_access_token

security = HTTPBearer(auto_error=False)  # Missing tokens are a gate decision, not a framework 403


async def get_optional_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[Identity]:
    """Resolve the bearer token to an Identity, or None when absent/invalid."""
    if not credentials or not credentials.credentials:
        return None
    identity = decode_access_token(credentials.credentials)
    if identity:
        set_request_context(user_id=identity.user_id)
    return identity


async def get_current_identity(
    identity: Optional[Identity] = Depends(get_optional_identity),
) -> Identity:
    """Dependency for endpoints that always require an authenticated caller."""
    if identity is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return identity
