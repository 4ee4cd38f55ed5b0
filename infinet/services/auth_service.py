"""Authentication service - bearer token handling for the external identity provider"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import uuid

from jose import JWTError, jwt

from infinet.config import settings


@dataclass(frozen=True)
class Identity:
    """Authenticated caller as asserted by the identity provider."""
    user_id: str
    email: Optional[str] = None


def create_access_token(user_id: str, email: Optional[str] = None) -> str:
    """Create a JWT access token (local development and tests)"""
    now = datetime.now(timezone.utc)
    to_encode = {
        "sub": user_id,
        "exp": now + timedelta(minutes=settings.access_token_expire_minutes),
        "iat": now,
        "jti": str(uuid.uuid4()),  # Unique token ID
    }
    if email:
        to_encode["email"] = email
    encoded_jwt = jwt.encode(
        to_encode,
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm
    )
    return encoded_jwt


def decode_access_token(token: str) -> Optional[Identity]:
    """Decode a JWT token and return the caller's identity"""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm]
        )
    except JWTError:
        return None

    user_id = payload.get("sub")
    if not user_id:
        return None
    return Identity(user_id=user_id, email=payload.get("email"))
