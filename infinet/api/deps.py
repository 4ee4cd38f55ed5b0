"""Shared router dependencies - the entitlement guard."""

import logging
from typing import Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.api.auth import get_optional_identity
from infinet.db import get_db
from infinet.errors import EntitlementDenied
from infinet.services.auth_service import Identity
from infinet.services.entitlement_gate import Allow, Deny, EntitlementGate

logger = logging.getLogger(__name__)


def require_entitlement(endpoint: str):
    """
    Build a FastAPI dependency that runs the entitlement gate for ``endpoint``.

    Returns the Allow decision (carrying the subscription snapshot) or
    raises EntitlementDenied, which the app renders as a paywall payload.
    """

    async def dependency(
        identity: Optional[Identity] = Depends(get_optional_identity),
        db: AsyncSession = Depends(get_db),
    ) -> Allow:
        decision = await EntitlementGate(db).check(identity, endpoint)
        if isinstance(decision, Deny):
            user = identity.user_id if identity else "anonymous"
            logger.info(f"Entitlement denied for {user} on {endpoint}: {decision.reason.value}")
            raise EntitlementDenied(decision)
        return decision

    return dependency
