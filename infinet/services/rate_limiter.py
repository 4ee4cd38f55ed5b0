"""
Request Rate Limiter - trailing-window request counts per user.

Backed by the request_log table so every worker sees the same window.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, delete, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from infinet.config import settings
from infinet.db.models import RequestLog, utcnow

logger = logging.getLogger(__name__)


class RequestRateLimiter:
    def __init__(self, db: AsyncSession, window: Optional[timedelta] = None):
        self.db = db
        self.window = window or timedelta(hours=settings.rate_limit_window_hours)

    async def count_recent(self, user_id: str, now: Optional[datetime] = None) -> int:
        """Requests logged for ``user_id`` within the trailing window ending at ``now``."""
        now = now or utcnow()
        result = await self.db.execute(
            select(func.count(RequestLog.id)).where(
                and_(
                    RequestLog.user_id == user_id,
                    RequestLog.request_timestamp > now - self.window,
                    RequestLog.request_timestamp <= now,
                )
            )
        )
        return int(result.scalar() or 0)

    async def record(self, user_id: str, endpoint: str, now: Optional[datetime] = None) -> None:
        self.db.add(RequestLog(user_id=user_id, endpoint=endpoint, request_timestamp=now or utcnow()))
        await self.db.commit()

    async def prune_before(self, cutoff: datetime) -> int:
        result = await self.db.execute(
            delete(RequestLog).where(RequestLog.request_timestamp < cutoff)
        )
        await self.db.commit()
        count = result.rowcount or 0
        if count:
            logger.info(f"Pruned {count} request log entries older than {cutoff.isoformat()}")
        return count
