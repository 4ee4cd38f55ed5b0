"""
Scheduled Tasks for the Metering Core

This module sets up periodic background tasks for:
1. Period Rollover - advance expired periods of subscriptions that have
   no billing-provider subscription behind them (free tier, admin grants)
2. Rate Log Pruning - drop request_log rows outside any rate window
3. Ledger Retention - optionally drop usage events past retention

Uses APScheduler for in-process scheduling. Disable with
ENABLE_SCHEDULER=false on all but one worker.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from infinet.config import settings
from infinet.db import async_session_maker, utcnow
from infinet.services.rate_limiter import RequestRateLimiter
from infinet.services.subscription_service import SubscriptionService
from infinet.services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[AsyncIOScheduler] = None

# Request log rows older than this can no longer fall inside a rate window
RATE_LOG_KEEP = timedelta(days=2)


async def run_period_rollover() -> int:
    """Roll expired synthetic periods forward and drop their stale aggregates."""
    async with async_session_maker() as db:
        rolled = await SubscriptionService(db).roll_over_expired(utcnow())
    if rolled:
        logger.info(f"Period rollover complete: {rolled} subscription(s) advanced")
    return rolled


async def run_rate_log_pruning() -> int:
    cutoff = utcnow() - max(RATE_LOG_KEEP, timedelta(hours=settings.rate_limit_window_hours))
    async with async_session_maker() as db:
        return await RequestRateLimiter(db).prune_before(cutoff)


async def run_ledger_retention() -> int:
    """Drop usage events older than the configured retention, if any."""
    if not settings.usage_event_retention_days:
        return 0
    cutoff = utcnow() - timedelta(days=settings.usage_event_retention_days)
    async with async_session_maker() as db:
        pruned = await UsageLedger(db).prune_before(cutoff)
    logger.info(f"Ledger retention: pruned {pruned} usage events older than {cutoff.date()}")
    return pruned


def setup_scheduler(
    rollover_interval_minutes: Optional[int] = None,
    prune_interval_hours: int = 6,
) -> AsyncIOScheduler:
    """
    Set up the APScheduler with metering housekeeping tasks.

    Args:
        rollover_interval_minutes: How often to roll periods (default: from settings)
        prune_interval_hours: How often to prune the rate log (default: every 6 hours)

    Returns:
        Configured scheduler instance
    """
    global scheduler

    rollover_interval_minutes = rollover_interval_minutes or settings.rollover_interval_minutes
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        run_period_rollover,
        trigger=IntervalTrigger(minutes=rollover_interval_minutes),
        id="period_rollover",
        name="Billing Period Rollover",
        replace_existing=True,
    )

    scheduler.add_job(
        run_rate_log_pruning,
        trigger=IntervalTrigger(hours=prune_interval_hours),
        id="rate_log_pruning",
        name="Request Log Pruning",
        replace_existing=True,
    )

    if settings.usage_event_retention_days:
        # Daily at 3 AM
        scheduler.add_job(
            run_ledger_retention,
            trigger=CronTrigger(hour=3, minute=0),
            id="ledger_retention",
            name="Usage Ledger Retention",
            replace_existing=True,
        )

    logger.info(
        f"Scheduler configured: rollover every {rollover_interval_minutes}min, "
        f"rate log pruning every {prune_interval_hours}h, "
        f"ledger retention {'daily' if settings.usage_event_retention_days else 'off'}"
    )

    return scheduler


def start_scheduler():
    """Start the scheduler if not already running."""
    global scheduler

    if scheduler is None:
        scheduler = setup_scheduler()

    if not scheduler.running:
        scheduler.start()
        logger.info("Metering housekeeping scheduler started")


def stop_scheduler():
    """Stop the scheduler if running."""
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("Metering housekeeping scheduler stopped")


# Run the housekeeping tasks once, by hand
if __name__ == "__main__":
    async def main():
        print("Running housekeeping tasks manually...")

        print("\n1. Rolling over expired periods...")
        print(f"   {await run_period_rollover()} subscription(s) advanced")

        print("\n2. Pruning rate log...")
        print(f"   {await run_rate_log_pruning()} row(s) removed")

        print("\n3. Ledger retention...")
        print(f"   {await run_ledger_retention()} event(s) removed")

        print("\nDone!")

    asyncio.run(main())
