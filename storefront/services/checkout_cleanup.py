"""
Checkout Session Cleanup

Background job that expires open checkout sessions past their TTL and
cancels their payment intents. Open sessions are also expired lazily on
read, so this job only keeps the table and the payment provider tidy.
Runs every CHECKOUT_CLEANUP_INTERVAL_MINUTES while the app is up.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from storefront.core.config import settings
from storefront.core.database import AsyncSessionLocal
from storefront.core.exceptions import StorefrontError
from storefront.core.utils import utcnow
from storefront.models.checkout_session import CheckoutSession, OPEN_STATUSES
from storefront.services.checkout_service import CheckoutService

logger = logging.getLogger(__name__)

cleanup_heartbeat: dict = {
    "last_run": None,
    "last_success": None,
    "records_processed": 0,
    "errors": 0,
}


async def expire_stale_sessions(
    checkout_service: CheckoutService,
    session_factory: Callable = AsyncSessionLocal,
) -> dict:
    """
    Expire every open session past its TTL.

    Returns:
        dict with the count of expired sessions and errors
    """
    stats = {"sessions_expired": 0, "errors": 0}

    async with session_factory() as db:
        try:
            stats["sessions_expired"] = await checkout_service.expire_stale_sessions(db)
        except (SQLAlchemyError, StorefrontError) as e:
            logger.error(f"[CLEANUP] Error expiring checkout sessions: {e}")
            stats["errors"] += 1
            await db.rollback()

    if stats["sessions_expired"] > 0:
        logger.info(f"[CLEANUP] Expired {stats['sessions_expired']} stale checkout sessions")
    return stats


async def get_session_stats(session_factory: Callable = AsyncSessionLocal) -> dict:
    """Open-session counts for monitoring."""
    now = utcnow()
    async with session_factory() as db:
        result = await db.execute(
            select(CheckoutSession.status, func.count())
            .where(CheckoutSession.status.in_(OPEN_STATUSES))
            .group_by(CheckoutSession.status)
        )
        by_status = {status: count for status, count in result.all()}

        overdue = await db.execute(
            select(func.count())
            .select_from(CheckoutSession)
            .where(
                CheckoutSession.status.in_(OPEN_STATUSES),
                CheckoutSession.expires_at < now,
            )
        )

    return {
        "open_sessions": sum(by_status.values()),
        "by_status": by_status,
        "overdue_sessions": overdue.scalar_one(),
    }


async def run_checkout_cleanup(
    checkout_service: CheckoutService,
    session_factory: Callable = AsyncSessionLocal,
) -> None:
    """One cleanup pass; updates heartbeat metrics for health monitoring."""
    cleanup_heartbeat["last_run"] = datetime.now(timezone.utc).isoformat()
    stats = await expire_stale_sessions(checkout_service, session_factory)
    if stats["errors"]:
        cleanup_heartbeat["errors"] += stats["errors"]
        return
    cleanup_heartbeat["last_success"] = datetime.now(timezone.utc).isoformat()
    cleanup_heartbeat["records_processed"] += stats["sessions_expired"]


async def checkout_cleanup_scheduler(
    checkout_service: CheckoutService,
    interval_minutes: Optional[int] = None,
) -> None:
    """Runs cleanup at the configured interval until cancelled during shutdown."""
    interval_minutes = interval_minutes or settings.CHECKOUT_CLEANUP_INTERVAL_MINUTES
    logger.info(f"[CLEANUP] Checkout cleanup scheduler started (interval: {interval_minutes} minutes)")

    while True:
        try:
            await run_checkout_cleanup(checkout_service)
        except (SQLAlchemyError, OSError) as e:
            cleanup_heartbeat["errors"] += 1
            logger.error(f"[CLEANUP] Checkout cleanup scheduler error: {e}")

        await asyncio.sleep(interval_minutes * 60)
