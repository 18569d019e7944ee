"""
Expiry Sweep Worker.
Moves posted/requested donations past their expiry date to expired.
"""

import asyncio
import logging

from app.workers.celery_app import celery_app
from app.database import close_db, get_db_context
from app.fsm.machine import DonationLifecycle
from app.redis import RedisClient
from app.services.email_service import CeleryEmailDispatcher
from app.services.notification_service import RedisNotificationPublisher

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def expire_stale_donations(self):
    """
    Celery task running the expiry sweep.

    Scheduled every few minutes by beat; safe to run concurrently since each
    donation is expired through a conditional write.
    """
    try:
        result = asyncio.run(_expire_stale_donations())
        logger.info(f"Expiry sweep finished: {result}")
        return result
    except Exception as e:
        logger.error(f"Expiry sweep failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


async def _expire_stale_donations():
    """Async implementation of the sweep."""
    try:
        async with get_db_context() as db:
            lifecycle = DonationLifecycle(
                db,
                publisher=RedisNotificationPublisher(),
                email_dispatcher=CeleryEmailDispatcher(),
            )
            expired = await lifecycle.expire_donations()
            return {"expired": len(expired)}
    finally:
        # Pooled connections are bound to this event loop
        await RedisClient.close()
        await close_db()
