"""Scheduled calendar sync jobs.

Each job takes its ``job_locks`` row first and returns None when another
run holds it, so scheduler ticks and cron triggers never overlap.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from calsync.database import get_database
from calsync.jobs.locks import acquire_job_lock, release_job_lock
from calsync.sync.errors import ConnectionInvalidError
from calsync.sync.outbox import OutboxStats
from calsync.sync.retry_queue import RetryStats
from calsync.sync.webhook_renewal import RenewalSummary

logger = logging.getLogger(__name__)

RETRY_QUEUE_JOB = "calendar_retry_queue"
OUTBOX_JOB = "calendar_outbox"
WEBHOOK_RENEWAL_JOB = "calendar_webhook_renewal"
TOKEN_REFRESH_JOB = "calendar_token_refresh"

TOKEN_REFRESH_WINDOW = timedelta(hours=1)


async def run_retry_queue() -> Optional[RetryStats]:
    """Process due retry queue entries."""
    if not await acquire_job_lock(RETRY_QUEUE_JOB):
        logger.debug("Retry queue already running, skipping")
        return None

    try:
        from calsync.sync.retry_queue import process_retry_queue
        return await process_retry_queue()
    finally:
        await release_job_lock(RETRY_QUEUE_JOB)


async def run_outbox() -> Optional[OutboxStats]:
    """Drain pending appointment change events."""
    if not await acquire_job_lock(OUTBOX_JOB):
        logger.debug("Outbox drain already running, skipping")
        return None

    try:
        from calsync.sync.outbox import process_outbox
        return await process_outbox()
    finally:
        await release_job_lock(OUTBOX_JOB)


async def run_webhook_renewal() -> Optional[RenewalSummary]:
    """Renew webhook channels that are about to expire."""
    if not await acquire_job_lock(WEBHOOK_RENEWAL_JOB):
        logger.debug("Webhook renewal already running, skipping")
        return None

    try:
        from calsync.sync.webhook_renewal import renew_expiring_webhooks
        return await renew_expiring_webhooks()
    finally:
        await release_job_lock(WEBHOOK_RENEWAL_JOB)


async def refresh_expiring_tokens() -> Optional[dict]:
    """Proactively refresh access tokens that expire within the next hour.

    Connections whose refresh token was revoked are deactivated (and alerted)
    by the token manager itself.
    """
    if not await acquire_job_lock(TOKEN_REFRESH_JOB):
        logger.debug("Token refresh already running, skipping")
        return None

    summary = {"total": 0, "refreshed": 0, "invalidated": 0, "failed": 0}
    try:
        db = await get_database()
        threshold = (datetime.utcnow() + TOKEN_REFRESH_WINDOW).isoformat()
        cursor = await db.execute(
            """SELECT id FROM calendar_connections
               WHERE is_active = TRUE AND (token_expiry IS NULL OR token_expiry < ?)""",
            (threshold,),
        )
        expiring = await cursor.fetchall()
        summary["total"] = len(expiring)
        if not expiring:
            return summary

        logger.info(f"Refreshing {len(expiring)} expiring tokens")

        from calsync.auth.tokens import get_valid_access_token

        for row in expiring:
            try:
                await get_valid_access_token(row["id"], force_refresh=True)
                summary["refreshed"] += 1
            except ConnectionInvalidError:
                summary["invalidated"] += 1
            except Exception as e:
                logger.error(f"Failed to refresh token for connection {row['id']}: {e}")
                summary["failed"] += 1

        logger.info(f"Token refresh completed: {summary}")
        return summary
    finally:
        await release_job_lock(TOKEN_REFRESH_JOB)
