"""Retention cleanup job."""

import logging
from datetime import datetime, timedelta

from calsync.config import get_settings
from calsync.database import get_database
from calsync.jobs.locks import acquire_job_lock, release_job_lock

logger = logging.getLogger(__name__)

CLEANUP_JOB = "retention_cleanup"


async def run_retention_cleanup() -> dict:
    """
    Run retention cleanup according to policy.

    Retention policy:
    - Sync log entries: ``sync_log_retention_days``
    - Processed or failed outbox rows: ``outbox_retention_days``
    - Daily API quota rows: ``quota_retention_days``
    - OAuth state tokens: as soon as they expire
    - Stale job locks: 30 minutes (handled by the lock itself)
    """
    summary = {
        "old_sync_logs": 0,
        "old_outbox_events": 0,
        "old_quota_rows": 0,
        "expired_oauth_states": 0,
    }

    if not await acquire_job_lock(CLEANUP_JOB):
        logger.debug("Retention cleanup already running, skipping")
        return summary

    try:
        settings = get_settings()
        db = await get_database()
        now = datetime.utcnow()

        log_cutoff = (now - timedelta(days=settings.sync_log_retention_days)).isoformat()
        cursor = await db.execute(
            "DELETE FROM calendar_sync_log WHERE created_at < ? RETURNING id",
            (log_cutoff,),
        )
        summary["old_sync_logs"] = len(await cursor.fetchall())

        outbox_cutoff = (now - timedelta(days=settings.outbox_retention_days)).isoformat()
        cursor = await db.execute(
            """DELETE FROM calendar_sync_outbox
               WHERE status != 'pending' AND created_at < ?
               RETURNING id""",
            (outbox_cutoff,),
        )
        summary["old_outbox_events"] = len(await cursor.fetchall())

        quota_cutoff = (now - timedelta(days=settings.quota_retention_days)).date().isoformat()
        cursor = await db.execute(
            "DELETE FROM calendar_api_quota WHERE date < ? RETURNING date",
            (quota_cutoff,),
        )
        summary["old_quota_rows"] = len(await cursor.fetchall())

        cursor = await db.execute(
            "DELETE FROM oauth_states WHERE expires_at < ? RETURNING state",
            (now.isoformat(),),
        )
        summary["expired_oauth_states"] = len(await cursor.fetchall())

        await db.commit()
        logger.info(f"Retention cleanup completed: {summary}")
        return summary
    finally:
        await release_job_lock(CLEANUP_JOB)
