"""Database-backed job locks.

Scheduler ticks and external cron triggers can fire the same job at once;
only the holder of the job's row in ``job_locks`` runs it.
"""

import logging
import os
import socket
from datetime import datetime, timedelta

import aiosqlite

from calsync.database import get_database

logger = logging.getLogger(__name__)


def _worker_name() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def acquire_job_lock(job_name: str, timeout_minutes: int = 30) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if the job is already running.
    Locks older than ``timeout_minutes`` are treated as abandoned.
    """
    db = await get_database()
    now = datetime.utcnow()
    cutoff = (now - timedelta(minutes=timeout_minutes)).isoformat()

    await db.execute(
        "DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?",
        (job_name, cutoff),
    )
    await db.commit()

    try:
        await db.execute(
            """INSERT INTO job_locks (job_name, locked_at, locked_by)
               VALUES (?, ?, ?)""",
            (job_name, now.isoformat(), _worker_name()),
        )
        await db.commit()
        return True
    except aiosqlite.IntegrityError:
        await db.rollback()
        logger.debug(f"Job lock '{job_name}' is held, skipping")
        return False


async def release_job_lock(job_name: str) -> None:
    """Release a job lock."""
    db = await get_database()
    await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
    await db.commit()
