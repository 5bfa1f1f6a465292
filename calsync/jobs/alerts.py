"""Alert processing job."""

import logging
from datetime import datetime, timedelta

from calsync.database import get_database

logger = logging.getLogger(__name__)

MAX_ALERT_ATTEMPTS = 3
ALERT_BATCH_SIZE = 10


def _next_attempt_due(attempts: int, last_attempt) -> bool:
    """Failed sends back off exponentially: 1, 2, 4 minutes."""
    if not attempts or not last_attempt:
        return True
    backoff = timedelta(minutes=2 ** (attempts - 1))
    return datetime.fromisoformat(last_attempt) + backoff <= datetime.utcnow()


async def process_alert_queue() -> int:
    """
    Process the email alert queue.

    Returns number of alerts sent.
    """
    db = await get_database()

    cursor = await db.execute(
        """SELECT * FROM alert_queue
           WHERE sent_at IS NULL AND attempts < ?
           ORDER BY created_at ASC
           LIMIT ?""",
        (MAX_ALERT_ATTEMPTS, ALERT_BATCH_SIZE),
    )
    alerts = await cursor.fetchall()

    if not alerts:
        return 0

    sent = 0
    from calsync.alerts.email import send_email

    for alert in alerts:
        if not _next_attempt_due(alert["attempts"], alert["last_attempt"]):
            continue

        try:
            await send_email(
                to_email=alert["recipient_email"],
                subject=alert["subject"],
                body=alert["body"],
            )

            await db.execute(
                "UPDATE alert_queue SET sent_at = ? WHERE id = ?",
                (datetime.utcnow().isoformat(), alert["id"]),
            )
            await db.commit()

            sent += 1
            logger.info(f"Sent {alert['alert_type']} alert {alert['id']} to {alert['recipient_email']}")

        except Exception as e:
            logger.error(f"Failed to send alert {alert['id']}: {e}")
            await db.execute(
                """UPDATE alert_queue
                   SET attempts = attempts + 1, last_attempt = ?
                   WHERE id = ?""",
                (datetime.utcnow().isoformat(), alert["id"]),
            )
            await db.commit()

    return sent


async def cleanup_stale_alerts(retention_days: int = 7) -> int:
    """
    Clean up old alerts.

    Sent alerts and alerts that used up their attempts are removed after
    ``retention_days``.
    """
    db = await get_database()
    cutoff = (datetime.utcnow() - timedelta(days=retention_days)).isoformat()

    cursor = await db.execute(
        """DELETE FROM alert_queue
           WHERE (sent_at IS NOT NULL AND sent_at < ?)
           OR (attempts >= ? AND created_at < ?)
           RETURNING id""",
        (cutoff, MAX_ALERT_ATTEMPTS, cutoff),
    )
    deleted = await cursor.fetchall()
    await db.commit()

    if deleted:
        logger.info(f"Cleaned up {len(deleted)} stale alerts")

    return len(deleted)
