"""Renew webhook channels before Google expires them."""

import asyncio
import logging
import time
from datetime import datetime

from pydantic import BaseModel

from calsync.config import get_settings
from calsync.database import get_database
from calsync.sync.connections import Connection, deactivate_connection
from calsync.sync.errors import ConnectionInvalidError, RemoteCalendarError, SyncErrorCode
from calsync.sync.results import elapsed_ms
from calsync.sync.sync_log import SyncOperation, SyncStatus, SyncType, log_sync
from calsync.sync.webhook_registration import (
    RENEWAL_THRESHOLD,
    is_webhook_expired,
    replace_webhook,
)

logger = logging.getLogger(__name__)

RENEWAL_DELAY = 0.1


class RenewalSummary(BaseModel):
    total: int = 0
    renewed: int = 0
    failed: int = 0
    skipped: int = 0
    deactivated: int = 0


async def get_connections_needing_renewal() -> list[Connection]:
    """Active connections whose channel expires within the renewal window.

    With webhooks enabled, active connections that have no channel at all are
    included so a failed registration is picked up again.
    """
    threshold = (datetime.utcnow() + RENEWAL_THRESHOLD).isoformat()
    missing = "OR webhook_expiration IS NULL" if get_settings().enable_webhooks else ""
    db = await get_database()
    cursor = await db.execute(
        f"""SELECT * FROM calendar_connections
            WHERE is_active = TRUE
              AND ((webhook_expiration IS NOT NULL AND webhook_expiration <= ?) {missing})
            ORDER BY webhook_expiration IS NULL, webhook_expiration ASC""",
        (threshold,),
    )
    return [Connection.from_row(row) for row in await cursor.fetchall()]


async def _renew_connection(connection: Connection) -> str:
    """Renew one channel. Returns renewed, skipped, deactivated or failed."""
    if not is_webhook_expired(connection.webhook.expiration):
        return "skipped"

    try:
        await replace_webhook(connection)
        return "renewed"
    except (ConnectionInvalidError, RemoteCalendarError) as e:
        if isinstance(e, ConnectionInvalidError) or e.calendar_unavailable:
            logger.warning(
                f"Calendar for connection {connection.id} is no longer accessible, deactivating: {e}"
            )
            await deactivate_connection(connection.id)
            await log_sync(
                connection.id,
                SyncType.WEBHOOK,
                SyncStatus.FAILED,
                operation=SyncOperation.UPDATE,
                error_message=str(e),
                error_code=SyncErrorCode.WEBHOOK_RENEWAL_FAILED.value,
                details={"deactivated": True, "will_retry": False},
            )
            return "deactivated"
        error = e
    except Exception as e:
        error = e

    logger.error(f"Failed to renew webhook for connection {connection.id}: {error}")
    await log_sync(
        connection.id,
        SyncType.WEBHOOK,
        SyncStatus.FAILED,
        operation=SyncOperation.UPDATE,
        error_message=str(error),
        error_code=SyncErrorCode.WEBHOOK_RENEWAL_FAILED.value,
        details={"will_retry": True},
    )

    from calsync.alerts.email import queue_alert
    try:
        await queue_alert(
            alert_type="webhook_renewal_failed",
            connection_id=connection.id,
            details=f"Failed to renew webhook: {error}",
        )
    except Exception as e:
        logger.error(f"Failed to queue webhook_renewal_failed alert: {e}")
    return "failed"


async def renew_expiring_webhooks() -> RenewalSummary:
    """Renew every channel expiring within 24 hours.

    Failures are left for the next scheduled run; there is no in-line retry.
    """
    started = time.monotonic()
    summary = RenewalSummary()

    try:
        connections = await get_connections_needing_renewal()
        summary.total = len(connections)
        if not connections:
            logger.debug("No webhooks need renewal")
            return summary

        logger.info(f"Renewing {len(connections)} expiring webhooks")

        for index, connection in enumerate(connections):
            outcome = await _renew_connection(connection)
            setattr(summary, outcome, getattr(summary, outcome) + 1)
            if index < len(connections) - 1:
                await asyncio.sleep(RENEWAL_DELAY)
    except Exception as e:
        logger.exception(f"Webhook renewal job failed: {e}")
        await log_sync(
            None,
            SyncType.WEBHOOK,
            SyncStatus.FAILED,
            operation=SyncOperation.UPDATE,
            error_message=str(e),
            error_code=SyncErrorCode.WEBHOOK_RENEWAL_JOB_ERROR.value,
            details=summary.model_dump(),
            duration_ms=elapsed_ms(started),
        )
        raise

    if summary.failed == 0:
        status = SyncStatus.SUCCESS
    elif summary.renewed == 0:
        status = SyncStatus.FAILED
    else:
        status = SyncStatus.PARTIAL

    await log_sync(
        None,
        SyncType.WEBHOOK,
        status,
        operation=SyncOperation.UPDATE,
        details={"job": "webhook_renewal", **summary.model_dump()},
        duration_ms=elapsed_ms(started),
    )
    logger.info(
        f"Webhook renewal complete: {summary.renewed} renewed, {summary.failed} failed, "
        f"{summary.skipped} skipped, {summary.deactivated} deactivated"
    )
    return summary
