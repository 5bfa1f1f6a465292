"""Google Calendar push-notification channels for a connection."""

import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional

from calsync.config import get_settings
from calsync.database import get_database
from calsync.sync.connections import (
    Connection,
    WebhookState,
    WebhookStatus,
    clear_webhook_info,
    get_connection_by_id,
    update_webhook_info,
)
from calsync.sync.errors import RemoteCalendarError
from calsync.sync.google_calendar import get_client_for_connection
from calsync.utils.timestamps import from_epoch_ms, parse_utc

logger = logging.getLogger(__name__)

# Google caps event channels at 7 days
WEBHOOK_EXPIRATION = timedelta(days=7)
RENEWAL_THRESHOLD = timedelta(hours=24)


def get_webhook_url() -> str:
    settings = get_settings()
    return f"{settings.public_url.rstrip('/')}/api/webhooks/google-calendar"


def is_webhook_expired(expiration: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when there is no channel or it expires within the renewal threshold."""
    if expiration is None:
        return True
    return expiration - (now or datetime.utcnow()) <= RENEWAL_THRESHOLD


def has_active_webhook(connection: Connection) -> bool:
    return (
        connection.webhook.status == WebhookStatus.REGISTERED
        and not is_webhook_expired(connection.webhook.expiration)
    )


async def register_webhook(connection: Connection) -> WebhookState:
    """Open a new channel for the connection's calendar and store it."""
    channel_id = str(uuid.uuid4())
    channel_token = secrets.token_urlsafe(32)
    expiration = datetime.utcnow() + WEBHOOK_EXPIRATION

    client = await get_client_for_connection(connection)
    response = await client.watch_events(
        channel_id=channel_id,
        address=get_webhook_url(),
        token=channel_token,
        expiration=expiration,
    )

    webhook = WebhookState.registered(
        channel_id=response.get("id", channel_id),
        resource_id=response["resourceId"],
        expiration=from_epoch_ms(response.get("expiration")) or expiration,
    )
    await update_webhook_info(connection.id, webhook, token=channel_token)

    logger.info(
        f"Registered webhook channel {webhook.channel_id} for connection {connection.id}, "
        f"expires {webhook.expiration.isoformat()}"
    )
    return webhook


async def stop_channel(connection: Connection, webhook: WebhookState) -> None:
    """Stop a channel at the provider without touching the stored state.

    A channel the provider no longer knows about is treated as stopped.
    """
    client = await get_client_for_connection(connection)
    try:
        await client.stop_channel(webhook.channel_id, webhook.resource_id)
    except RemoteCalendarError as e:
        if not e.is_gone:
            raise
        logger.info(f"Webhook channel {webhook.channel_id} already stopped ({e.code})")


async def stop_webhook(connection: Connection) -> None:
    """Stop the connection's channel and clear it locally."""
    webhook = connection.webhook
    if webhook.status != WebhookStatus.REGISTERED:
        return

    await stop_channel(connection, webhook)
    await clear_webhook_info(connection.id)
    logger.info(f"Stopped webhook channel {webhook.channel_id} for connection {connection.id}")


async def replace_webhook(connection: Connection) -> WebhookState:
    """Register a new channel, then stop the one it replaces.

    The stored channel is only overwritten once the new registration
    succeeds, so a failed attempt leaves the old channel in place for the
    next run.
    """
    old = connection.webhook
    webhook = await register_webhook(connection)

    if old.status == WebhookStatus.REGISTERED and old.channel_id != webhook.channel_id:
        try:
            await stop_channel(connection, old)
        except Exception as e:
            logger.warning(f"Failed to stop replaced webhook channel {old.channel_id}: {e}")
    return webhook


async def ensure_webhook(connection_id: int) -> WebhookState:
    """Return the current channel, registering a new one if missing or expiring."""
    connection = await get_connection_by_id(connection_id)
    if connection is None or not connection.is_active:
        raise ValueError(f"Active calendar connection {connection_id} not found")

    if has_active_webhook(connection):
        return connection.webhook

    return await replace_webhook(connection)


async def get_webhook_renewal_status() -> list[dict]:
    """Webhook health for every active connection, soonest expiry first."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT id, admin_id, calendar_email, webhook_expiration
           FROM calendar_connections
           WHERE is_active = TRUE
           ORDER BY webhook_expiration IS NULL, webhook_expiration ASC"""
    )
    now = datetime.utcnow()
    statuses = []
    for row in await cursor.fetchall():
        expiration = parse_utc(row["webhook_expiration"])
        if expiration is None:
            status = "no_webhook"
            days_left = None
        else:
            status = "expiring_soon" if is_webhook_expired(expiration, now) else "healthy"
            days_left = (expiration - now).days
        statuses.append({
            "connection_id": row["id"],
            "admin_id": row["admin_id"],
            "calendar_email": row["calendar_email"],
            "webhook_expiration": row["webhook_expiration"],
            "days_until_expiration": days_left,
            "needs_renewal": status != "healthy",
            "status": status,
        })
    return statuses
