"""Webhook receiver for Google Calendar push notifications."""

import hmac
import logging

from fastapi import APIRouter, Header, HTTPException, Request, status

from calsync.sync.connections import get_connection_by_channel, get_webhook_token
from calsync.utils.tasks import create_background_task

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/google-calendar")
async def receive_google_calendar_webhook(
    request: Request,
    x_goog_channel_id: str = Header(None, alias="X-Goog-Channel-ID"),
    x_goog_channel_token: str = Header(None, alias="X-Goog-Channel-Token"),
    x_goog_resource_id: str = Header(None, alias="X-Goog-Resource-ID"),
    x_goog_resource_state: str = Header(None, alias="X-Goog-Resource-State"),
    x_goog_message_number: str = Header(None, alias="X-Goog-Message-Number"),
):
    """
    Receive push notifications from Google Calendar.

    Notifications carry no event data; the processor lists recent changes
    itself. Google retries anything but a 2xx, so every notification that
    identifies a channel is acknowledged, even ones that are ignored.
    """
    if not x_goog_channel_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing channel ID"
        )

    logger.info(
        f"Webhook received: channel={x_goog_channel_id}, "
        f"resource={x_goog_resource_id}, state={x_goog_resource_state}, "
        f"message={x_goog_message_number}"
    )

    # Sent once when the channel is created
    if x_goog_resource_state == "sync":
        logger.info(f"Sync message for channel {x_goog_channel_id}")
        return {"status": "ok"}

    connection = await get_connection_by_channel(x_goog_channel_id)
    if connection is None or not connection.is_active:
        logger.warning(f"Unknown webhook channel: {x_goog_channel_id}")
        return {"status": "ok", "message": "Unknown channel"}

    stored_token = await get_webhook_token(connection.id) or ""
    if stored_token and not hmac.compare_digest(stored_token, x_goog_channel_token or ""):
        logger.warning(f"Webhook token mismatch for channel {x_goog_channel_id}")
        return {"status": "ok"}

    if (
        x_goog_resource_id
        and connection.webhook.resource_id
        and x_goog_resource_id != connection.webhook.resource_id
    ):
        logger.warning(
            f"Webhook resource mismatch for channel {x_goog_channel_id}: "
            f"expected={connection.webhook.resource_id} got={x_goog_resource_id}"
        )
        return {"status": "ok", "message": "Resource mismatch"}

    from calsync.sync.webhook_processor import process_webhook_notification

    create_background_task(
        process_webhook_notification(connection.id, x_goog_resource_state),
        f"webhook_connection_{connection.id}",
    )
    logger.info(f"Webhook processing dispatched for connection {connection.id}")

    return {"status": "ok"}
