"""Email alerts for calendar sync problems."""

import logging
from datetime import datetime, timedelta
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import aiosmtplib

from calsync.database import get_database, get_setting

logger = logging.getLogger(__name__)

ALERT_DEDUP_WINDOW = timedelta(hours=1)

ALERT_SUBJECTS = {
    "auto_sync_paused": "Calendar Sync - Auto-Sync Paused",
    "retry_limit_exceeded": "Calendar Sync - Appointment Failed to Sync",
    "connection_invalid": "Calendar Sync - Reconnect Google Calendar",
    "webhook_renewal_failed": "Calendar Sync - Webhook Issue",
}

ALERT_ACTIONS = {
    "auto_sync_paused": "Review the sync log, fix the cause, then resume auto-sync.",
    "retry_limit_exceeded": "Use manual resync for the appointment once the cause is fixed.",
    "connection_invalid": "Reconnect Google Calendar from the calendar settings page.",
    "webhook_renewal_failed": "Calendar changes may not be picked up until the next renewal succeeds.",
}


async def get_smtp_config() -> dict:
    """Get SMTP configuration from the settings table."""
    config = {"port": 587}

    host = await get_setting("smtp_host")
    if host:
        config["host"] = host.get("value_plain")

    port = await get_setting("smtp_port")
    if port and port.get("value_plain"):
        config["port"] = int(port["value_plain"])

    username = await get_setting("smtp_username")
    if username:
        config["username"] = username.get("value_plain")

    password = await get_setting("smtp_password")
    if password and password.get("value_encrypted"):
        from calsync.encryption import decrypt_token
        config["password"] = decrypt_token(password["value_encrypted"])

    from_addr = await get_setting("smtp_from_address")
    if from_addr:
        config["from_address"] = from_addr.get("value_plain")

    return config


async def send_email(
    to_email: str,
    subject: str,
    body: str,
    html_body: Optional[str] = None,
) -> None:
    """Send one email. Raises if SMTP is not configured or sending fails."""
    config = await get_smtp_config()

    if not config.get("host"):
        logger.warning("SMTP not configured, cannot send email")
        raise ValueError("SMTP not configured")

    if html_body:
        msg = MIMEMultipart("alternative")
        msg.attach(MIMEText(body, "plain"))
        msg.attach(MIMEText(html_body, "html"))
    else:
        msg = MIMEText(body, "plain")

    msg["Subject"] = subject
    msg["From"] = config.get("from_address") or config.get("username")
    msg["To"] = to_email

    try:
        await aiosmtplib.send(
            msg,
            hostname=config["host"],
            port=config["port"],
            username=config.get("username"),
            password=config.get("password"),
            start_tls=True,
        )
        logger.info(f"Email sent to {to_email}: {subject}")
    except Exception as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        raise


async def get_alert_recipients() -> list[str]:
    """Recipients from the sync notification settings plus the alert_emails setting."""
    from calsync.sync.criteria import get_sync_settings

    recipients: list[str] = []

    preferences = (await get_sync_settings()).notification_preferences
    if preferences.send_failure_notifications:
        recipients.extend(email for email in preferences.notification_emails if email)

    admin_emails = await get_setting("alert_emails")
    if admin_emails and admin_emails.get("value_plain"):
        for email in admin_emails["value_plain"].split(","):
            email = email.strip()
            if email and email not in recipients:
                recipients.append(email)

    return recipients


async def queue_alert(
    alert_type: str,
    connection_id: Optional[int] = None,
    details: str = "",
) -> int:
    """Queue an alert email for every recipient.

    The same alert type for the same connection is sent at most once an hour.
    Returns the number of queued messages.
    """
    enabled = await get_setting("alerts_enabled")
    if enabled and enabled.get("value_plain") == "false":
        logger.debug("Alerts are disabled")
        return 0

    db = await get_database()
    dedup_cutoff = (datetime.utcnow() - ALERT_DEDUP_WINDOW).isoformat()
    cursor = await db.execute(
        """SELECT id FROM alert_queue
           WHERE alert_type = ? AND created_at > ?
             AND connection_id IS ?""",
        (alert_type, dedup_cutoff, connection_id),
    )
    if await cursor.fetchone():
        logger.debug(f"Skipping duplicate alert: {alert_type} (connection {connection_id})")
        return 0

    recipients = await get_alert_recipients()
    if not recipients:
        logger.warning(f"No recipients for {alert_type} alert")
        return 0

    subject, body = generate_alert_content(alert_type, details, connection_id)
    now = datetime.utcnow().isoformat()
    for recipient in recipients:
        await db.execute(
            """INSERT INTO alert_queue
               (alert_type, connection_id, recipient_email, subject, body, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (alert_type, connection_id, recipient, subject, body, now),
        )
    await db.commit()

    logger.info(f"Queued {alert_type} alert for {len(recipients)} recipients")
    return len(recipients)


def generate_alert_content(
    alert_type: str,
    details: str,
    connection_id: Optional[int] = None,
) -> tuple[str, str]:
    """Generate email subject and body for an alert."""
    from calsync.config import get_settings
    settings = get_settings()

    timestamp = datetime.utcnow().strftime("%Y-%m-%d %H:%M UTC")
    subject = ALERT_SUBJECTS.get(alert_type, f"Calendar Sync - {alert_type}")

    body = f"""Calendar Sync Alert

Alert Type: {alert_type}
Time: {timestamp}
"""
    if connection_id is not None:
        body += f"Connection ID: {connection_id}\n"

    body += f"""
Details:
{details}
"""
    action = ALERT_ACTIONS.get(alert_type)
    if action:
        body += f"\nWhat to do: {action}\n"

    body += f"""
---
Manage calendar sync: {settings.public_url}/admin/settings/calendar
"""
    return subject, body
