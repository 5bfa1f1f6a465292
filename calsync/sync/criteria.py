"""Sync eligibility criteria and their runtime settings."""

import json
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ValidationError, field_validator

from calsync.appointments import Appointment
from calsync.database import get_setting, set_setting
from calsync.utils.timestamps import parse_utc

logger = logging.getLogger(__name__)

SYNC_SETTINGS_KEY = "calendar_sync_settings"

APPOINTMENT_STATUSES = {
    "pending",
    "confirmed",
    "checked_in",
    "in_progress",
    "completed",
    "cancelled",
    "no_show",
}

COMPLETED_STATUSES = {"completed", "no_show"}


class NotificationPreferences(BaseModel):
    send_success_notifications: bool = False
    send_failure_notifications: bool = True
    notification_emails: list[str] = []


class SyncSettings(BaseModel):
    """Admin-configurable sync criteria."""
    sync_statuses: list[str] = ["confirmed", "checked_in", "in_progress", "completed"]
    auto_sync_enabled: bool = True
    sync_past_appointments: bool = False
    sync_completed_appointments: bool = True
    notification_preferences: NotificationPreferences = NotificationPreferences()

    @field_validator("sync_statuses")
    @classmethod
    def _check_statuses(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("At least one sync status must be selected")
        unknown = [status for status in value if status not in APPOINTMENT_STATUSES]
        if unknown:
            raise ValueError(f"Unknown appointment statuses: {', '.join(unknown)}")
        return value


class SyncDecision(BaseModel):
    should_sync: bool
    reason: str


async def get_sync_settings() -> SyncSettings:
    """Load sync settings, falling back to defaults when missing or unreadable."""
    setting = await get_setting(SYNC_SETTINGS_KEY)
    if not setting or not setting.get("value_plain"):
        return SyncSettings()

    try:
        return SyncSettings(**json.loads(setting["value_plain"]))
    except (ValueError, ValidationError) as e:
        logger.error(f"Stored sync settings are invalid, using defaults: {e}")
        return SyncSettings()


async def update_sync_settings(settings: SyncSettings) -> SyncSettings:
    """Persist sync settings."""
    await set_setting(SYNC_SETTINGS_KEY, settings.model_dump_json())
    logger.info(f"Sync settings updated: statuses={settings.sync_statuses}")
    return settings


def validate_sync_settings(raw: dict) -> list[str]:
    """Return validation errors for a raw settings payload."""
    try:
        SyncSettings.model_validate(raw)
    except ValidationError as e:
        return [
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
    return []


def is_past_appointment(scheduled_at: Optional[str], now: Optional[datetime] = None) -> bool:
    scheduled = parse_utc(scheduled_at)
    if scheduled is None:
        return False
    return scheduled < (now or datetime.utcnow())


def should_sync_appointment(
    appointment: Appointment,
    settings: SyncSettings,
    force: bool = False,
) -> SyncDecision:
    """Decide whether an appointment should be pushed to the calendar."""
    if force:
        return SyncDecision(should_sync=True, reason="Force sync requested")

    if not settings.auto_sync_enabled:
        return SyncDecision(should_sync=False, reason="Auto-sync is disabled")

    if appointment.status not in settings.sync_statuses:
        return SyncDecision(
            should_sync=False,
            reason=f"Status '{appointment.status}' is not configured for sync",
        )

    if is_past_appointment(appointment.scheduled_at) and not settings.sync_past_appointments:
        return SyncDecision(should_sync=False, reason="Past appointments sync is disabled")

    if appointment.status in COMPLETED_STATUSES and not settings.sync_completed_appointments:
        return SyncDecision(should_sync=False, reason="Completed appointments sync is disabled")

    return SyncDecision(should_sync=True, reason="Appointment meets sync criteria")


def filter_appointments_for_sync(
    appointments: list[Appointment],
    settings: SyncSettings,
) -> list[Appointment]:
    return [
        appointment for appointment in appointments
        if should_sync_appointment(appointment, settings).should_sync
    ]


def get_sync_criteria_summary(settings: SyncSettings) -> list[str]:
    """Human-readable summary of the active criteria."""
    if not settings.auto_sync_enabled:
        return ["Auto-sync is disabled"]

    return [
        "Auto-sync is enabled",
        f"Syncing statuses: {', '.join(settings.sync_statuses)}",
        f"Past appointments: {'Enabled' if settings.sync_past_appointments else 'Disabled'}",
        f"Completed appointments: {'Enabled' if settings.sync_completed_appointments else 'Disabled'}",
    ]
