"""Appointment to Google Calendar event mapping."""

import re
from datetime import datetime, timedelta
from typing import Optional

from calsync.appointments import Appointment
from calsync.config import get_settings

APPOINTMENT_ID_PROPERTY = "appointmentId"

# Appointment status -> Google event status
EVENT_STATUS_BY_APPOINTMENT_STATUS = {
    "confirmed": "confirmed",
    "checked_in": "confirmed",
    "in_progress": "confirmed",
    "completed": "confirmed",
    "pending": "tentative",
    "cancelled": "cancelled",
    "no_show": "cancelled",
}

DELETE_STATUSES = {"cancelled", "no_show"}


class AppointmentValidationError(ValueError):
    """Appointment lacks data required to build a calendar event."""

    def __init__(self, errors: list[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp, accepting a trailing ``Z``."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError):
        return None


def map_status(appointment_status: str) -> str:
    return EVENT_STATUS_BY_APPOINTMENT_STATUS.get(appointment_status, "tentative")


def format_phone_number(phone: Optional[str]) -> str:
    """Format 10-digit numbers as (XXX) XXX-XXXX, leave anything else as-is."""
    if not phone:
        return ""
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
    return phone


def calculate_total_duration(appointment: Appointment) -> int:
    """Service duration plus every add-on, in minutes."""
    total = appointment.service.duration_minutes or 0
    total += sum(addon.duration_minutes for addon in appointment.addons)
    return total


def build_event_title(appointment: Appointment) -> str:
    customer = appointment.customer
    return (
        f"{appointment.service.name} - {appointment.pet.name} "
        f"({customer.first_name} {customer.last_name})"
    )


def build_event_description(appointment: Appointment) -> str:
    customer = appointment.customer
    lines = [
        f"**Customer:** {customer.first_name} {customer.last_name}",
        f"**Email:** {customer.email}",
    ]
    if customer.phone:
        lines.append(f"**Phone:** {format_phone_number(customer.phone)}")

    lines.append("")
    lines.append(f"**Pet:** {appointment.pet.name}")
    if appointment.pet.size:
        lines.append(f"**Size:** {appointment.pet.size}")

    lines.append("")
    lines.append(f"**Service:** {appointment.service.name}")
    lines.append(f"**Duration:** {appointment.service.duration_minutes} minutes")

    if appointment.addons:
        lines.append("")
        lines.append("**Add-ons:**")
        for addon in appointment.addons:
            lines.append(f"- {addon.name} ({addon.duration_minutes} min)")

    if appointment.notes:
        lines.append("")
        lines.append("**Notes:**")
        lines.append(appointment.notes)

    lines.append("")
    lines.append("---")
    lines.append("*Synced from the appointment system*")
    return "\n".join(lines)


def map_appointment_to_event(appointment: Appointment) -> dict:
    """Build the Google Calendar event body for an appointment."""
    settings = get_settings()

    start = parse_timestamp(appointment.scheduled_at)
    end = start + timedelta(minutes=calculate_total_duration(appointment))

    return {
        "summary": build_event_title(appointment),
        "description": build_event_description(appointment),
        "location": settings.business_location,
        "start": {
            "dateTime": start.isoformat(),
            "timeZone": settings.business_timezone,
        },
        "end": {
            "dateTime": end.isoformat(),
            "timeZone": settings.business_timezone,
        },
        "status": map_status(appointment.status),
        "extendedProperties": {
            "private": {
                settings.calendar_sync_tag: "true",
                APPOINTMENT_ID_PROPERTY: appointment.id,
            }
        },
    }


def should_delete_event(appointment: Appointment) -> bool:
    """Cancelled and no-show appointments are removed from the calendar."""
    return appointment.status in DELETE_STATUSES


def validate_appointment_for_sync(appointment: Appointment) -> list[str]:
    """Return a list of problems; empty means the appointment can be synced."""
    errors = []

    if not appointment.id:
        errors.append("Appointment ID is required")

    if not appointment.scheduled_at:
        errors.append("Scheduled time is required")
    elif parse_timestamp(appointment.scheduled_at) is None:
        errors.append("Scheduled time is not a valid date")

    customer = appointment.customer
    if customer is None:
        errors.append("Customer information is required")
    else:
        if not customer.first_name:
            errors.append("Customer first name is required")
        if not customer.last_name:
            errors.append("Customer last name is required")
        if not customer.email:
            errors.append("Customer email is required")

    if appointment.pet is None:
        errors.append("Pet information is required")
    elif not appointment.pet.name:
        errors.append("Pet name is required")

    service = appointment.service
    if service is None:
        errors.append("Service information is required")
    else:
        if not service.name:
            errors.append("Service name is required")
        if not service.duration_minutes or service.duration_minutes <= 0:
            errors.append("Service duration must be greater than 0")

    return errors


def ensure_valid_for_sync(appointment: Appointment) -> None:
    """Raise AppointmentValidationError if the appointment cannot be synced."""
    errors = validate_appointment_for_sync(appointment)
    if errors:
        raise AppointmentValidationError(errors)
