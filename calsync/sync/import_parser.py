"""Extract booking details from free-form calendar events.

Events created by hand in Google Calendar carry no structure, so customer,
pet and service are recovered from the title, the attendees and
``Key: value`` lines in the description. Anything the patterns miss is left
empty and reported by ``validate_parsed_event``.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel

from calsync.sync.mapper import format_phone_number, parse_timestamp

MIN_DURATION_MINUTES = 15
MAX_DURATION_MINUTES = 480
MAX_DAYS_FROM_NOW = 365

SERVICE_PATTERNS = [
    re.compile(r"basic\s+grooming", re.I),
    re.compile(r"premium\s+grooming", re.I),
    re.compile(r"deluxe\s+grooming", re.I),
    re.compile(r"full\s+grooming", re.I),
    re.compile(r"bath\s*(?:&|and)\s*brush", re.I),
    re.compile(r"\bbath\b", re.I),
    re.compile(r"nail\s+trim", re.I),
    re.compile(r"\bgrooming\b", re.I),
]

EMAIL_PATTERN = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
VALID_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PHONE_PATTERNS = [
    re.compile(r"(?:phone|tel|mobile|cell):\s*([0-9\s\-().]+)", re.I),
    re.compile(r"\b(\d{3}[-.\s]?\d{3}[-.\s]?\d{4})\b"),
    re.compile(r"(\(\d{3}\)\s*\d{3}[-.\s]?\d{4})\b"),
]

# Only the label is case-insensitive; names must be capitalized.
CUSTOMER_NAME_PATTERNS = [
    re.compile(r"(?i:customer|client|owner):\s*([A-Z][a-z]+\s+[A-Z][a-z]+)"),
    re.compile(r"(?:for|with)\s+([A-Z][a-z]+\s+[A-Z][a-z]+)"),
]

PET_NAME_PATTERNS = [
    re.compile(r"(?i:pet|dog):\s*([A-Z][a-z]+)"),
    re.compile(r"(?:for|named)\s+([A-Z][a-z]+)"),
    re.compile(r"^([A-Z][a-z]+)\s+-", re.M),
]

PET_SIZE_PATTERNS = [
    (re.compile(r"\b(?:xlarge|x-large|extra\s+large)\b", re.I), "xlarge"),
    (re.compile(r"\b(?:66\+|over\s+65)\s*(?:lbs?|pounds)?", re.I), "xlarge"),
    (re.compile(r"\b(?:36|35)\s*-\s*65\s*(?:lbs?|pounds)?", re.I), "large"),
    (re.compile(r"\b(?:19|20)\s*-\s*35\s*(?:lbs?|pounds)?", re.I), "medium"),
    (re.compile(r"\b(?:0\s*-\s*18|under\s+18)\s*(?:lbs?|pounds)?", re.I), "small"),
    (re.compile(r"\bsmall\b", re.I), "small"),
    (re.compile(r"\b(?:medium|med)\b", re.I), "medium"),
    (re.compile(r"\blarge\b", re.I), "large"),
]

DESCRIPTION_LINE = re.compile(r"^([A-Za-z\s]+):\s*(.+)$")
STRUCTURED_KEYS = ("email", "phone", "customer", "client", "owner", "pet", "dog", "service", "size", "breed")


class ParsedCustomer(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class ParsedPet(BaseModel):
    name: Optional[str] = None
    size: Optional[str] = None


class ParsedEvent(BaseModel):
    """What could be recovered from one calendar event."""
    event_id: str
    title: str = ""
    start: Optional[str] = None
    end: Optional[str] = None
    service_name: Optional[str] = None
    customer: ParsedCustomer = ParsedCustomer()
    pet: Optional[ParsedPet] = None
    notes: Optional[str] = None
    raw_description: Optional[str] = None

    @property
    def start_at(self) -> Optional[datetime]:
        return event_time(self.start)

    @property
    def end_at(self) -> Optional[datetime]:
        return event_time(self.end)


class EventValidation(BaseModel):
    valid: bool
    errors: list[str] = []
    warnings: list[str] = []


def event_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an event boundary into naive UTC. Date-only values mean midnight."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def extract_service_from_title(title: str) -> Optional[str]:
    for pattern in SERVICE_PATTERNS:
        match = pattern.search(title)
        if match:
            return " ".join(word.capitalize() for word in match.group(0).split())
    return None


def parse_event_description(description: Optional[str]) -> tuple[dict[str, str], Optional[str]]:
    """Split a description into ``{key: value}`` data lines and leftover notes."""
    if not description:
        return {}, None

    data: dict[str, str] = {}
    notes: list[str] = []
    for line in description.splitlines():
        line = line.strip()
        if not line:
            continue
        match = DESCRIPTION_LINE.match(line)
        if match:
            key = match.group(1).strip().lower()
            if any(known in key for known in STRUCTURED_KEYS):
                data[key] = match.group(2).strip()
                continue
        notes.append(line)

    return data, "\n".join(notes) or None


def _name_from_email(email: str) -> str:
    local = email.split("@", 1)[0]
    return " ".join(part.capitalize() for part in re.split(r"[._-]+", local) if part)


def _extract_phone(text: str) -> Optional[str]:
    for pattern in PHONE_PATTERNS:
        match = pattern.search(text)
        if match:
            digits = re.sub(r"\D", "", match.group(1))
            if digits:
                return format_phone_number(digits)
    return None


def extract_customer_info(event: dict) -> ParsedCustomer:
    customer = ParsedCustomer()
    attendees = event.get("attendees") or []
    if attendees:
        first = attendees[0]
        customer.email = first.get("email")
        if first.get("displayName"):
            customer.name = first["displayName"]
        elif customer.email:
            customer.name = _name_from_email(customer.email)

    text = f"{event.get('summary') or ''}\n{event.get('description') or ''}"

    if not customer.email:
        match = EMAIL_PATTERN.search(text)
        if match:
            customer.email = match.group(0)

    customer.phone = _extract_phone(text)

    if not customer.name:
        for pattern in CUSTOMER_NAME_PATTERNS:
            match = pattern.search(text)
            if match:
                customer.name = match.group(1)
                break

    return customer


def extract_pet_info(event: dict) -> Optional[ParsedPet]:
    text = f"{event.get('summary') or ''}\n{event.get('description') or ''}"
    pet = ParsedPet()

    for pattern in PET_NAME_PATTERNS:
        match = pattern.search(text)
        if match:
            pet.name = match.group(1)
            break

    for pattern, size in PET_SIZE_PATTERNS:
        if pattern.search(text):
            pet.size = size
            break

    if pet.name is None and pet.size is None:
        return None
    return pet


def parse_calendar_event(event: dict) -> ParsedEvent:
    title = event.get("summary") or ""
    start = event.get("start") or {}
    end = event.get("end") or {}
    data, notes = parse_event_description(event.get("description"))

    customer = extract_customer_info(event)
    if not customer.email and data.get("email"):
        customer.email = data["email"]
    if not customer.phone and data.get("phone"):
        customer.phone = format_phone_number(data["phone"])

    return ParsedEvent(
        event_id=event.get("id", ""),
        title=title,
        start=start.get("dateTime") or start.get("date"),
        end=end.get("dateTime") or end.get("date"),
        service_name=extract_service_from_title(title),
        customer=customer,
        pet=extract_pet_info(event),
        notes=notes,
        raw_description=event.get("description"),
    )


def validate_parsed_event(parsed: ParsedEvent, now: Optional[datetime] = None) -> EventValidation:
    """Errors block an import. Warnings only flag missing details."""
    now = now or datetime.utcnow()
    errors: list[str] = []
    warnings: list[str] = []

    if not parsed.title.strip():
        errors.append("Event title is required")
    if not parsed.start:
        errors.append("Start time is required")
    if not parsed.end:
        errors.append("End time is required")

    start, end = parsed.start_at, parsed.end_at
    if parsed.start and start is None:
        errors.append("Invalid start time")
    if parsed.end and end is None:
        errors.append("Invalid end time")

    if start is not None and end is not None:
        if start >= end:
            errors.append("Start time must be before end time")
        else:
            minutes = (end - start).total_seconds() / 60
            if minutes < MIN_DURATION_MINUTES:
                errors.append(f"Appointment must be at least {MIN_DURATION_MINUTES} minutes")
            elif minutes > MAX_DURATION_MINUTES:
                errors.append(f"Appointment cannot be longer than {MAX_DURATION_MINUTES // 60} hours")

    if start is not None:
        if start < now - timedelta(days=MAX_DAYS_FROM_NOW):
            errors.append("Appointment is more than a year in the past")
        elif start > now + timedelta(days=MAX_DAYS_FROM_NOW):
            errors.append("Appointment is more than a year in the future")

    customer = parsed.customer
    if customer.email and not VALID_EMAIL.match(customer.email):
        errors.append(f"Invalid email address: {customer.email}")
    if customer.phone:
        digits = re.sub(r"\D", "", customer.phone)
        if len(digits) not in (10, 11) or (len(digits) == 11 and not digits.startswith("1")):
            errors.append(f"Invalid phone number: {customer.phone}")
    if customer.name is not None and not 2 <= len(customer.name.strip()) <= 100:
        errors.append("Customer name must be between 2 and 100 characters")

    if not customer.email and not customer.phone:
        warnings.append("No customer contact information found")
    if not customer.name:
        warnings.append("No customer name found")

    pet = parsed.pet
    if pet is None:
        warnings.append("No pet information found")
    else:
        if not pet.name:
            warnings.append("Pet name not found")
        elif len(pet.name) > 50:
            warnings.append("Pet name is unusually long")
        if not pet.size:
            warnings.append("Pet size not found")

    if not parsed.service_name:
        warnings.append("No service type detected")

    return EventValidation(valid=not errors, errors=errors, warnings=warnings)


def get_validation_summary(validations: list[EventValidation]) -> dict:
    return {
        "total": len(validations),
        "valid": sum(1 for v in validations if v.valid),
        "invalid": sum(1 for v in validations if not v.valid),
        "with_warnings": sum(1 for v in validations if v.warnings),
    }
