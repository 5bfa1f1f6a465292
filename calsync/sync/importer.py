"""Import hand-made Google Calendar events as appointments.

Preview parses and validates events in a date range and scores each against
existing appointments. Confirm creates the customer, pet and appointment
records for the chosen events and maps them with direction ``pull``.
"""

import logging
import re
import time
import uuid
from datetime import datetime, timedelta
from typing import Optional

from pydantic import BaseModel

from calsync.appointments import Appointment, list_appointments_between
from calsync.database import get_database
from calsync.sync.connections import Connection
from calsync.sync.errors import SyncErrorCode
from calsync.sync.google_calendar import get_client_for_connection
from calsync.sync.import_parser import (
    EventValidation,
    ParsedEvent,
    event_time,
    parse_calendar_event,
    validate_parsed_event,
)
from calsync.sync.mappings import SyncDirection, create_event_mapping, get_mapping_by_event
from calsync.sync.results import elapsed_ms
from calsync.sync.sync_log import SyncOperation, SyncStatus, SyncType, log_sync

logger = logging.getLogger(__name__)

MAX_PREVIEW_EVENTS = 100
DUPLICATE_WINDOW = timedelta(minutes=30)
DUPLICATE_THRESHOLD = 60
MIN_MATCH_CONFIDENCE = 40
ACTIVE_STATUSES = ["pending", "confirmed", "checked_in", "in_progress"]


class DuplicateMatch(BaseModel):
    appointment_id: str
    confidence: int
    reasons: list[str] = []

    @property
    def is_duplicate(self) -> bool:
        return self.confidence >= DUPLICATE_THRESHOLD


class ImportPreviewItem(BaseModel):
    event: ParsedEvent
    validation: EventValidation
    duplicate: Optional[DuplicateMatch] = None
    importable: bool


class ImportPreview(BaseModel):
    events: list[ImportPreviewItem] = []
    total: int = 0
    importable: int = 0
    duplicates: int = 0
    invalid: int = 0


class ImportOptions(BaseModel):
    skip_duplicates: bool = True
    create_new_customers: bool = True
    default_service_id: Optional[str] = None


class ImportItemResult(BaseModel):
    event_id: str
    status: str
    appointment_id: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None


class ImportResult(BaseModel):
    total: int = 0
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    results: list[ImportItemResult] = []


class ImportRecordError(Exception):
    """An event that cannot be turned into an appointment."""

    def __init__(self, code: SyncErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


# ---------------------------------------------------------------------------
# Duplicate detection
# ---------------------------------------------------------------------------

def _digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def names_similar(first: str, second: str) -> bool:
    """Containment either way, or at least 70% of the shorter name's characters shared."""
    a, b = first.lower().strip(), second.lower().strip()
    if not a or not b:
        return False
    if a in b or b in a:
        return True
    shorter, longer = (a, b) if len(a) <= len(b) else (b, a)
    remaining = list(longer)
    common = 0
    for char in shorter:
        if char in remaining:
            remaining.remove(char)
            common += 1
    return common / len(shorter) >= 0.7


def score_match(parsed: ParsedEvent, appointment: Appointment) -> DuplicateMatch:
    score = 0
    reasons: list[str] = []

    start = parsed.start_at
    scheduled = event_time(appointment.scheduled_at)
    if start is not None and scheduled is not None:
        minutes = abs((start - scheduled).total_seconds()) / 60
        if minutes <= 5:
            score += 40
            reasons.append("Time match (within 5 minutes)")
        elif minutes <= 15:
            score += 30
            reasons.append("Time match (within 15 minutes)")
        elif minutes <= 30:
            score += 20
            reasons.append("Time match (within 30 minutes)")
        else:
            score += 10

    customer = appointment.customer
    if customer is not None:
        email = parsed.customer.email
        if email and customer.email and email.lower() == customer.email.lower():
            score += 30
            reasons.append("Email match")

        phone = _digits(parsed.customer.phone)
        if phone and phone == _digits(customer.phone):
            score += 25
            reasons.append("Phone match")

        name = parsed.customer.name
        full_name = " ".join(part for part in (customer.first_name, customer.last_name) if part)
        if name and full_name:
            if name.lower() == full_name.lower():
                score += 15
                reasons.append("Customer name match")
            elif names_similar(name, full_name):
                score += 10
                reasons.append("Customer name similar")

    pet_name = parsed.pet.name if parsed.pet else None
    if pet_name and appointment.pet is not None and appointment.pet.name:
        if pet_name.lower() == appointment.pet.name.lower():
            score += 15
            reasons.append("Pet name match")
        elif names_similar(pet_name, appointment.pet.name):
            score += 10
            reasons.append("Pet name similar")

    service_name = parsed.service_name
    if service_name and appointment.service is not None and appointment.service.name:
        wanted, existing = service_name.lower(), appointment.service.name.lower()
        if wanted == existing:
            score += 10
            reasons.append("Service match")
        elif wanted in existing or existing in wanted:
            score += 5
            reasons.append("Service similar")

    return DuplicateMatch(appointment_id=appointment.id, confidence=min(score, 100), reasons=reasons)


async def find_duplicate(parsed: ParsedEvent) -> Optional[DuplicateMatch]:
    """Best-scoring active appointment within 30 minutes of the event, if any scores 40+."""
    start = parsed.start_at
    if start is None:
        return None

    candidates = await list_appointments_between(
        (start - DUPLICATE_WINDOW).isoformat(),
        (start + DUPLICATE_WINDOW).isoformat(),
        statuses=ACTIVE_STATUSES,
    )
    best = None
    for appointment in candidates:
        match = score_match(parsed, appointment)
        if match.confidence < MIN_MATCH_CONFIDENCE:
            continue
        if best is None or match.confidence > best.confidence:
            best = match
    return best


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------

async def preview_import(connection: Connection, date_from: datetime, date_to: datetime) -> ImportPreview:
    """Parse and score calendar events that are not yet mapped to an appointment."""
    client = await get_client_for_connection(connection)
    events = await client.list_events(time_min=date_from, time_max=date_to, max_results=MAX_PREVIEW_EVENTS)

    preview = ImportPreview()
    for event in events[:MAX_PREVIEW_EVENTS]:
        if event.get("status") == "cancelled":
            continue
        if await get_mapping_by_event(connection.id, event["id"]) is not None:
            continue

        parsed = parse_calendar_event(event)
        validation = validate_parsed_event(parsed)
        duplicate = await find_duplicate(parsed) if validation.valid else None
        importable = validation.valid and (duplicate is None or not duplicate.is_duplicate)

        preview.events.append(ImportPreviewItem(
            event=parsed,
            validation=validation,
            duplicate=duplicate,
            importable=importable,
        ))
        preview.total += 1
        preview.importable += importable
        preview.duplicates += bool(duplicate and duplicate.is_duplicate)
        preview.invalid += not validation.valid

    logger.info(
        f"Import preview for connection {connection.id}: {preview.total} events, "
        f"{preview.importable} importable"
    )
    return preview


# ---------------------------------------------------------------------------
# Confirm
# ---------------------------------------------------------------------------

async def _find_customer(parsed: ParsedEvent) -> Optional[str]:
    db = await get_database()
    email = parsed.customer.email
    if email:
        cursor = await db.execute(
            "SELECT id FROM customers WHERE LOWER(email) = ? LIMIT 1",
            (email.lower(),),
        )
        row = await cursor.fetchone()
        if row:
            return row["id"]

    phone = _digits(parsed.customer.phone)
    if phone:
        cursor = await db.execute(
            """SELECT id FROM customers
               WHERE REPLACE(REPLACE(REPLACE(REPLACE(REPLACE(phone, '(', ''), ')', ''), '-', ''), ' ', ''), '.', '') = ?
               LIMIT 1""",
            (phone,),
        )
        row = await cursor.fetchone()
        if row:
            return row["id"]
    return None


async def _resolve_customer(parsed: ParsedEvent, options: ImportOptions) -> str:
    customer_id = await _find_customer(parsed)
    if customer_id:
        return customer_id

    customer = parsed.customer
    if not (options.create_new_customers and customer.email and customer.name):
        raise ImportRecordError(
            SyncErrorCode.CUSTOMER_NOT_FOUND,
            "No matching customer and not enough details to create one",
        )

    first_name, _, last_name = customer.name.strip().partition(" ")
    customer_id = str(uuid.uuid4())
    db = await get_database()
    await db.execute(
        """INSERT INTO customers (id, first_name, last_name, email, phone)
           VALUES (?, ?, ?, ?, ?)""",
        (customer_id, first_name, last_name or None, customer.email, _digits(customer.phone) or None),
    )
    logger.info(f"Created customer {customer_id} from calendar import")
    return customer_id


async def _resolve_pet(parsed: ParsedEvent, customer_id: str, options: ImportOptions) -> str:
    # Pets are linked to customers only through their appointments.
    db = await get_database()
    cursor = await db.execute(
        """SELECT DISTINCT p.id, p.name FROM pets p
           JOIN appointments a ON a.pet_id = p.id
           WHERE a.customer_id = ?""",
        (customer_id,),
    )
    pets = await cursor.fetchall()

    pet = parsed.pet
    if pet is not None and pet.name:
        for row in pets:
            if row["name"] and row["name"].lower() == pet.name.lower():
                return row["id"]

    if options.create_new_customers and pet is not None and pet.name and pet.size:
        pet_id = str(uuid.uuid4())
        await db.execute(
            "INSERT INTO pets (id, name, size) VALUES (?, ?, ?)",
            (pet_id, pet.name, pet.size),
        )
        logger.info(f"Created pet {pet_id} from calendar import")
        return pet_id

    if len(pets) == 1:
        return pets[0]["id"]

    raise ImportRecordError(SyncErrorCode.PET_NOT_FOUND, "Could not determine which pet this event is for")


async def _resolve_service(parsed: ParsedEvent, options: ImportOptions) -> str:
    if parsed.service_name:
        db = await get_database()
        cursor = await db.execute(
            "SELECT id FROM services WHERE name LIKE ? LIMIT 1",
            (f"%{parsed.service_name}%",),
        )
        row = await cursor.fetchone()
        if row:
            return row["id"]

    if options.default_service_id:
        return options.default_service_id

    raise ImportRecordError(SyncErrorCode.SERVICE_NOT_FOUND, "No matching service and no default service given")


async def _import_event(connection: Connection, parsed: ParsedEvent, options: ImportOptions) -> str:
    customer_id = await _resolve_customer(parsed, options)
    pet_id = await _resolve_pet(parsed, customer_id, options)
    service_id = await _resolve_service(parsed, options)

    appointment_id = str(uuid.uuid4())
    now = datetime.utcnow().isoformat()
    db = await get_database()
    await db.execute(
        """INSERT INTO appointments
           (id, customer_id, pet_id, service_id, scheduled_at, status, notes, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, 'pending', ?, ?, ?)""",
        (appointment_id, customer_id, pet_id, service_id, parsed.start_at.isoformat(), parsed.notes, now, now),
    )
    # Commits the records above together with the mapping.
    await create_event_mapping(appointment_id, connection.id, parsed.event_id, SyncDirection.PULL)
    return appointment_id


async def _log_failure(connection: Connection, event_id: str, code: str, message: str, started: float) -> ImportItemResult:
    await log_sync(
        connection.id,
        SyncType.BULK,
        SyncStatus.FAILED,
        operation=SyncOperation.IMPORT,
        google_event_id=event_id,
        error_message=message,
        error_code=code,
        duration_ms=elapsed_ms(started),
    )
    return ImportItemResult(event_id=event_id, status="failed", error=message, code=code)


async def confirm_import(connection: Connection, event_ids: list[str], options: ImportOptions) -> ImportResult:
    """Create appointments for the chosen events, one at a time.

    A failure on one event is logged and does not stop the others.
    """
    db = await get_database()
    client = await get_client_for_connection(connection)
    result = ImportResult(total=len(event_ids))

    for event_id in event_ids:
        started = time.monotonic()

        if await get_mapping_by_event(connection.id, event_id) is not None:
            result.skipped += 1
            result.results.append(ImportItemResult(event_id=event_id, status="skipped", error="Already imported"))
            continue

        try:
            event = await client.get_event(event_id)
            if event is None or event.get("status") == "cancelled":
                raise ImportRecordError(SyncErrorCode.EVENT_NOT_FOUND, "Calendar event not found")

            parsed = parse_calendar_event(event)
            validation = validate_parsed_event(parsed)
            if not validation.valid:
                raise ImportRecordError(
                    SyncErrorCode.VALIDATION_ERROR,
                    f"Invalid event: {', '.join(validation.errors)}",
                )

            duplicate = await find_duplicate(parsed)
            if duplicate is not None and duplicate.is_duplicate and options.skip_duplicates:
                result.skipped += 1
                result.results.append(ImportItemResult(
                    event_id=event_id,
                    status="skipped",
                    appointment_id=duplicate.appointment_id,
                    error=f"Duplicate of appointment {duplicate.appointment_id} ({duplicate.confidence}%)",
                ))
                continue

            appointment_id = await _import_event(connection, parsed, options)
        except ImportRecordError as e:
            await db.rollback()
            result.failed += 1
            result.results.append(await _log_failure(connection, event_id, e.code.value, e.message, started))
            continue
        except Exception as e:
            await db.rollback()
            logger.error(f"Import of event {event_id} failed: {e}")
            result.failed += 1
            result.results.append(
                await _log_failure(connection, event_id, SyncErrorCode.IMPORT_ERROR.value, str(e), started)
            )
            continue

        await log_sync(
            connection.id,
            SyncType.BULK,
            SyncStatus.SUCCESS,
            operation=SyncOperation.IMPORT,
            appointment_id=appointment_id,
            google_event_id=event_id,
            details={"title": parsed.title},
            duration_ms=elapsed_ms(started),
        )
        result.imported += 1
        result.results.append(ImportItemResult(event_id=event_id, status="imported", appointment_id=appointment_id))

    logger.info(
        f"Import for connection {connection.id}: {result.imported} imported, "
        f"{result.skipped} skipped, {result.failed} failed"
    )
    return result
