"""Tests for importing hand-made calendar events as appointments."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from calsync.appointments import Appointment, Customer, Pet, Service, get_appointment
from calsync.sync.connections import get_active_connection
from calsync.sync.import_parser import (
    get_validation_summary,
    parse_calendar_event,
    validate_parsed_event,
)
from calsync.sync.importer import (
    ImportOptions,
    confirm_import,
    names_similar,
    preview_import,
    score_match,
)
from calsync.sync.mappings import SyncDirection, get_mapping_by_event
from calsync.sync.sync_log import get_recent_sync_logs

ADMIN_ID = "admin-1"


def _slot(days: int = 2) -> datetime:
    return datetime.utcnow().replace(microsecond=0) + timedelta(days=days)


def _event(
    event_id: str,
    start: datetime,
    minutes: int = 60,
    summary: str = "Buddy - Full Grooming",
    description: str | None = None,
    attendees: list[dict] | None = None,
) -> dict:
    event = {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": start.isoformat() + "Z"},
        "end": {"dateTime": (start + timedelta(minutes=minutes)).isoformat() + "Z"},
    }
    if description is not None:
        event["description"] = description
    if attendees is not None:
        event["attendees"] = attendees
    return event


def test_parse_event_details():
    start = _slot()
    event = _event(
        "g-1",
        start,
        description=(
            "Customer: Jane Doe\n"
            "Phone: 555-123-4567\n"
            "Email: jane@example.com\n"
            "Medium dog, nervous around dryers"
        ),
    )

    parsed = parse_calendar_event(event)

    assert parsed.event_id == "g-1"
    assert parsed.service_name == "Full Grooming"
    assert parsed.customer.name == "Jane Doe"
    assert parsed.customer.email == "jane@example.com"
    assert parsed.customer.phone == "(555) 123-4567"
    assert parsed.pet.name == "Buddy"
    assert parsed.pet.size == "medium"
    assert parsed.notes == "Medium dog, nervous around dryers"
    assert parsed.start_at == start


def test_attendee_supplies_customer():
    parsed = parse_calendar_event(_event(
        "g-1",
        _slot(),
        summary="Bath",
        attendees=[{"email": "john.smith@example.com"}],
    ))

    assert parsed.customer.email == "john.smith@example.com"
    assert parsed.customer.name == "John Smith"
    assert parsed.service_name == "Bath"
    assert parsed.pet is None


def test_all_day_event_starts_at_midnight():
    day = _slot().date()
    parsed = parse_calendar_event({
        "id": "g-1",
        "summary": "Grooming",
        "start": {"date": day.isoformat()},
        "end": {"date": (day + timedelta(days=1)).isoformat()},
    })

    assert parsed.start_at == datetime(day.year, day.month, day.day)


def test_validation_errors():
    start = _slot()

    backwards = validate_parsed_event(parse_calendar_event(_event("g-1", start, minutes=-30)))
    assert not backwards.valid
    assert "Start time must be before end time" in backwards.errors

    short = validate_parsed_event(parse_calendar_event(_event("g-2", start, minutes=10)))
    assert "Appointment must be at least 15 minutes" in short.errors

    far = validate_parsed_event(parse_calendar_event(_event("g-3", _slot(days=400))))
    assert "Appointment is more than a year in the future" in far.errors

    bad_email = validate_parsed_event(parse_calendar_event(
        _event("g-4", start, attendees=[{"email": "not-an-email", "displayName": "Pat Kim"}])
    ))
    assert "Invalid email address: not-an-email" in bad_email.errors

    bad_phone = validate_parsed_event(parse_calendar_event(
        _event("g-5", start, description="Phone: 25551234567")
    ))
    assert "Invalid phone number: 25551234567" in bad_phone.errors

    missing = validate_parsed_event(parse_calendar_event({"id": "g-6", "summary": ""}))
    assert "Event title is required" in missing.errors
    assert "Start time is required" in missing.errors


def test_validation_warnings_do_not_block():
    validation = validate_parsed_event(parse_calendar_event(_event("g-1", _slot(), summary="Busy")))

    assert validation.valid
    assert "No customer contact information found" in validation.warnings
    assert "No pet information found" in validation.warnings
    assert "No service type detected" in validation.warnings

    summary = get_validation_summary([validation, validate_parsed_event(parse_calendar_event({"id": "x"}))])
    assert summary == {"total": 2, "valid": 1, "invalid": 1, "with_warnings": 2}


def test_names_similar():
    assert names_similar("Jon Smith", "John Smith")
    assert names_similar("Bud", "Buddy")
    assert not names_similar("Rex", "Buddy")


def test_score_match_caps_at_100():
    start = _slot()
    parsed = parse_calendar_event(_event(
        "g-1",
        start,
        description="Customer: Jane Doe\nEmail: jane@example.com\nPhone: 5551234567",
    ))
    appointment = Appointment(
        id="appt-1",
        scheduled_at=start.isoformat(),
        customer=Customer(first_name="Jane", last_name="Doe", email="JANE@example.com", phone="5551234567"),
        pet=Pet(name="Buddy"),
        service=Service(name="Full Groom"),
    )

    match = score_match(parsed, appointment)

    assert match.confidence == 100
    assert match.is_duplicate
    assert "Email match" in match.reasons
    assert "Service similar" in match.reasons


def test_time_alone_is_not_a_duplicate():
    start = _slot()
    parsed = parse_calendar_event(_event("g-1", start + timedelta(minutes=20), summary="Rex - Nail Trim"))
    appointment = Appointment(id="appt-1", scheduled_at=start.isoformat(), pet=Pet(name="Buddy"))

    match = score_match(parsed, appointment)

    assert match.confidence == 20
    assert not match.is_duplicate


@pytest.mark.asyncio
async def test_preview_classifies_events(
    test_db, make_connection, make_appointment, make_mapping, fake_calendar
):
    connection_id = await make_connection()
    scheduled = _slot()
    await make_appointment(scheduled_at=scheduled)
    await make_mapping("appt-9", connection_id, "g-mapped")

    fake_calendar.listed = [
        _event("g-mapped", scheduled + timedelta(days=1)),
        _event("g-dup", scheduled, description="Customer: Jane Doe\nEmail: jane@example.com"),
        _event(
            "g-new",
            scheduled + timedelta(days=5),
            summary="Max - Bath",
            description="Size: small",
            attendees=[{"email": "sam.lee@example.com", "displayName": "Sam Lee"}],
        ),
        _event("g-bad", scheduled + timedelta(days=3), minutes=-60),
    ]
    connection = await get_active_connection(ADMIN_ID)

    preview = await preview_import(connection, scheduled - timedelta(days=1), scheduled + timedelta(days=10))

    assert (preview.total, preview.importable, preview.duplicates, preview.invalid) == (3, 1, 1, 1)
    by_id = {item.event.event_id: item for item in preview.events}
    assert "g-mapped" not in by_id
    assert by_id["g-dup"].duplicate.appointment_id == "appt-1"
    assert not by_id["g-dup"].importable
    assert by_id["g-new"].importable
    assert by_id["g-new"].duplicate is None
    assert by_id["g-bad"].duplicate is None


@pytest.mark.asyncio
async def test_confirm_creates_appointment_with_pull_mapping(
    test_db, make_connection, make_appointment, fake_calendar
):
    connection_id = await make_connection()
    await make_appointment()
    await test_db.execute("INSERT INTO services (id, name, duration_minutes) VALUES ('svc-2', 'Bath & Brush', 45)")
    await test_db.commit()
    start = _slot(days=7)
    fake_calendar.events["g-new"] = _event(
        "g-new",
        start,
        summary="Max - Bath",
        description="Size: small\nLikes treats",
        attendees=[{"email": "sam.lee@example.com", "displayName": "Sam Lee"}],
    )
    connection = await get_active_connection(ADMIN_ID)

    result = await confirm_import(connection, ["g-new"], ImportOptions())

    assert (result.total, result.imported, result.skipped, result.failed) == (1, 1, 0, 0)
    appointment_id = result.results[0].appointment_id

    mapping = await get_mapping_by_event(connection_id, "g-new")
    assert mapping.appointment_id == appointment_id
    assert mapping.sync_direction == SyncDirection.PULL

    appointment = await get_appointment(appointment_id)
    assert appointment.status == "pending"
    assert appointment.scheduled_at == start.isoformat()
    assert appointment.notes == "Likes treats"
    assert appointment.customer.first_name == "Sam"
    assert appointment.customer.email == "sam.lee@example.com"
    assert appointment.pet.name == "Max"
    assert appointment.pet.size == "small"
    assert appointment.service_id == "svc-2"

    logs = await get_recent_sync_logs(connection_id)
    assert logs[0]["sync_type"] == "bulk"
    assert logs[0]["operation"] == "import"
    assert logs[0]["status"] == "success"
    assert logs[0]["google_event_id"] == "g-new"

    again = await confirm_import(connection, ["g-new"], ImportOptions())
    assert again.skipped == 1
    assert again.imported == 0


@pytest.mark.asyncio
async def test_confirm_matches_existing_customer_by_phone(
    test_db, make_connection, make_appointment, fake_calendar
):
    await make_connection()
    await make_appointment()
    fake_calendar.events["g-1"] = _event(
        "g-1",
        _slot(days=8),
        summary="Grooming",
        description="Phone: (555) 123-4567",
    )
    connection = await get_active_connection(ADMIN_ID)

    result = await confirm_import(connection, ["g-1"], ImportOptions(default_service_id="svc-1"))

    assert result.imported == 1
    appointment = await get_appointment(result.results[0].appointment_id)
    assert appointment.customer_id == "cust-1"
    assert appointment.pet_id == "pet-1"
    assert appointment.service_id == "svc-1"


@pytest.mark.asyncio
async def test_confirm_skips_duplicates(test_db, make_connection, make_appointment, fake_calendar):
    await make_connection()
    scheduled = _slot()
    await make_appointment(scheduled_at=scheduled)
    fake_calendar.events["g-dup"] = _event(
        "g-dup", scheduled, description="Customer: Jane Doe\nEmail: jane@example.com"
    )
    connection = await get_active_connection(ADMIN_ID)

    result = await confirm_import(connection, ["g-dup"], ImportOptions())

    assert result.skipped == 1
    assert result.results[0].appointment_id == "appt-1"
    cursor = await test_db.execute("SELECT COUNT(*) AS n FROM appointments")
    assert (await cursor.fetchone())["n"] == 1


@pytest.mark.asyncio
async def test_confirm_failures_are_logged(test_db, make_connection, fake_calendar):
    connection_id = await make_connection()
    fake_calendar.events["g-anon"] = _event(
        "g-anon", _slot(days=3), summary="Grooming", description="Customer: Pat Kim"
    )
    fake_calendar.events["g-bad"] = _event("g-bad", _slot(days=4), minutes=5)
    connection = await get_active_connection(ADMIN_ID)

    result = await confirm_import(connection, ["g-anon", "g-bad", "g-missing"], ImportOptions())

    assert (result.imported, result.failed) == (0, 3)
    assert [item.code for item in result.results] == [
        "CUSTOMER_NOT_FOUND",
        "VALIDATION_ERROR",
        "EVENT_NOT_FOUND",
    ]

    logs = await get_recent_sync_logs(connection_id)
    assert {entry["error_code"] for entry in logs} == {
        "CUSTOMER_NOT_FOUND",
        "VALIDATION_ERROR",
        "EVENT_NOT_FOUND",
    }
    assert all(entry["operation"] == "import" for entry in logs)
    cursor = await test_db.execute("SELECT COUNT(*) AS n FROM customers")
    assert (await cursor.fetchone())["n"] == 0


@pytest.mark.asyncio
async def test_import_routes_need_a_connection(test_db):
    from calsync.api.sync import ImportPreviewRequest, import_preview
    from calsync.auth.session import AdminSession

    admin = AdminSession(admin_id=ADMIN_ID, exp=datetime.utcnow() + timedelta(hours=1))
    request = ImportPreviewRequest(date_from=_slot(days=0), date_to=_slot(days=7))

    with pytest.raises(HTTPException) as exc_info:
        await import_preview(request, admin)

    assert exc_info.value.status_code == 404

    backwards = ImportPreviewRequest(date_from=_slot(days=7), date_to=_slot(days=0))
    with pytest.raises(HTTPException) as exc_info:
        await import_preview(backwards, admin)

    assert exc_info.value.status_code == 400
