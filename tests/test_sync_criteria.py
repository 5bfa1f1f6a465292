"""Tests for sync criteria and the sync audit log."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from calsync.appointments import Appointment
from calsync.sync.criteria import (
    SyncSettings,
    filter_appointments_for_sync,
    get_sync_criteria_summary,
    get_sync_settings,
    should_sync_appointment,
    update_sync_settings,
    validate_sync_settings,
)
from calsync.sync.sync_log import (
    SyncOperation,
    SyncStatus,
    SyncType,
    get_recent_sync_logs,
    get_sync_stats,
    log_sync,
)


def _appointment(status: str = "confirmed", days: int = 2, appointment_id: str = "appt-1") -> Appointment:
    return Appointment(
        id=appointment_id,
        status=status,
        scheduled_at=(datetime.utcnow() + timedelta(days=days)).isoformat(),
    )


def test_force_overrides_everything():
    settings = SyncSettings(auto_sync_enabled=False)

    decision = should_sync_appointment(_appointment("pending", days=-3), settings, force=True)

    assert decision.should_sync
    assert decision.reason == "Force sync requested"


def test_checks_run_in_order():
    disabled = SyncSettings(auto_sync_enabled=False)
    assert should_sync_appointment(_appointment(), disabled).reason == "Auto-sync is disabled"

    defaults = SyncSettings()
    assert not should_sync_appointment(_appointment("pending"), defaults).should_sync
    assert should_sync_appointment(_appointment(days=-1), defaults).reason == "Past appointments sync is disabled"

    no_completed = SyncSettings(sync_completed_appointments=False)
    decision = should_sync_appointment(_appointment("completed"), no_completed)
    assert decision.reason == "Completed appointments sync is disabled"

    assert should_sync_appointment(_appointment(), defaults).should_sync


def test_past_appointments_when_enabled():
    settings = SyncSettings(sync_past_appointments=True)

    assert should_sync_appointment(_appointment(days=-1), settings).should_sync


def test_filter_appointments():
    appointments = [
        _appointment("confirmed", appointment_id="a"),
        _appointment("pending", appointment_id="b"),
        _appointment("in_progress", appointment_id="c"),
    ]

    kept = filter_appointments_for_sync(appointments, SyncSettings())

    assert [a.id for a in kept] == ["a", "c"]


def test_validate_settings():
    assert validate_sync_settings({"sync_statuses": ["confirmed"]}) == []

    empty = validate_sync_settings({"sync_statuses": []})
    assert len(empty) == 1
    assert "At least one sync status" in empty[0]

    unknown = validate_sync_settings({"sync_statuses": ["archived"]})
    assert "archived" in unknown[0]


def test_criteria_summary():
    assert get_sync_criteria_summary(SyncSettings(auto_sync_enabled=False)) == ["Auto-sync is disabled"]

    summary = get_sync_criteria_summary(SyncSettings(sync_statuses=["confirmed"]))
    assert summary[0] == "Auto-sync is enabled"
    assert "Syncing statuses: confirmed" in summary
    assert "Past appointments: Disabled" in summary


@pytest.mark.asyncio
async def test_settings_round_trip(test_db):
    assert await get_sync_settings() == SyncSettings()

    await update_sync_settings(SyncSettings(sync_statuses=["pending"], sync_past_appointments=True))
    loaded = await get_sync_settings()

    assert loaded.sync_statuses == ["pending"]
    assert loaded.sync_past_appointments


@pytest.mark.asyncio
async def test_sync_log_queries(test_db, make_connection):
    connection_id = await make_connection()
    await log_sync(connection_id, SyncType.PUSH, SyncStatus.SUCCESS, operation=SyncOperation.CREATE,
                   appointment_id="appt-1", details={"pet_name": "Buddy"})
    await log_sync(connection_id, SyncType.PUSH, SyncStatus.FAILED, operation=SyncOperation.UPDATE,
                   appointment_id="appt-1", error_message="boom", error_code="UPDATE_FAILED")
    await log_sync(connection_id, SyncType.WEBHOOK, SyncStatus.PARTIAL)

    recent = await get_recent_sync_logs(connection_id)
    assert [entry["status"] for entry in recent] == ["partial", "failed", "success"]
    assert recent[2]["details"] == {"pet_name": "Buddy"}

    failed = await get_recent_sync_logs(connection_id, status=SyncStatus.FAILED)
    assert [entry["error_code"] for entry in failed] == ["UPDATE_FAILED"]

    stats = await get_sync_stats(connection_id)
    assert stats == {"total": 3, "success": 1, "failed": 1, "partial": 1}

    later = await get_sync_stats(connection_id, since=datetime.utcnow() + timedelta(minutes=1))
    assert later["total"] == 0
