"""Tests for reconciling remote changes after a push notification."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from calsync.database import get_database
from calsync.sync.connections import ConnectionNotFoundError, get_connection_by_id
from calsync.sync.errors import RemoteCalendarError, SyncErrorCode
from calsync.sync.mappings import get_mapping_by_appointment
from calsync.sync.webhook_processor import EventOutcome, process_webhook_notification


def _remote_stamp(delta: timedelta = timedelta()) -> str:
    return (datetime.utcnow() + delta).isoformat(timespec="milliseconds") + "Z"


@pytest.mark.asyncio
async def test_unmapped_events_are_skipped(test_db, make_connection, fake_calendar):
    connection_id = await make_connection()
    fake_calendar.listed = [{"id": "someone-elses-event", "updated": _remote_stamp()}]

    summary = await process_webhook_notification(connection_id, "exists")

    assert summary.successful == 1
    assert summary.results[0].reason == "unmapped"
    assert fake_calendar.calls[0][0] == "list"
    assert fake_calendar.calls[0][1]["show_deleted"] is True


@pytest.mark.asyncio
async def test_remotely_cancelled_event_is_recreated(
    test_db, make_connection, make_appointment, make_mapping, fake_calendar
):
    connection_id = await make_connection()
    await make_appointment()
    await make_mapping("appt-1", connection_id, "evt-old")
    fake_calendar.listed = [{"id": "evt-old", "status": "cancelled", "updated": _remote_stamp()}]

    summary = await process_webhook_notification(connection_id, "exists")

    result = summary.results[0]
    assert result.outcome == EventOutcome.RECREATED
    assert result.new_event_id == "evt-1"
    assert (await get_mapping_by_appointment("appt-1")).google_event_id == "evt-1"


@pytest.mark.asyncio
async def test_cancelled_on_both_sides_drops_mapping(
    test_db, make_connection, make_appointment, make_mapping, fake_calendar
):
    connection_id = await make_connection()
    await make_appointment(status="cancelled")
    await make_mapping("appt-1", connection_id, "evt-old")
    fake_calendar.listed = [{"id": "evt-old", "status": "cancelled", "updated": _remote_stamp()}]

    summary = await process_webhook_notification(connection_id, "exists")

    assert summary.results[0].reason == "cancelled_on_both_sides"
    assert await get_mapping_by_appointment("appt-1") is None
    assert not any(call[0] == "create" for call in fake_calendar.calls)


@pytest.mark.asyncio
async def test_conflict_is_resolved_with_local_data(
    test_db, make_connection, make_appointment, make_mapping, fake_calendar
):
    connection_id = await make_connection()
    await make_appointment(updated_at=datetime.utcnow() - timedelta(minutes=10))
    await make_mapping("appt-1", connection_id, "evt-1", last_synced_at=datetime.utcnow() - timedelta(hours=1))
    fake_calendar.listed = [{"id": "evt-1", "status": "confirmed", "updated": _remote_stamp()}]

    summary = await process_webhook_notification(connection_id, "exists")

    assert summary.results[0].outcome == EventOutcome.CONFLICT_RESOLVED
    assert ("update", "evt-1") in fake_calendar.calls
    assert fake_calendar.events["evt-1"]["summary"] == "Full Groom - Buddy (Jane Doe)"


@pytest.mark.asyncio
async def test_remote_only_change_is_discarded(
    test_db, make_connection, make_appointment, make_mapping, fake_calendar
):
    connection_id = await make_connection()
    await make_appointment(updated_at=datetime.utcnow() - timedelta(days=1))
    await make_mapping("appt-1", connection_id, "evt-1", last_synced_at=datetime.utcnow() - timedelta(hours=1))
    fake_calendar.listed = [{"id": "evt-1", "status": "confirmed", "updated": _remote_stamp()}]

    summary = await process_webhook_notification(connection_id, "exists")

    assert summary.results[0].reason == "remote_only_change"
    assert not any(call[0] == "update" for call in fake_calendar.calls)


@pytest.mark.asyncio
async def test_event_unchanged_since_last_sync_is_skipped(
    test_db, make_connection, make_appointment, make_mapping, fake_calendar
):
    connection_id = await make_connection()
    await make_appointment()
    await make_mapping("appt-1", connection_id, "evt-1", last_synced_at=datetime.utcnow() - timedelta(minutes=5))
    fake_calendar.listed = [
        {"id": "evt-1", "status": "confirmed", "updated": _remote_stamp(-timedelta(hours=1))}
    ]

    summary = await process_webhook_notification(connection_id, "exists")

    assert summary.results[0].reason == "no_remote_change"


@pytest.mark.asyncio
async def test_event_for_deleted_appointment_is_removed(
    test_db, make_connection, make_mapping, fake_calendar
):
    connection_id = await make_connection()
    await make_mapping("appt-gone", connection_id, "evt-9")
    fake_calendar.listed = [{"id": "evt-9", "status": "confirmed", "updated": _remote_stamp()}]

    summary = await process_webhook_notification(connection_id, "exists")

    assert summary.results[0].outcome == EventOutcome.DELETED
    assert ("delete", "evt-9") in fake_calendar.calls
    assert await get_mapping_by_appointment("appt-gone") is None


@pytest.mark.asyncio
async def test_paused_connection_ignores_notifications(test_db, make_connection, fake_calendar):
    connection_id = await make_connection(paused=True)

    summary = await process_webhook_notification(connection_id, "exists")

    assert summary.error_code == SyncErrorCode.AUTO_SYNC_PAUSED.value
    assert fake_calendar.calls == []


@pytest.mark.asyncio
async def test_inactive_connection_raises(test_db, make_connection, fake_calendar):
    connection_id = await make_connection(is_active=False)

    with pytest.raises(ConnectionNotFoundError):
        await process_webhook_notification(connection_id, "exists")


@pytest.mark.asyncio
async def test_list_failure_is_logged_and_counted(test_db, make_connection, fake_calendar):
    connection_id = await make_connection()
    fake_calendar.fail["list_events"] = RemoteCalendarError("HTTP_500", "Backend Error", 500)

    with pytest.raises(RemoteCalendarError):
        await process_webhook_notification(connection_id, "exists")

    connection = await get_connection_by_id(connection_id)
    assert connection.consecutive_failures == 1
    assert connection.last_sync_at is not None

    db = await get_database()
    cursor = await db.execute("SELECT error_code FROM calendar_sync_log")
    assert (await cursor.fetchone())["error_code"] == SyncErrorCode.WEBHOOK_PROCESSING_ERROR.value


@pytest.mark.asyncio
async def test_failed_event_counts_toward_pause(
    test_db, make_connection, make_appointment, make_mapping, fake_calendar
):
    connection_id = await make_connection()
    await make_appointment()
    await make_mapping("appt-1", connection_id, "evt-old")
    fake_calendar.listed = [{"id": "evt-old", "status": "cancelled", "updated": _remote_stamp()}]
    fake_calendar.fail["create_event"] = RemoteCalendarError("HTTP_403", "Forbidden", 403)

    summary = await process_webhook_notification(connection_id, "exists")

    assert summary.failed == 1
    assert (await get_connection_by_id(connection_id)).consecutive_failures == 1
