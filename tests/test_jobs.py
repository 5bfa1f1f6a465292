"""Tests for scheduled jobs, job locks and retention cleanup."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from calsync.database import get_database
from calsync.jobs.cleanup import CLEANUP_JOB, run_retention_cleanup
from calsync.jobs.locks import acquire_job_lock, release_job_lock
from calsync.jobs.sync_job import (
    OUTBOX_JOB,
    RETRY_QUEUE_JOB,
    refresh_expiring_tokens,
    run_outbox,
    run_retry_queue,
)


@pytest.mark.asyncio
async def test_job_lock_is_exclusive(test_db):
    assert await acquire_job_lock("some_job")
    assert not await acquire_job_lock("some_job")

    await release_job_lock("some_job")
    assert await acquire_job_lock("some_job")


@pytest.mark.asyncio
async def test_abandoned_lock_is_taken_over(test_db):
    db = await get_database()
    await db.execute(
        "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES (?, ?, 'dead-worker')",
        ("some_job", (datetime.utcnow() - timedelta(hours=1)).isoformat()),
    )
    await db.commit()

    assert await acquire_job_lock("some_job", timeout_minutes=30)


@pytest.mark.asyncio
async def test_jobs_skip_when_lock_is_held(test_db):
    await acquire_job_lock(RETRY_QUEUE_JOB)
    await acquire_job_lock(OUTBOX_JOB)

    assert await run_retry_queue() is None
    assert await run_outbox() is None


@pytest.mark.asyncio
async def test_jobs_release_lock_after_run(test_db):
    stats = await run_outbox()

    assert stats.processed == 0
    assert await acquire_job_lock(OUTBOX_JOB)


@pytest.mark.asyncio
async def test_refresh_expiring_tokens(test_db, make_connection, monkeypatch):
    await make_connection(token_expiry=datetime.utcnow() + timedelta(minutes=20))
    await make_connection(admin_id="admin-2", token_expiry=datetime.utcnow() + timedelta(hours=5))

    async def fake_refresh(_token):
        return {"access_token": "fresh", "expires_in": 3600}

    monkeypatch.setattr("calsync.auth.tokens.refresh_access_token", fake_refresh)

    summary = await refresh_expiring_tokens()

    assert summary == {"total": 1, "refreshed": 1, "invalidated": 0, "failed": 0}


@pytest.mark.asyncio
async def test_retention_cleanup(test_db, make_connection):
    connection_id = await make_connection()
    db = await get_database()
    old = (datetime.utcnow() - timedelta(days=120)).isoformat()
    recent = datetime.utcnow().isoformat()

    for created_at in (old, recent):
        await db.execute(
            """INSERT INTO calendar_sync_log (connection_id, sync_type, status, created_at)
               VALUES (?, 'push', 'success', ?)""",
            (connection_id, created_at),
        )
    await db.execute(
        """INSERT INTO calendar_sync_outbox (admin_id, appointment_id, event_type, status, created_at)
           VALUES ('admin-1', 'appt-1', 'upserted', 'processed', ?),
                  ('admin-1', 'appt-2', 'upserted', 'pending', ?)""",
        (old, old),
    )
    await db.execute(
        "INSERT INTO calendar_api_quota (date, request_count) VALUES (?, 5)",
        ((datetime.utcnow() - timedelta(days=45)).date().isoformat(),),
    )
    await db.execute(
        "INSERT INTO oauth_states (state, admin_id, expires_at) VALUES ('s1', 'admin-1', ?)",
        ((datetime.utcnow() - timedelta(minutes=1)).isoformat(),),
    )
    await db.commit()

    summary = await run_retention_cleanup()

    assert summary == {
        "old_sync_logs": 1,
        "old_outbox_events": 1,
        "old_quota_rows": 1,
        "expired_oauth_states": 1,
    }
    cursor = await db.execute("SELECT status FROM calendar_sync_outbox")
    # Pending events are never dropped
    assert [row["status"] for row in await cursor.fetchall()] == ["pending"]


@pytest.mark.asyncio
async def test_retention_cleanup_skips_when_locked(test_db):
    await acquire_job_lock(CLEANUP_JOB)

    summary = await run_retention_cleanup()

    assert set(summary.values()) == {0}


@pytest.mark.asyncio
async def test_scheduler_registers_jobs(monkeypatch):
    from calsync.config import get_settings
    from calsync.jobs.scheduler import get_scheduler, setup_scheduler, shutdown_scheduler

    monkeypatch.setattr(get_settings(), "enable_webhooks", True)

    scheduler = setup_scheduler()
    try:
        job_ids = {job.id for job in scheduler.get_jobs()}
        assert job_ids == {
            "calendar_retry_queue",
            "calendar_outbox",
            "calendar_webhook_renewal",
            "calendar_token_refresh",
            "alert_processing",
            "retention_cleanup",
            "stale_alert_cleanup",
        }
        assert get_scheduler() is scheduler
    finally:
        shutdown_scheduler()

    assert get_scheduler() is None


@pytest.mark.asyncio
async def test_scheduler_without_webhooks(monkeypatch):
    from calsync.config import get_settings
    from calsync.jobs.scheduler import setup_scheduler, shutdown_scheduler

    monkeypatch.setattr(get_settings(), "enable_webhooks", False)

    scheduler = setup_scheduler()
    try:
        assert scheduler.get_job("calendar_webhook_renewal") is None
    finally:
        shutdown_scheduler()
