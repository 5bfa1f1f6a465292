"""Tests for the consecutive-failure auto-pause."""

from __future__ import annotations

import pytest

from calsync.database import get_database
from calsync.sync.pause import (
    CONSECUTIVE_FAILURE_THRESHOLD,
    check_pause_status,
    get_paused_connections,
    pause_auto_sync,
    resume_auto_sync,
    track_sync_failure,
    track_sync_success,
)


@pytest.mark.asyncio
async def test_pauses_at_threshold(test_db, make_connection):
    connection_id = await make_connection()

    for _ in range(CONSECUTIVE_FAILURE_THRESHOLD - 1):
        await track_sync_failure(connection_id, "Backend Error")
    assert not (await check_pause_status(connection_id))["is_paused"]

    await track_sync_failure(connection_id, "Backend Error")

    status = await check_pause_status(connection_id)
    assert status["is_paused"]
    assert status["consecutive_failures"] == CONSECUTIVE_FAILURE_THRESHOLD
    assert "Backend Error" in status["pause_reason"]

    db = await get_database()
    cursor = await db.execute(
        "SELECT COUNT(*) FROM calendar_sync_log WHERE error_code = 'AUTO_SYNC_PAUSED'"
    )
    assert (await cursor.fetchone())[0] == 1


@pytest.mark.asyncio
async def test_failures_are_not_counted_while_paused(test_db, make_connection):
    connection_id = await make_connection(paused=True, consecutive_failures=10)

    await track_sync_failure(connection_id, "Backend Error")

    assert (await check_pause_status(connection_id))["consecutive_failures"] == 10


@pytest.mark.asyncio
async def test_success_resets_counter(test_db, make_connection):
    connection_id = await make_connection(consecutive_failures=4)

    await track_sync_success(connection_id)

    assert (await check_pause_status(connection_id))["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_resume_clears_pause(test_db, make_connection):
    connection_id = await make_connection(paused=True, consecutive_failures=10)

    assert await get_paused_connections()
    await resume_auto_sync(connection_id)

    status = await check_pause_status(connection_id)
    assert not status["is_paused"]
    assert status["pause_reason"] is None
    assert status["consecutive_failures"] == 0
    assert await get_paused_connections() == []


@pytest.mark.asyncio
async def test_pause_is_idempotent(test_db, make_connection):
    connection_id = await make_connection()

    assert await pause_auto_sync(connection_id, "Manual pause")
    assert not await pause_auto_sync(connection_id, "Manual pause again")
    assert (await check_pause_status(connection_id))["pause_reason"] == "Manual pause"


@pytest.mark.asyncio
async def test_missing_connection_raises(test_db):
    with pytest.raises(ValueError):
        await check_pause_status(999)
