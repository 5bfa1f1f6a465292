"""Tests for webhook channel registration and renewal."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from calsync.sync.connections import WebhookStatus, get_connection_by_id
from calsync.sync.errors import RemoteCalendarError
from calsync.sync.webhook_registration import (
    ensure_webhook,
    get_webhook_renewal_status,
    get_webhook_url,
    is_webhook_expired,
)
from calsync.sync.webhook_renewal import renew_expiring_webhooks


def test_webhook_url_uses_public_url():
    assert get_webhook_url() == "http://localhost:3000/api/webhooks/google-calendar"


def test_expiry_threshold():
    now = datetime(2026, 1, 1)

    assert is_webhook_expired(None)
    assert is_webhook_expired(now + timedelta(hours=23), now=now)
    assert not is_webhook_expired(now + timedelta(days=2), now=now)


@pytest.mark.asyncio
async def test_ensure_webhook_registers_channel(test_db, make_connection, fake_calendar):
    connection_id = await make_connection()

    webhook = await ensure_webhook(connection_id)

    assert webhook.status == WebhookStatus.REGISTERED
    connection = await get_connection_by_id(connection_id)
    assert connection.webhook.channel_id == webhook.channel_id
    assert connection.webhook.resource_id.startswith("resource-")
    assert fake_calendar.calls[0][2] == get_webhook_url()


@pytest.mark.asyncio
async def test_ensure_webhook_keeps_healthy_channel(test_db, make_connection, fake_calendar):
    connection_id = await make_connection(channel_id="chan-1", webhook_token="tok")

    webhook = await ensure_webhook(connection_id)

    assert webhook.channel_id == "chan-1"
    assert fake_calendar.calls == []


@pytest.mark.asyncio
async def test_expiring_channel_is_renewed(test_db, make_connection, fake_calendar):
    connection_id = await make_connection(
        channel_id="chan-old",
        webhook_expiration=datetime.utcnow() + timedelta(hours=2),
        webhook_token="tok",
    )

    summary = await renew_expiring_webhooks()

    assert summary.total == 1
    assert summary.renewed == 1
    assert ("stop", "chan-old", "resource-chan-old") in fake_calendar.calls
    connection = await get_connection_by_id(connection_id)
    assert connection.webhook.channel_id != "chan-old"
    assert not is_webhook_expired(connection.webhook.expiration)


@pytest.mark.asyncio
async def test_healthy_channels_are_left_alone(test_db, make_connection, fake_calendar):
    await make_connection(channel_id="chan-1", webhook_token="tok")

    summary = await renew_expiring_webhooks()

    assert summary.total == 0
    assert fake_calendar.calls == []


@pytest.mark.asyncio
async def test_deleted_calendar_deactivates_connection(test_db, make_connection, fake_calendar):
    connection_id = await make_connection(
        channel_id="chan-old",
        webhook_expiration=datetime.utcnow() + timedelta(hours=2),
        webhook_token="tok",
    )
    fake_calendar.fail["watch_events"] = RemoteCalendarError("HTTP_404", "Not Found", 404)

    summary = await renew_expiring_webhooks()

    assert summary.deactivated == 1
    assert not (await get_connection_by_id(connection_id)).is_active


@pytest.mark.asyncio
async def test_transient_renewal_failure_keeps_connection(test_db, make_connection, fake_calendar):
    connection_id = await make_connection(
        channel_id="chan-old",
        webhook_expiration=datetime.utcnow() + timedelta(hours=2),
        webhook_token="tok",
    )
    fake_calendar.fail["watch_events"] = RemoteCalendarError("HTTP_503", "Backend Error", 503)

    summary = await renew_expiring_webhooks()

    assert summary.failed == 1
    assert (await get_connection_by_id(connection_id)).is_active

    connection = await get_connection_by_id(connection_id)
    assert connection.webhook.channel_id == "chan-old"
    assert not any(call[0] == "stop" for call in fake_calendar.calls)

    del fake_calendar.fail["watch_events"]
    retried = await renew_expiring_webhooks()

    assert retried.total == 1
    assert retried.renewed == 1
    assert ("stop", "chan-old", "resource-chan-old") in fake_calendar.calls
    assert (await get_connection_by_id(connection_id)).webhook.channel_id != "chan-old"


@pytest.mark.asyncio
async def test_renewal_status_report(test_db, make_connection):
    await make_connection(channel_id="chan-1", webhook_token="tok")
    await make_connection(admin_id="admin-2")

    statuses = await get_webhook_renewal_status()

    assert [status["status"] for status in statuses] == ["healthy", "no_webhook"]
    assert statuses[0]["days_until_expiration"] == 2


@pytest.mark.asyncio
async def test_connection_without_channel_is_registered_on_renewal(test_db, make_connection, fake_calendar):
    connection_id = await make_connection()

    summary = await renew_expiring_webhooks()

    assert summary.renewed == 1
    connection = await get_connection_by_id(connection_id)
    assert connection.webhook.status == WebhookStatus.REGISTERED
    assert not any(call[0] == "stop" for call in fake_calendar.calls)


@pytest.mark.asyncio
async def test_missing_channels_ignored_when_webhooks_disabled(
    test_db, make_connection, fake_calendar, monkeypatch
):
    from calsync.config import get_settings

    monkeypatch.setattr(get_settings(), "enable_webhooks", False)
    await make_connection()

    summary = await renew_expiring_webhooks()

    assert summary.total == 0
    assert fake_calendar.calls == []
