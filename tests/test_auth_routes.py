"""Tests for the calendar OAuth consent flow."""

from __future__ import annotations

import pytest
from fastapi import HTTPException

from calsync.auth.routes import consume_oauth_state, oauth_callback, store_oauth_state
from calsync.sync.connections import WebhookStatus, get_active_connection

ADMIN_ID = "admin-1"


@pytest.fixture
def google_oauth(monkeypatch):
    async def fake_exchange(code):
        assert code == "auth-code"
        return {"access_token": "access", "refresh_token": "refresh", "expires_in": 3600}

    async def fake_user_info(access_token):
        return {"email": "groomer@example.com"}

    monkeypatch.setattr("calsync.auth.routes.exchange_code_for_tokens", fake_exchange)
    monkeypatch.setattr("calsync.auth.routes.get_user_info", fake_user_info)


@pytest.mark.asyncio
async def test_oauth_state_is_single_use(test_db):
    await store_oauth_state("state-1", ADMIN_ID, next_url="/admin/calendar")

    assert await consume_oauth_state("state-1") == {"admin_id": ADMIN_ID, "next": "/admin/calendar"}
    assert await consume_oauth_state("state-1") is None


@pytest.mark.asyncio
async def test_expired_state_is_rejected(test_db):
    await store_oauth_state("state-1", ADMIN_ID, ttl_minutes=-1)

    assert await consume_oauth_state("state-1") is None


@pytest.mark.asyncio
async def test_callback_creates_connection_and_webhook(test_db, google_oauth, fake_calendar):
    await store_oauth_state("state-1", ADMIN_ID, next_url="/admin/calendar")

    response = await oauth_callback(code="auth-code", state="state-1")

    assert response.status_code == 302
    assert response.headers["location"] == "/admin/calendar"

    connection = await get_active_connection(ADMIN_ID)
    assert connection.calendar_email == "groomer@example.com"
    assert connection.webhook.status == WebhookStatus.REGISTERED


@pytest.mark.asyncio
async def test_callback_with_existing_connection_conflicts(test_db, google_oauth, make_connection, fake_calendar):
    await make_connection()
    await store_oauth_state("state-1", ADMIN_ID)

    with pytest.raises(HTTPException) as exc_info:
        await oauth_callback(code="auth-code", state="state-1")

    assert exc_info.value.status_code == 409


@pytest.mark.asyncio
async def test_callback_reports_provider_error(test_db):
    await store_oauth_state("state-1", ADMIN_ID)

    response = await oauth_callback(state="state-1", error="access_denied")

    assert response.headers["location"] == "/admin/settings/calendar?calendar_error=access_denied"


@pytest.mark.asyncio
async def test_callback_with_short_lived_token_fails(test_db, monkeypatch):
    async def fake_exchange(code):
        return {"access_token": "access", "refresh_token": "refresh", "expires_in": 10}

    async def fake_user_info(access_token):
        return {"email": "groomer@example.com"}

    monkeypatch.setattr("calsync.auth.routes.exchange_code_for_tokens", fake_exchange)
    monkeypatch.setattr("calsync.auth.routes.get_user_info", fake_user_info)
    await store_oauth_state("state-1", ADMIN_ID)

    response = await oauth_callback(code="auth-code", state="state-1")

    assert response.headers["location"].endswith("calendar_error=callback_failed")
    assert await get_active_connection(ADMIN_ID) is None
