"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
from datetime import datetime, timedelta

import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["CALENDAR_TOKEN_ENCRYPTION_KEY"] = "0123456789abcdef" * 4
os.environ["PUBLIC_URL"] = "http://localhost:3000"
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["SESSION_SECRET_KEY"] = "test-session-secret"
os.environ["GOOGLE_CLIENT_ID"] = "test-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "test-client-secret"
os.environ["ENABLE_SCHEDULER"] = "false"

ADMIN_ID = "admin-1"


@pytest_asyncio.fixture
async def test_db():
    """Create a test database."""
    from calsync.database import close_database, get_database
    from calsync.encryption import reset_vault
    import calsync.database as db_module

    # Reset the global connection
    db_module._db_connection = None
    reset_vault()

    db = await get_database()

    yield db

    await close_database()
    db_module._db_connection = None
    reset_vault()


class FakeCalendarClient:
    """In-memory stand-in for GoogleCalendarClient.

    ``fail`` maps a method name to an exception raised on every call.
    """

    def __init__(self):
        self.events: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.fail: dict[str, Exception] = {}
        self.listed: list[dict] = []
        self._counter = 0

    def _check(self, method: str) -> None:
        error = self.fail.get(method)
        if error is not None:
            raise error

    async def create_event(self, event: dict) -> dict:
        self._check("create_event")
        self._counter += 1
        event_id = f"evt-{self._counter}"
        self.events[event_id] = {**event, "id": event_id}
        self.calls.append(("create", event_id))
        return self.events[event_id]

    async def update_event(self, event_id: str, event: dict) -> dict:
        self.calls.append(("update", event_id))
        self._check("update_event")
        self.events[event_id] = {**event, "id": event_id}
        return self.events[event_id]

    async def delete_event(self, event_id: str) -> bool:
        self.calls.append(("delete", event_id))
        self._check("delete_event")
        self.events.pop(event_id, None)
        return True

    async def get_event(self, event_id: str):
        self.calls.append(("get", event_id))
        self._check("get_event")
        return self.events.get(event_id)

    async def list_events(self, **kwargs) -> list[dict]:
        self.calls.append(("list", kwargs))
        self._check("list_events")
        return list(self.listed)

    async def watch_events(self, channel_id: str, address: str, token: str, expiration: datetime) -> dict:
        self.calls.append(("watch", channel_id, address))
        self._check("watch_events")
        return {
            "id": channel_id,
            "resourceId": f"resource-{channel_id[:8]}",
            "expiration": str(int((expiration - datetime(1970, 1, 1)).total_seconds() * 1000)),
        }

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        self.calls.append(("stop", channel_id, resource_id))
        self._check("stop_channel")


@pytest.fixture
def fake_calendar(monkeypatch):
    """Route every remote calendar call to one FakeCalendarClient."""
    client = FakeCalendarClient()

    async def fake_get_client(_connection):
        return client

    for module in (
        "calsync.sync.push",
        "calsync.sync.delete_handler",
        "calsync.sync.importer",
        "calsync.sync.webhook_processor",
        "calsync.sync.webhook_registration",
    ):
        monkeypatch.setattr(f"{module}.get_client_for_connection", fake_get_client)

    return client


@pytest.fixture
def make_connection(test_db):
    """Insert a calendar connection row and return its id."""
    async def _make(
        admin_id: str = ADMIN_ID,
        is_active: bool = True,
        token_expiry: datetime | None = None,
        channel_id: str | None = None,
        webhook_expiration: datetime | None = None,
        webhook_token: str | None = None,
        paused: bool = False,
        consecutive_failures: int = 0,
    ) -> int:
        from calsync.encryption import encrypt_token

        expiry = token_expiry or datetime.utcnow() + timedelta(hours=1)
        cursor = await test_db.execute(
            """INSERT INTO calendar_connections
               (admin_id, access_token_encrypted, refresh_token_encrypted, token_expiry,
                calendar_id, calendar_email, webhook_channel_id, webhook_resource_id,
                webhook_expiration, webhook_token, is_active, consecutive_failures,
                auto_sync_paused, paused_at, pause_reason)
               VALUES (?, ?, ?, ?, 'primary', ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               RETURNING id""",
            (
                admin_id,
                encrypt_token("access-token"),
                encrypt_token("refresh-token"),
                expiry.isoformat(),
                f"{admin_id}@example.com",
                channel_id,
                f"resource-{channel_id}" if channel_id else None,
                (webhook_expiration or datetime.utcnow() + timedelta(days=3)).isoformat() if channel_id else None,
                webhook_token,
                is_active,
                consecutive_failures,
                paused,
                datetime.utcnow().isoformat() if paused else None,
                "Paused for test" if paused else None,
            ),
        )
        row = await cursor.fetchone()
        await test_db.commit()
        return row["id"]

    return _make


@pytest.fixture
def make_appointment(test_db):
    """Insert an appointment with its customer, pet and service."""
    async def _make(
        appointment_id: str = "appt-1",
        status: str = "confirmed",
        scheduled_at: datetime | None = None,
        updated_at: datetime | None = None,
        duration_minutes: int = 60,
    ) -> str:
        scheduled = scheduled_at or datetime.utcnow() + timedelta(days=2)
        updated = updated_at or datetime.utcnow() - timedelta(days=1)
        await test_db.execute(
            """INSERT OR IGNORE INTO customers (id, first_name, last_name, email, phone)
               VALUES ('cust-1', 'Jane', 'Doe', 'jane@example.com', '5551234567')"""
        )
        await test_db.execute(
            "INSERT OR IGNORE INTO pets (id, name, size) VALUES ('pet-1', 'Buddy', 'medium')"
        )
        await test_db.execute(
            """INSERT INTO services (id, name, duration_minutes)
               VALUES ('svc-1', 'Full Groom', ?)
               ON CONFLICT(id) DO UPDATE SET duration_minutes = excluded.duration_minutes""",
            (duration_minutes,),
        )
        await test_db.execute(
            """INSERT INTO appointments
               (id, customer_id, pet_id, service_id, scheduled_at, status, notes, created_at, updated_at)
               VALUES (?, 'cust-1', 'pet-1', 'svc-1', ?, ?, NULL, ?, ?)""",
            (
                appointment_id,
                scheduled.isoformat(),
                status,
                updated.isoformat(),
                updated.isoformat(),
            ),
        )
        await test_db.commit()
        return appointment_id

    return _make


@pytest.fixture
def make_mapping(test_db):
    """Insert an event mapping with a chosen last_synced_at."""
    async def _make(
        appointment_id: str,
        connection_id: int,
        google_event_id: str,
        last_synced_at: datetime | None = None,
    ) -> None:
        synced = (last_synced_at or datetime.utcnow() - timedelta(hours=1)).isoformat()
        await test_db.execute(
            """INSERT INTO calendar_event_mapping
               (appointment_id, connection_id, google_event_id, sync_direction, last_synced_at)
               VALUES (?, ?, ?, 'push', ?)""",
            (appointment_id, connection_id, google_event_id, synced),
        )
        await test_db.commit()

    return _make


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    from fastapi.testclient import TestClient

    from calsync.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers():
    """Bearer header for a signed-in tenant admin."""
    from calsync.auth.session import create_session_token

    return {"Authorization": f"Bearer {create_session_token(ADMIN_ID)}"}
