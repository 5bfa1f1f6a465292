"""Database connection and schema management."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

import aiosqlite

from calsync.config import get_settings

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()


SCHEMA = """
-- Runtime settings (sync criteria, SMTP, alert recipients)
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value_encrypted TEXT,
    value_plain TEXT,
    is_sensitive BOOLEAN DEFAULT FALSE,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- ---------------------------------------------------------------------------
-- Booking application tables (read surface only)
-- ---------------------------------------------------------------------------
CREATE TABLE IF NOT EXISTS customers (
    id TEXT PRIMARY KEY,
    first_name TEXT,
    last_name TEXT,
    email TEXT,
    phone TEXT
);

CREATE TABLE IF NOT EXISTS pets (
    id TEXT PRIMARY KEY,
    name TEXT,
    size TEXT
);

CREATE TABLE IF NOT EXISTS services (
    id TEXT PRIMARY KEY,
    name TEXT,
    duration_minutes INTEGER
);

CREATE TABLE IF NOT EXISTS addons (
    id TEXT PRIMARY KEY,
    name TEXT,
    duration_minutes INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS appointments (
    id TEXT PRIMARY KEY,
    customer_id TEXT REFERENCES customers(id),
    pet_id TEXT REFERENCES pets(id),
    service_id TEXT REFERENCES services(id),
    scheduled_at TIMESTAMP,
    status TEXT NOT NULL DEFAULT 'pending',
    notes TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS appointment_addons (
    appointment_id TEXT NOT NULL REFERENCES appointments(id) ON DELETE CASCADE,
    addon_id TEXT NOT NULL REFERENCES addons(id),
    PRIMARY KEY (appointment_id, addon_id)
);

-- ---------------------------------------------------------------------------
-- Calendar sync tables
-- ---------------------------------------------------------------------------

-- One row per tenant admin, at most one active
CREATE TABLE IF NOT EXISTS calendar_connections (
    id INTEGER PRIMARY KEY,
    admin_id TEXT NOT NULL,
    access_token_encrypted TEXT NOT NULL,
    refresh_token_encrypted TEXT NOT NULL,
    token_expiry TIMESTAMP NOT NULL,
    calendar_id TEXT NOT NULL DEFAULT 'primary',
    calendar_email TEXT NOT NULL,
    webhook_channel_id TEXT,
    webhook_resource_id TEXT,
    webhook_expiration TIMESTAMP,
    webhook_token TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    last_sync_at TIMESTAMP,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    auto_sync_paused BOOLEAN NOT NULL DEFAULT FALSE,
    paused_at TIMESTAMP,
    pause_reason TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    CHECK (
        (webhook_channel_id IS NULL AND webhook_resource_id IS NULL AND webhook_expiration IS NULL)
        OR (webhook_channel_id IS NOT NULL AND webhook_resource_id IS NOT NULL AND webhook_expiration IS NOT NULL)
    )
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_connections_one_active
    ON calendar_connections(admin_id) WHERE is_active = TRUE;
CREATE INDEX IF NOT EXISTS idx_connections_webhook_channel
    ON calendar_connections(webhook_channel_id);

-- Appointment <-> remote event index
CREATE TABLE IF NOT EXISTS calendar_event_mapping (
    id INTEGER PRIMARY KEY,
    appointment_id TEXT NOT NULL UNIQUE,
    connection_id INTEGER NOT NULL REFERENCES calendar_connections(id) ON DELETE CASCADE,
    google_event_id TEXT NOT NULL,
    sync_direction TEXT NOT NULL DEFAULT 'push' CHECK (sync_direction IN ('push', 'pull')),
    last_synced_at TIMESTAMP NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(connection_id, google_event_id)
);

-- Append-only audit log
CREATE TABLE IF NOT EXISTS calendar_sync_log (
    id INTEGER PRIMARY KEY,
    connection_id INTEGER,
    sync_type TEXT NOT NULL CHECK (sync_type IN ('push', 'pull', 'bulk', 'webhook')),
    operation TEXT CHECK (operation IN ('create', 'update', 'delete', 'import')),
    appointment_id TEXT,
    google_event_id TEXT,
    status TEXT NOT NULL CHECK (status IN ('success', 'failed', 'partial')),
    error_message TEXT,
    error_code TEXT,
    details TEXT,
    duration_ms INTEGER,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_sync_log_connection ON calendar_sync_log(connection_id, created_at);
CREATE INDEX IF NOT EXISTS idx_sync_log_appointment ON calendar_sync_log(appointment_id);

-- Backoff-scheduled push retries
CREATE TABLE IF NOT EXISTS calendar_sync_retry_queue (
    id INTEGER PRIMARY KEY,
    admin_id TEXT NOT NULL,
    appointment_id TEXT NOT NULL,
    operation TEXT NOT NULL CHECK (operation IN ('create', 'update', 'delete')),
    retry_count INTEGER NOT NULL DEFAULT 0,
    last_retry_at TIMESTAMP,
    next_retry_at TIMESTAMP NOT NULL,
    error_details TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_retry_queue_next_retry ON calendar_sync_retry_queue(next_retry_at);
CREATE INDEX IF NOT EXISTS idx_retry_queue_appointment ON calendar_sync_retry_queue(appointment_id);

-- Daily Google Calendar API usage
CREATE TABLE IF NOT EXISTS calendar_api_quota (
    date TEXT PRIMARY KEY,
    request_count INTEGER NOT NULL DEFAULT 0,
    last_updated TIMESTAMP DEFAULT CURRENT_TIMESTAMP
);

-- Outbound appointment change events from the booking write path
CREATE TABLE IF NOT EXISTS calendar_sync_outbox (
    id INTEGER PRIMARY KEY,
    admin_id TEXT NOT NULL,
    appointment_id TEXT NOT NULL,
    event_type TEXT NOT NULL CHECK (event_type IN ('upserted', 'deleted')),
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'processed', 'failed')),
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    processed_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_outbox_pending ON calendar_sync_outbox(status, created_at);

-- Email alert queue
CREATE TABLE IF NOT EXISTS alert_queue (
    id INTEGER PRIMARY KEY,
    alert_type TEXT NOT NULL,
    connection_id INTEGER,
    recipient_email TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    sent_at TIMESTAMP,
    attempts INTEGER DEFAULT 0,
    last_attempt TIMESTAMP
);

-- Scheduler serialization
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP NOT NULL,
    locked_by TEXT
);

-- OAuth state tokens (CSRF protection for the consent flow)
CREATE TABLE IF NOT EXISTS oauth_states (
    state TEXT PRIMARY KEY,
    admin_id TEXT NOT NULL,
    next_url TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    expires_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_oauth_states_expiry ON oauth_states(expires_at);
"""


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA foreign_keys = ON")
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")


async def get_setting(key: str) -> Optional[dict]:
    """Get a setting by key."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM settings WHERE key = ?", (key,)
    )
    row = await cursor.fetchone()
    if row:
        return dict(row)
    return None


async def set_setting(
    key: str,
    value: str,
    is_sensitive: bool = False,
    encrypt_func=None
) -> None:
    """Set a setting value."""
    db = await get_database()
    now = datetime.utcnow().isoformat()

    if is_sensitive and encrypt_func:
        value_encrypted = encrypt_func(value)
        await db.execute(
            """INSERT INTO settings (key, value_encrypted, is_sensitive, updated_at)
               VALUES (?, ?, TRUE, ?)
               ON CONFLICT(key) DO UPDATE SET
               value_encrypted = excluded.value_encrypted,
               is_sensitive = TRUE,
               updated_at = excluded.updated_at""",
            (key, value_encrypted, now)
        )
    else:
        await db.execute(
            """INSERT INTO settings (key, value_plain, is_sensitive, updated_at)
               VALUES (?, ?, FALSE, ?)
               ON CONFLICT(key) DO UPDATE SET
               value_plain = excluded.value_plain,
               is_sensitive = FALSE,
               updated_at = excluded.updated_at""",
            (key, value, now)
        )
    await db.commit()
