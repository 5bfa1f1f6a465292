"""Calendar connection registry.

A tenant admin has at most one active connection. Connection state, pause
state and webhook state are exposed as explicit enums built from the row.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

import aiosqlite
from pydantic import BaseModel, Field, model_validator

from calsync.database import get_database
from calsync.utils.timestamps import parse_utc

logger = logging.getLogger(__name__)


class ConnectionExistsError(Exception):
    """Tenant already has an active calendar connection."""


class ConnectionNotFoundError(Exception):
    """No connection with the given id."""


class ConnectionState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PauseStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"


class WebhookStatus(str, Enum):
    NONE = "none"
    REGISTERED = "registered"


class PauseState(BaseModel):
    status: PauseStatus = PauseStatus.RUNNING
    reason: Optional[str] = None
    since: Optional[datetime] = None

    @property
    def is_paused(self) -> bool:
        return self.status == PauseStatus.PAUSED


class WebhookState(BaseModel):
    """Either no channel, or channel id, resource id and expiration together."""
    status: WebhookStatus = WebhookStatus.NONE
    channel_id: Optional[str] = None
    resource_id: Optional[str] = None
    expiration: Optional[datetime] = None

    @model_validator(mode="after")
    def _all_or_nothing(self):
        fields = (self.channel_id, self.resource_id, self.expiration)
        if self.status == WebhookStatus.REGISTERED and any(f is None for f in fields):
            raise ValueError("Registered webhook requires channel, resource and expiration")
        if self.status == WebhookStatus.NONE and any(f is not None for f in fields):
            raise ValueError("Webhook without registration cannot carry channel data")
        return self

    @classmethod
    def registered(cls, channel_id: str, resource_id: str, expiration: datetime) -> "WebhookState":
        return cls(
            status=WebhookStatus.REGISTERED,
            channel_id=channel_id,
            resource_id=resource_id,
            expiration=expiration,
        )


class Connection(BaseModel):
    """A tenant's link to one Google calendar."""
    id: int
    admin_id: str
    calendar_id: str
    calendar_email: str
    token_expiry: Optional[datetime] = None
    state: ConnectionState
    pause: PauseState = PauseState()
    webhook: WebhookState = WebhookState()
    consecutive_failures: int = 0
    last_sync_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    access_token_encrypted: str = Field(repr=False)
    refresh_token_encrypted: str = Field(repr=False)

    @property
    def is_active(self) -> bool:
        return self.state == ConnectionState.ACTIVE

    @classmethod
    def from_row(cls, row) -> "Connection":
        row = dict(row)

        if row["auto_sync_paused"]:
            pause = PauseState(
                status=PauseStatus.PAUSED,
                reason=row["pause_reason"],
                since=parse_utc(row["paused_at"]),
            )
        else:
            pause = PauseState()

        if row["webhook_channel_id"] and row["webhook_resource_id"] and row["webhook_expiration"]:
            webhook = WebhookState.registered(
                row["webhook_channel_id"],
                row["webhook_resource_id"],
                parse_utc(row["webhook_expiration"]),
            )
        else:
            webhook = WebhookState()

        return cls(
            id=row["id"],
            admin_id=row["admin_id"],
            calendar_id=row["calendar_id"],
            calendar_email=row["calendar_email"],
            token_expiry=parse_utc(row["token_expiry"]),
            state=ConnectionState.ACTIVE if row["is_active"] else ConnectionState.INACTIVE,
            pause=pause,
            webhook=webhook,
            consecutive_failures=row["consecutive_failures"] or 0,
            last_sync_at=parse_utc(row["last_sync_at"]),
            created_at=parse_utc(row["created_at"]),
            updated_at=parse_utc(row["updated_at"]),
            access_token_encrypted=row["access_token_encrypted"],
            refresh_token_encrypted=row["refresh_token_encrypted"],
        )


async def _fetch_one(query: str, params: tuple) -> Optional[Connection]:
    db = await get_database()
    cursor = await db.execute(query, params)
    row = await cursor.fetchone()
    if row:
        return Connection.from_row(row)
    return None


async def get_active_connection(admin_id: str) -> Optional[Connection]:
    """Get the tenant's active connection, or None."""
    return await _fetch_one(
        """SELECT * FROM calendar_connections
           WHERE admin_id = ? AND is_active = TRUE
           ORDER BY created_at DESC LIMIT 1""",
        (admin_id,),
    )


async def get_connection_by_id(connection_id: int) -> Optional[Connection]:
    return await _fetch_one(
        "SELECT * FROM calendar_connections WHERE id = ?",
        (connection_id,),
    )


async def get_connection_by_channel(channel_id: str) -> Optional[Connection]:
    """Find the connection owning a webhook channel."""
    return await _fetch_one(
        "SELECT * FROM calendar_connections WHERE webhook_channel_id = ?",
        (channel_id,),
    )


async def get_webhook_token(connection_id: int) -> Optional[str]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT webhook_token FROM calendar_connections WHERE id = ?",
        (connection_id,),
    )
    row = await cursor.fetchone()
    return row["webhook_token"] if row else None


async def has_active_connection(admin_id: str) -> bool:
    return await get_active_connection(admin_id) is not None


async def list_connections(active_only: bool = True) -> list[Connection]:
    """List connections, newest first."""
    db = await get_database()
    query = "SELECT * FROM calendar_connections"
    if active_only:
        query += " WHERE is_active = TRUE"
    query += " ORDER BY created_at DESC, id DESC"
    cursor = await db.execute(query)
    return [Connection.from_row(row) for row in await cursor.fetchall()]


async def create_connection(
    admin_id: str,
    access_token_encrypted: str,
    refresh_token_encrypted: str,
    token_expiry: datetime,
    calendar_email: str,
    calendar_id: str = "primary",
) -> Connection:
    """Create an active connection. Fails if the tenant already has one."""
    if await has_active_connection(admin_id):
        raise ConnectionExistsError(
            "An active calendar connection already exists. Disconnect it first."
        )

    db = await get_database()
    now = datetime.utcnow().isoformat()
    try:
        cursor = await db.execute(
            """INSERT INTO calendar_connections
               (admin_id, access_token_encrypted, refresh_token_encrypted, token_expiry,
                calendar_id, calendar_email, is_active, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, TRUE, ?, ?)
               RETURNING id""",
            (
                admin_id,
                access_token_encrypted,
                refresh_token_encrypted,
                token_expiry.isoformat(),
                calendar_id,
                calendar_email,
                now,
                now,
            ),
        )
        row = await cursor.fetchone()
        await db.commit()
    except aiosqlite.IntegrityError:
        await db.rollback()
        raise ConnectionExistsError(
            "An active calendar connection already exists. Disconnect it first."
        ) from None

    logger.info(f"Created calendar connection {row['id']} for admin {admin_id} ({calendar_email})")
    return await get_connection_by_id(row["id"])


async def update_connection_tokens(
    connection_id: int,
    access_token_encrypted: str,
    refresh_token_encrypted: str,
    token_expiry: datetime,
) -> None:
    db = await get_database()
    await db.execute(
        """UPDATE calendar_connections
           SET access_token_encrypted = ?, refresh_token_encrypted = ?,
               token_expiry = ?, updated_at = ?
           WHERE id = ?""",
        (
            access_token_encrypted,
            refresh_token_encrypted,
            token_expiry.isoformat(),
            datetime.utcnow().isoformat(),
            connection_id,
        ),
    )
    await db.commit()


async def update_last_sync(connection_id: int) -> None:
    """Stamp last_sync_at. Failures are logged only."""
    try:
        db = await get_database()
        now = datetime.utcnow().isoformat()
        await db.execute(
            "UPDATE calendar_connections SET last_sync_at = ?, updated_at = ? WHERE id = ?",
            (now, now, connection_id),
        )
        await db.commit()
    except Exception as e:
        logger.error(f"Failed to update last sync for connection {connection_id}: {e}")


async def deactivate_connection(connection_id: int) -> None:
    """Soft-disable a connection. History and mappings are kept."""
    db = await get_database()
    await db.execute(
        """UPDATE calendar_connections
           SET is_active = FALSE, last_sync_at = NULL, updated_at = ?
           WHERE id = ?""",
        (datetime.utcnow().isoformat(), connection_id),
    )
    await db.commit()
    logger.warning(f"Deactivated calendar connection {connection_id}")


async def delete_connection(connection_id: int) -> None:
    """Hard-delete a connection and its event mappings.

    Remote tokens are revoked first on a best-effort basis.
    """
    connection = await get_connection_by_id(connection_id)
    if connection is None:
        raise ConnectionNotFoundError(f"Connection {connection_id} not found")

    if connection.is_active:
        try:
            from calsync.auth.google import revoke_token
            from calsync.encryption import decrypt_token

            await revoke_token(decrypt_token(connection.refresh_token_encrypted))
        except Exception as e:
            logger.warning(f"Failed to revoke tokens for connection {connection_id}: {e}")

    db = await get_database()
    await db.execute("DELETE FROM calendar_connections WHERE id = ?", (connection_id,))
    await db.commit()
    logger.info(f"Deleted calendar connection {connection_id}")


async def update_webhook_info(
    connection_id: int,
    webhook: WebhookState,
    token: Optional[str] = None,
) -> None:
    """Store a registered channel. All three webhook fields are written together."""
    if webhook.status != WebhookStatus.REGISTERED:
        raise ValueError("update_webhook_info requires a registered webhook state")

    db = await get_database()
    await db.execute(
        """UPDATE calendar_connections
           SET webhook_channel_id = ?, webhook_resource_id = ?,
               webhook_expiration = ?, webhook_token = ?, updated_at = ?
           WHERE id = ?""",
        (
            webhook.channel_id,
            webhook.resource_id,
            webhook.expiration.isoformat(),
            token,
            datetime.utcnow().isoformat(),
            connection_id,
        ),
    )
    await db.commit()


async def clear_webhook_info(connection_id: int) -> None:
    """Remove channel data. Failures are logged only."""
    try:
        db = await get_database()
        await db.execute(
            """UPDATE calendar_connections
               SET webhook_channel_id = NULL, webhook_resource_id = NULL,
                   webhook_expiration = NULL, webhook_token = NULL, updated_at = ?
               WHERE id = ?""",
            (datetime.utcnow().isoformat(), connection_id),
        )
        await db.commit()
    except Exception as e:
        logger.error(f"Failed to clear webhook info for connection {connection_id}: {e}")
