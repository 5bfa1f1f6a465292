"""Access token lifecycle for calendar connections."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

import httpx
from pydantic import BaseModel

from calsync.auth.google import OAuthError, RefreshTokenRevokedError, refresh_access_token
from calsync.encryption import decrypt_token, encrypt_token
from calsync.sync.connections import (
    deactivate_connection,
    get_connection_by_id,
    update_connection_tokens,
)
from calsync.sync.errors import ConnectionInvalidError

logger = logging.getLogger(__name__)

TOKEN_REFRESH_BUFFER = timedelta(minutes=5)
MIN_TOKEN_VALIDITY = timedelta(seconds=60)
MAX_REFRESH_ATTEMPTS = 3

# One refresh in flight per connection
_refresh_locks: dict[int, asyncio.Lock] = {}
_refresh_locks_guard = asyncio.Lock()


class StoredTokens(BaseModel):
    access_token_encrypted: str
    refresh_token_encrypted: str
    token_expiry: datetime


def is_token_expired(expiry: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True when the token is expired or inside the refresh buffer."""
    if expiry is None:
        return True
    now = now or datetime.utcnow()
    return now >= expiry - TOKEN_REFRESH_BUFFER


def is_token_expiry_valid(expiry: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Reject expiries that are missing or less than a minute away."""
    if expiry is None:
        return False
    now = now or datetime.utcnow()
    return expiry > now + MIN_TOKEN_VALIDITY


def expiry_from_expires_in(expires_in, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.utcnow()
    return now + timedelta(seconds=int(expires_in))


def prepare_tokens_for_storage(
    access_token: str,
    refresh_token: str,
    expiry: datetime,
) -> StoredTokens:
    """Encrypt a token pair for persistence."""
    if not is_token_expiry_valid(expiry):
        raise ValueError("Token expiry must be at least one minute in the future")

    return StoredTokens(
        access_token_encrypted=encrypt_token(access_token),
        refresh_token_encrypted=encrypt_token(refresh_token),
        token_expiry=expiry,
    )


async def _get_refresh_lock(connection_id: int) -> asyncio.Lock:
    async with _refresh_locks_guard:
        if connection_id not in _refresh_locks:
            _refresh_locks[connection_id] = asyncio.Lock()
        return _refresh_locks[connection_id]


def _is_transient_refresh_error(error: Exception) -> bool:
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, OAuthError):
        return error.status is None or error.status == 429 or error.status >= 500
    return False


async def _invalidate_connection(connection_id: int, admin_id: str, reason: str) -> None:
    await deactivate_connection(connection_id)

    from calsync.alerts.email import queue_alert
    try:
        await queue_alert(
            alert_type="connection_invalid",
            connection_id=connection_id,
            details=(
                f"Google Calendar access for admin {admin_id} was revoked or expired "
                f"({reason}). Reconnect the calendar to resume sync."
            ),
        )
    except Exception as e:
        logger.error(f"Failed to queue connection_invalid alert: {e}")


async def _refresh_tokens(connection_id: int, admin_id: str, refresh_token: str) -> str:
    """Refresh, persist and return the new access token."""
    for attempt in range(MAX_REFRESH_ATTEMPTS):
        try:
            tokens = await refresh_access_token(refresh_token)
            break
        except RefreshTokenRevokedError as e:
            logger.error(f"Refresh token revoked for connection {connection_id}")
            await _invalidate_connection(connection_id, admin_id, str(e))
            raise ConnectionInvalidError() from e
        except (OAuthError, httpx.TransportError) as e:
            if not _is_transient_refresh_error(e) or attempt == MAX_REFRESH_ATTEMPTS - 1:
                logger.error(
                    f"Failed to refresh token for connection {connection_id} "
                    f"after {attempt + 1} attempts: {e}"
                )
                raise
            wait_time = 2 ** attempt
            logger.warning(
                f"Token refresh attempt {attempt + 1} failed for connection {connection_id}, "
                f"retrying in {wait_time}s: {e}"
            )
            await asyncio.sleep(wait_time)

    access_token = tokens["access_token"]
    new_refresh = tokens.get("refresh_token") or refresh_token
    stored = prepare_tokens_for_storage(
        access_token,
        new_refresh,
        expiry_from_expires_in(tokens.get("expires_in", 3600)),
    )
    await update_connection_tokens(
        connection_id,
        stored.access_token_encrypted,
        stored.refresh_token_encrypted,
        stored.token_expiry,
    )
    logger.info(f"Refreshed access token for connection {connection_id}")
    return access_token


async def get_valid_access_token(connection_id: int, force_refresh: bool = False) -> str:
    """Return a usable access token, refreshing it just in time.

    Raises ConnectionInvalidError when the connection is inactive or its
    refresh token has been revoked. Callers must not retry that error.
    """
    connection = await get_connection_by_id(connection_id)
    if connection is None or not connection.is_active:
        raise ConnectionInvalidError()

    if not force_refresh and not is_token_expired(connection.token_expiry):
        return decrypt_token(connection.access_token_encrypted)

    lock = await _get_refresh_lock(connection_id)
    async with lock:
        # Another caller may have refreshed while we waited
        connection = await get_connection_by_id(connection_id)
        if connection is None or not connection.is_active:
            raise ConnectionInvalidError()
        if not force_refresh and not is_token_expired(connection.token_expiry):
            return decrypt_token(connection.access_token_encrypted)

        return await _refresh_tokens(
            connection.id,
            connection.admin_id,
            decrypt_token(connection.refresh_token_encrypted),
        )
