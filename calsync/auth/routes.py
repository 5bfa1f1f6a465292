"""OAuth routes for connecting a Google calendar."""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import RedirectResponse

from calsync.auth.google import (
    CALLBACK_PATH,
    OAuthError,
    exchange_code_for_tokens,
    generate_auth_url,
    get_user_info,
)
from calsync.auth.session import AdminSession, get_current_admin
from calsync.auth.tokens import expiry_from_expires_in, prepare_tokens_for_storage
from calsync.config import get_settings
from calsync.database import get_database
from calsync.sync.connections import ConnectionExistsError, create_connection

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])

STATE_TTL_MINUTES = 10
DEFAULT_NEXT_URL = "/admin/settings/calendar"


async def store_oauth_state(
    state: str,
    admin_id: str,
    next_url: Optional[str] = None,
    ttl_minutes: int = STATE_TTL_MINUTES,
) -> None:
    """Store OAuth state in database with TTL."""
    db = await get_database()
    now = datetime.utcnow()
    await db.execute(
        """INSERT INTO oauth_states (state, admin_id, next_url, created_at, expires_at)
           VALUES (?, ?, ?, ?, ?)""",
        (
            state,
            admin_id,
            next_url,
            now.isoformat(),
            (now + timedelta(minutes=ttl_minutes)).isoformat(),
        ),
    )
    await db.commit()


async def consume_oauth_state(state: str) -> Optional[dict]:
    """Retrieve and delete an unexpired OAuth state. States are single use."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT admin_id, next_url FROM oauth_states
           WHERE state = ? AND expires_at > ?""",
        (state, datetime.utcnow().isoformat()),
    )
    row = await cursor.fetchone()

    await db.execute("DELETE FROM oauth_states WHERE state = ?", (state,))
    await db.commit()

    if row is None:
        return None
    return {"admin_id": row["admin_id"], "next": row["next_url"] or DEFAULT_NEXT_URL}


def _safe_next_url(next_url: Optional[str]) -> str:
    # Only same-site relative paths
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return DEFAULT_NEXT_URL


def _redirect_with_error(next_url: str, error: str) -> RedirectResponse:
    separator = "&" if "?" in next_url else "?"
    return RedirectResponse(
        url=f"{next_url}{separator}calendar_error={quote(error)}",
        status_code=status.HTTP_302_FOUND,
    )


@router.get("/google/connect")
async def connect_calendar(
    next: Optional[str] = None,
    admin: AdminSession = Depends(get_current_admin),
):
    """Start the consent flow for the calling admin."""
    state = secrets.token_urlsafe(32)
    try:
        auth_url = generate_auth_url(state)
    except OAuthError as e:
        logger.error(f"Cannot start OAuth flow: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="OAuth credentials not configured"
        )

    await store_oauth_state(state, admin.admin_id, next_url=_safe_next_url(next))
    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


@router.get("/google/callback")
async def oauth_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
):
    """Finish the consent flow: store the connection, then open a webhook channel."""
    state_data = await consume_oauth_state(state) if state else None
    if not state_data:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired state parameter"
        )

    next_url = state_data["next"]
    admin_id = state_data["admin_id"]

    if error:
        logger.error(f"OAuth error for admin {admin_id}: {error} - {error_description}")
        return _redirect_with_error(next_url, error)

    if not code:
        return _redirect_with_error(next_url, "missing_code")

    try:
        tokens = await exchange_code_for_tokens(code)
        user_info = await get_user_info(tokens["access_token"])
        stored = prepare_tokens_for_storage(
            tokens["access_token"],
            tokens["refresh_token"],
            expiry_from_expires_in(tokens["expires_in"]),
        )
        connection = await create_connection(
            admin_id=admin_id,
            access_token_encrypted=stored.access_token_encrypted,
            refresh_token_encrypted=stored.refresh_token_encrypted,
            token_expiry=stored.token_expiry,
            calendar_email=user_info.get("email", ""),
        )
    except ConnectionExistsError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An active calendar connection already exists. Disconnect it first."
        )
    except (OAuthError, ValueError) as e:
        logger.error(f"OAuth callback failed for admin {admin_id}: {e}")
        return _redirect_with_error(next_url, "callback_failed")

    if get_settings().enable_webhooks:
        try:
            from calsync.sync.webhook_registration import register_webhook
            await register_webhook(connection)
        except Exception as e:
            # Renewal job retries registration
            logger.warning(f"Webhook registration failed for connection {connection.id}: {e}")

    logger.info(f"Admin {admin_id} connected calendar {connection.calendar_email}")
    return RedirectResponse(url=next_url, status_code=status.HTTP_302_FOUND)
