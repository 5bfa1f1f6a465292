"""Admin sessions (JWT) and cron trigger authentication."""

import hmac
import logging
from datetime import datetime, timedelta
from typing import Optional

from fastapi import HTTPException, Request, status
from jose import JWTError, jwt
from pydantic import BaseModel

from calsync.config import get_session_secret, get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
SESSION_COOKIE_NAME = "session"
SESSION_EXPIRE_DAYS = 7


class AdminSession(BaseModel):
    """Session data stored in JWT. ``admin_id`` identifies the tenant."""
    admin_id: str
    exp: datetime


def create_session_token(admin_id: str, expire_days: int = SESSION_EXPIRE_DAYS) -> str:
    """Create a JWT session token for an admin."""
    expire = datetime.utcnow() + timedelta(days=expire_days)
    data = {"admin_id": admin_id, "exp": expire}
    return jwt.encode(data, get_session_secret(), algorithm=ALGORITHM)


def verify_session_token(token: str) -> Optional[AdminSession]:
    """Verify and decode a session token."""
    try:
        payload = jwt.decode(token, get_session_secret(), algorithms=[ALGORITHM])
        return AdminSession(**payload)
    except JWTError as e:
        logger.warning(f"Invalid session token: {e}")
        return None


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


async def get_current_admin(request: Request) -> AdminSession:
    """Resolve the calling admin from the session cookie or bearer token."""
    token = request.cookies.get(SESSION_COOKIE_NAME) or _bearer_token(request)
    session = verify_session_token(token) if token else None
    if not session:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


async def require_cron_secret(request: Request) -> None:
    """Authenticate an external cron trigger with ``Authorization: Bearer <CRON_SECRET>``."""
    expected = get_settings().cron_secret
    if not expected:
        logger.error("Cron trigger called but CRON_SECRET is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret not configured",
        )

    provided = _bearer_token(request) or ""
    if not hmac.compare_digest(provided, expected):
        logger.warning("Cron trigger rejected: invalid secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
