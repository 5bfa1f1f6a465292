"""Authentication module."""

from calsync.auth.session import (
    AdminSession,
    create_session_token,
    verify_session_token,
    get_current_admin,
    require_cron_secret,
)

__all__ = [
    "AdminSession",
    "create_session_token",
    "verify_session_token",
    "get_current_admin",
    "require_cron_secret",
]
