"""Google OAuth helpers."""

import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from calsync.config import get_settings

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

CALLBACK_PATH = "/auth/google/callback"

SCOPES = [
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/calendar.events",
]


class OAuthError(Exception):
    """OAuth request to Google failed."""

    def __init__(self, message: str, error_code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.error_code = error_code
        self.status = status


class RefreshTokenRevokedError(OAuthError):
    """The refresh token is invalid or was revoked by the user."""


def get_oauth_credentials() -> tuple[str, str]:
    """Get OAuth client credentials from configuration."""
    settings = get_settings()
    if not settings.google_client_id or not settings.google_client_secret:
        raise OAuthError("Google OAuth client is not configured")
    return settings.google_client_id, settings.google_client_secret


def get_redirect_uri() -> str:
    return f"{get_settings().public_url.rstrip('/')}{CALLBACK_PATH}"


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str):
            return error
    return None


def build_auth_url(
    client_id: str,
    redirect_uri: str,
    scopes: list[str],
    state: str,
    login_hint: Optional[str] = None,
    prompt: str = "consent"
) -> str:
    """Build Google OAuth authorization URL."""
    params = {
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "access_type": "offline",
        "state": state,
        "prompt": prompt,
    }

    if login_hint:
        params["login_hint"] = login_hint

    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


def generate_auth_url(state: str, login_hint: Optional[str] = None) -> str:
    """Consent URL for connecting a calendar. Always asks for offline access."""
    client_id, _ = get_oauth_credentials()
    return build_auth_url(
        client_id=client_id,
        redirect_uri=get_redirect_uri(),
        scopes=SCOPES,
        state=state,
        login_hint=login_hint,
    )


async def exchange_code_for_tokens(code: str, redirect_uri: Optional[str] = None) -> dict:
    """Exchange an authorization code for tokens.

    Google only returns a refresh token on first consent, so a missing one is
    an error rather than something to recover from.
    """
    client_id, client_secret = get_oauth_credentials()

    async with httpx.AsyncClient() as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri or get_redirect_uri(),
                "grant_type": "authorization_code",
            },
        )

    if response.status_code != 200:
        logger.error(f"Token exchange failed with status {response.status_code}")
        raise OAuthError(
            f"Token exchange failed: {response.text}",
            error_code=_error_code(response),
            status=response.status_code,
        )

    tokens = response.json()
    if not tokens.get("access_token"):
        raise OAuthError("No access token received from Google")
    if not tokens.get("refresh_token"):
        raise OAuthError("No refresh token received. Please revoke access and try again.")
    if not tokens.get("expires_in"):
        raise OAuthError("No token expiry received from Google")

    return tokens


async def refresh_access_token(refresh_token: str) -> dict:
    """Refresh an access token."""
    client_id, client_secret = get_oauth_credentials()

    async with httpx.AsyncClient() as client:
        response = await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "refresh_token": refresh_token,
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
            },
        )

    if response.status_code != 200:
        error_code = _error_code(response)
        logger.error(f"Token refresh failed: status={response.status_code} error={error_code}")
        if error_code == "invalid_grant":
            raise RefreshTokenRevokedError(
                "Refresh token is invalid or revoked",
                error_code=error_code,
                status=response.status_code,
            )
        raise OAuthError(
            f"Token refresh failed: {response.text}",
            error_code=error_code,
            status=response.status_code,
        )

    tokens = response.json()
    if not tokens.get("access_token"):
        raise OAuthError("No access token received from Google")
    return tokens


async def revoke_token(token: str) -> None:
    """Revoke a token. An already-invalid token counts as revoked."""
    async with httpx.AsyncClient() as client:
        response = await client.post(
            GOOGLE_REVOKE_URL,
            data={"token": token},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )

    if response.status_code == 200:
        return

    error_code = _error_code(response)
    if error_code == "invalid_token":
        logger.info("Token was already invalid, treating revoke as successful")
        return

    raise OAuthError(
        f"Token revoke failed: {response.text}",
        error_code=error_code,
        status=response.status_code,
    )


async def get_user_info(access_token: str) -> dict:
    """Get user info from Google."""
    async with httpx.AsyncClient() as client:
        response = await client.get(
            GOOGLE_USERINFO_URL,
            headers={"Authorization": f"Bearer {access_token}"},
        )

    if response.status_code != 200:
        logger.error(f"Failed to get user info: status={response.status_code}")
        raise OAuthError(
            f"Failed to get user info: {response.text}",
            status=response.status_code,
        )

    return response.json()
