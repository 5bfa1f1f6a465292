"""Rate-limited Google Calendar API client."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Optional

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from calsync.sync.errors import RemoteCalendarError, normalize_remote_error
from calsync.utils.timestamps import to_rfc3339

logger = logging.getLogger(__name__)

# Minimum spacing between requests from one client (seconds)
RATE_LIMIT_DELAY = 0.1
MAX_RETRIES = 3
INITIAL_BACKOFF = 1.0


def _is_retryable(error: RemoteCalendarError) -> bool:
    """Only rate limiting and server errors are retried in-line."""
    return error.status is not None and (error.status == 429 or error.status >= 500)


class GoogleCalendarClient:
    """Throttled, retrying wrapper around the Calendar API.

    Every failure surfaces as RemoteCalendarError.
    """

    def __init__(self, access_token: str, calendar_id: str = "primary"):
        """Initialize with access token."""
        self.calendar_id = calendar_id
        self.credentials = Credentials(token=access_token)
        self.service = build("calendar", "v3", credentials=self.credentials, cache_discovery=False)
        self._last_request_at = 0.0

    async def _throttle(self) -> None:
        elapsed = time.monotonic() - self._last_request_at
        if elapsed < RATE_LIMIT_DELAY:
            await asyncio.sleep(RATE_LIMIT_DELAY - elapsed)
        self._last_request_at = time.monotonic()

    async def _execute(self, build_request: Callable, operation: str):
        from calsync.sync.quota import record_api_request

        backoff = INITIAL_BACKOFF
        for attempt in range(1, MAX_RETRIES + 1):
            await self._throttle()
            await record_api_request()
            try:
                return await asyncio.to_thread(build_request().execute)
            except Exception as e:
                error = normalize_remote_error(e)
                if _is_retryable(error) and attempt < MAX_RETRIES:
                    logger.warning(
                        f"Calendar {operation} failed with {error.code} "
                        f"(attempt {attempt}/{MAX_RETRIES}), retrying in {backoff:.1f}s"
                    )
                    await asyncio.sleep(backoff)
                    backoff *= 2
                    continue
                raise error from e

    async def create_event(self, event: dict) -> dict:
        """Create an event on the connected calendar."""
        return await self._execute(
            lambda: self.service.events().insert(
                calendarId=self.calendar_id,
                body=event,
                sendUpdates="none",
            ),
            "create",
        )

    async def update_event(self, event_id: str, event: dict) -> dict:
        """Replace an existing event."""
        return await self._execute(
            lambda: self.service.events().update(
                calendarId=self.calendar_id,
                eventId=event_id,
                body=event,
                sendUpdates="none",
            ),
            "update",
        )

    async def delete_event(self, event_id: str) -> bool:
        """Delete an event. An event that is already gone counts as deleted."""
        try:
            await self._execute(
                lambda: self.service.events().delete(
                    calendarId=self.calendar_id,
                    eventId=event_id,
                    sendUpdates="none",
                ),
                "delete",
            )
        except RemoteCalendarError as e:
            if e.is_gone:
                logger.info(f"Event {event_id} already deleted ({e.code})")
                return True
            raise
        return True

    async def get_event(self, event_id: str) -> Optional[dict]:
        """Get a single event, or None if it does not exist."""
        try:
            return await self._execute(
                lambda: self.service.events().get(
                    calendarId=self.calendar_id,
                    eventId=event_id,
                ),
                "get",
            )
        except RemoteCalendarError as e:
            if e.is_gone:
                return None
            raise

    async def event_exists(self, event_id: str) -> bool:
        event = await self.get_event(event_id)
        return event is not None and event.get("status") != "cancelled"

    async def list_events(
        self,
        time_min: Optional[datetime] = None,
        time_max: Optional[datetime] = None,
        updated_min: Optional[datetime] = None,
        max_results: int = 250,
        show_deleted: bool = False,
        order_by: Optional[str] = "startTime",
    ) -> list[dict]:
        """List events, following every page."""
        params = {
            "calendarId": self.calendar_id,
            "maxResults": max_results,
            "singleEvents": True,
            "showDeleted": show_deleted,
        }
        if order_by:
            params["orderBy"] = order_by
        if time_min:
            params["timeMin"] = to_rfc3339(time_min)
        if time_max:
            params["timeMax"] = to_rfc3339(time_max)
        if updated_min:
            params["updatedMin"] = to_rfc3339(updated_min)

        events: list[dict] = []
        page_token = None
        while True:
            page_params = dict(params)
            if page_token:
                page_params["pageToken"] = page_token

            result = await self._execute(
                lambda: self.service.events().list(**page_params),
                "list",
            )
            events.extend(result.get("items", []))

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return events

    async def watch_events(
        self,
        channel_id: str,
        address: str,
        token: str,
        expiration: datetime,
    ) -> dict:
        """Register a push notification channel for the calendar's events."""
        body = {
            "id": channel_id,
            "type": "web_hook",
            "address": address,
            "token": token,
            "params": {"ttl": str(int((expiration - datetime.utcnow()).total_seconds()))},
        }
        return await self._execute(
            lambda: self.service.events().watch(calendarId=self.calendar_id, body=body),
            "watch",
        )

    async def stop_channel(self, channel_id: str, resource_id: str) -> None:
        """Stop a push notification channel."""
        await self._execute(
            lambda: self.service.channels().stop(
                body={"id": channel_id, "resourceId": resource_id}
            ),
            "stop",
        )


async def get_client_for_connection(connection) -> GoogleCalendarClient:
    """Build a client for a connection with a just-in-time refreshed token."""
    from calsync.auth.tokens import get_valid_access_token

    access_token = await get_valid_access_token(connection.id)
    return GoogleCalendarClient(access_token, calendar_id=connection.calendar_id)
