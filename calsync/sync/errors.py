"""Error codes, exceptions and classification for calendar sync.

``normalize_remote_error`` is the only place that inspects provider-specific
error shapes or message text. Everything else works with the structured
``RemoteCalendarError.code``.
"""

import json
import logging
from enum import Enum
from typing import Optional

import httpx
from googleapiclient.errors import HttpError
from pydantic import BaseModel

logger = logging.getLogger(__name__)

TRANSIENT_HTTP_CODES = {408, 429}
PERMANENT_HTTP_CODES = {400, 401, 403, 404, 405, 409, 410, 422}
GONE_HTTP_CODES = {404, 410}

# Registration failures that mean the calendar itself is unusable
CALENDAR_UNAVAILABLE_CODES = {"HTTP_403", "HTTP_404", "HTTP_410"}


class ErrorType(str, Enum):
    VALIDATION = "validation"
    AUTH = "auth"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    NOT_FOUND = "not_found"


class SyncErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NO_CONNECTION = "NO_CONNECTION"
    CONNECTION_INVALID = "CONNECTION_INVALID"
    AUTO_SYNC_PAUSED = "AUTO_SYNC_PAUSED"
    APPOINTMENT_NOT_FOUND = "APPOINTMENT_NOT_FOUND"
    CREATE_FAILED = "CREATE_FAILED"
    UPDATE_FAILED = "UPDATE_FAILED"
    DELETE_FAILED = "DELETE_FAILED"
    MAPPING_CONFLICT = "MAPPING_CONFLICT"
    CONFLICT_RESOLUTION_FAILED = "CONFLICT_RESOLUTION_FAILED"
    WEBHOOK_PROCESSING_ERROR = "WEBHOOK_PROCESSING_ERROR"
    WEBHOOK_RENEWAL_FAILED = "WEBHOOK_RENEWAL_FAILED"
    WEBHOOK_RENEWAL_JOB_ERROR = "WEBHOOK_RENEWAL_JOB_ERROR"
    RETRY_LIMIT_EXCEEDED = "RETRY_LIMIT_EXCEEDED"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
    PET_NOT_FOUND = "PET_NOT_FOUND"
    SERVICE_NOT_FOUND = "SERVICE_NOT_FOUND"
    IMPORT_ERROR = "IMPORT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class RemoteCalendarError(Exception):
    """Normalized failure from the remote calendar API.

    ``code`` is ``HTTP_<status>``, ``NETWORK_ERROR``, ``TIMEOUT`` or
    ``UNKNOWN_ERROR``.
    """

    def __init__(self, code: str, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status

    @property
    def is_transient(self) -> bool:
        if self.status is not None:
            return self.status in TRANSIENT_HTTP_CODES or 500 <= self.status <= 599
        return self.code in ("NETWORK_ERROR", "TIMEOUT")

    @property
    def is_gone(self) -> bool:
        return self.status in GONE_HTTP_CODES

    @property
    def calendar_unavailable(self) -> bool:
        """True when the calendar was deleted or access to it was revoked."""
        return self.code in CALENDAR_UNAVAILABLE_CODES

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "status": self.status}

    def __repr__(self) -> str:
        return f"RemoteCalendarError(code={self.code!r}, message={self.message!r})"


class ConnectionInvalidError(Exception):
    """The connection's refresh token is invalid; the admin must reconnect."""

    code = SyncErrorCode.CONNECTION_INVALID.value

    def __init__(self, message: str = "Calendar connection is invalid. Please reconnect Google Calendar."):
        super().__init__(message)


class MappingConflictError(Exception):
    """Another writer changed the event mapping since it was read."""

    code = SyncErrorCode.MAPPING_CONFLICT.value


class ClassifiedError(BaseModel):
    """Error classification used by retry and pause decisions."""
    type: ErrorType
    code: str
    message: str
    user_message: str
    http_status: Optional[int] = None

    @property
    def retryable(self) -> bool:
        return self.type == ErrorType.TRANSIENT


_NETWORK_MARKERS = ("network", "econnrefused", "enotfound", "econnreset", "connection reset")
_TIMEOUT_MARKERS = ("timeout", "timed out", "etimedout")
_NOT_FOUND_MARKERS = ("not found", "notfound", "deleted")
_FORBIDDEN_MARKERS = ("access denied", "forbidden", "revoked")


def _http_error_message(error: HttpError) -> str:
    try:
        payload = json.loads(error.content.decode("utf-8"))
        message = payload.get("error", {}).get("message")
        if message:
            return message
    except (ValueError, AttributeError):
        pass
    return str(error)


def normalize_remote_error(error: Exception) -> RemoteCalendarError:
    """Convert any exception raised while talking to Google into a RemoteCalendarError."""
    if isinstance(error, RemoteCalendarError):
        return error

    if isinstance(error, HttpError):
        status = int(error.resp.status)
        return RemoteCalendarError(f"HTTP_{status}", _http_error_message(error), status)

    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return RemoteCalendarError(f"HTTP_{status}", error.response.text or str(error), status)

    if isinstance(error, (httpx.TimeoutException, TimeoutError)):
        return RemoteCalendarError("TIMEOUT", str(error) or "Request timed out")

    if isinstance(error, (httpx.TransportError, ConnectionError)):
        return RemoteCalendarError("NETWORK_ERROR", str(error) or "Network error")

    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    if isinstance(status, int):
        return RemoteCalendarError(f"HTTP_{status}", str(error), status)

    message = str(error) or error.__class__.__name__
    lowered = message.lower()

    if any(marker in lowered for marker in _TIMEOUT_MARKERS):
        return RemoteCalendarError("TIMEOUT", message)
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return RemoteCalendarError("NETWORK_ERROR", message)
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return RemoteCalendarError("HTTP_404", message, 404)
    if any(marker in lowered for marker in _FORBIDDEN_MARKERS):
        return RemoteCalendarError("HTTP_403", message, 403)

    return RemoteCalendarError(SyncErrorCode.UNKNOWN_ERROR.value, message)


_TRANSIENT_MESSAGES = {
    408: "Request timed out. The sync will be retried automatically.",
    429: "Rate limit reached. The sync will be retried after a short delay.",
    500: "Google Calendar server error. The sync will be retried automatically.",
    502: "Google Calendar gateway error. The sync will be retried automatically.",
    503: "Google Calendar temporarily unavailable. The sync will be retried automatically.",
    504: "Google Calendar gateway timeout. The sync will be retried automatically.",
}

_PERMANENT_MESSAGES = {
    400: "Invalid request data. Please check the appointment details.",
    401: "Authentication failed. Please reconnect your Google Calendar.",
    403: "Permission denied. Please check calendar access permissions.",
    404: "Calendar or event not found. Please verify the calendar connection.",
    405: "Operation not allowed. Please contact support.",
    409: "Conflict detected. The event may have been modified externally.",
    410: "Event no longer exists. It may have been deleted from Google Calendar.",
    422: "Invalid event data. Please check the appointment details.",
}


def classify_error(error: Exception, operation: Optional[str] = None) -> ClassifiedError:
    """Classify an exception into the sync error taxonomy."""
    from calsync.sync.mapper import AppointmentValidationError

    if isinstance(error, AppointmentValidationError):
        return ClassifiedError(
            type=ErrorType.VALIDATION,
            code=SyncErrorCode.VALIDATION_ERROR.value,
            message=str(error),
            user_message="Appointment is missing required information for calendar sync.",
        )

    if isinstance(error, ConnectionInvalidError):
        return ClassifiedError(
            type=ErrorType.AUTH,
            code=SyncErrorCode.CONNECTION_INVALID.value,
            message=str(error),
            user_message="Calendar connection is invalid. Please reconnect Google Calendar.",
        )

    remote = normalize_remote_error(error)
    status = remote.status

    if operation == "delete" and remote.is_gone:
        return ClassifiedError(
            type=ErrorType.NOT_FOUND,
            code=remote.code,
            message=remote.message,
            user_message="Event was already removed from Google Calendar.",
            http_status=status,
        )

    if remote.is_transient:
        if status is not None:
            user_message = _TRANSIENT_MESSAGES.get(
                status, "Temporary error occurred. The sync will be retried automatically."
            )
        else:
            user_message = "Network connection issue. The sync will be retried automatically."
        return ClassifiedError(
            type=ErrorType.TRANSIENT,
            code=remote.code,
            message=remote.message,
            user_message=user_message,
            http_status=status,
        )

    if status == 401:
        error_type = ErrorType.AUTH
    else:
        error_type = ErrorType.PERMANENT

    return ClassifiedError(
        type=error_type,
        code=remote.code,
        message=remote.message,
        user_message=_PERMANENT_MESSAGES.get(
            status,
            "An unexpected error occurred. Please check the connection settings or contact support.",
        ),
        http_status=status,
    )


def is_transient_error(error: Exception) -> bool:
    """Return True when the error is expected to succeed on retry."""
    return classify_error(error).retryable
