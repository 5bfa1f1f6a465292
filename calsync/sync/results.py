"""Result models shared by the push, delete and batch sync paths."""

import time
from typing import Optional

from pydantic import BaseModel

from calsync.sync.errors import ClassifiedError, ErrorType, SyncErrorCode
from calsync.sync.sync_log import SyncOperation


class SyncError(BaseModel):
    code: str
    message: str
    type: ErrorType = ErrorType.PERMANENT
    remote_code: Optional[str] = None
    user_message: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return self.type == ErrorType.TRANSIENT

    @classmethod
    def from_classified(cls, code: SyncErrorCode, classified: ClassifiedError) -> "SyncError":
        return cls(
            code=code.value,
            message=classified.message,
            type=classified.type,
            remote_code=classified.code,
            user_message=classified.user_message,
        )


class SyncResult(BaseModel):
    success: bool
    operation: Optional[SyncOperation] = None
    appointment_id: str
    google_event_id: Optional[str] = None
    error: Optional[SyncError] = None
    duration_ms: int = 0
    details: dict = {}
    skipped: bool = False


def elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
