"""
Data models for scheduled calls and persisted call outcomes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class CallStatus(str, Enum):
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY_SCHEDULED = "retry_scheduled"
    CANCELLED = "cancelled"


# `failed` is only ever observed once retries are exhausted (or the Voice
# Platform reported a failure); the retry path leaves it for
# `retry_scheduled` inside the same locked transition.
TERMINAL_STATUSES = frozenset({CallStatus.COMPLETED, CallStatus.CANCELLED, CallStatus.FAILED})

# States from which a timer is expected to fire.
PENDING_STATUSES = frozenset({CallStatus.SCHEDULED, CallStatus.RETRY_SCHEDULED})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserData(BaseModel):
    """Registration data handed to the scheduler by the new-user trigger."""
    user_id: str
    phone: str
    user_name: Optional[str] = None
    migrant_name: Optional[str] = None
    companion: str = "Lupita"
    registered_at: Optional[datetime] = None


class ScheduledCall(BaseModel):
    """A single outbound-call lifecycle, owned by the CallScheduler."""
    id: str
    user_id: str
    phone: str
    user_name: Optional[str] = None
    migrant_name: Optional[str] = None
    companion: str = "Lupita"
    scheduled_for: datetime
    status: CallStatus = CallStatus.SCHEDULED
    attempts: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    external_call_id: Optional[str] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    result: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_STATUSES


class CallStats(BaseModel):
    total: int = 0
    scheduled: int = 0
    executing: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    retry_scheduled: int = 0
    cancelled: int = 0


class CallRecord(BaseModel):
    """
    Durable projection of a call outcome, keyed by the Voice Platform id.

    Every field except ``external_call_id`` is optional so a record can be
    written as a placeholder when the call starts and merged later.
    """
    external_call_id: str
    user_id: Optional[str] = None
    phone_number: Optional[str] = None
    status: Optional[str] = None
    duration_seconds: Optional[int] = None
    end_reason: Optional[str] = None
    recording_url: Optional[str] = None
    transcript: Optional[str] = None
    summary: Optional[str] = None
    sentiment: Optional[str] = None
    topics_discussed: Optional[list[str]] = None
    behavioral_codes: Optional[list[str]] = None
    follow_up_needed: Optional[bool] = None
    next_call_scheduled: Optional[datetime] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def to_row(self) -> dict[str, Any]:
        """Columns to write; unset fields are left out so upserts merge."""
        return self.model_dump(mode="json", exclude_none=True)
