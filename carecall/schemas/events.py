"""
Data models for webhook events and the signals derived from them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class EventSource(str, Enum):
    INTERNAL = "internal"
    VOICE_PLATFORM = "voice_platform"
    CARRIER = "carrier"


class VoiceEventType(str, Enum):
    CALL_STARTED = "call.started"
    CALL_ENDED = "call.ended"
    CALL_FAILED = "call.failed"
    TRANSCRIPT_PARTIAL = "transcript.partial"
    TRANSCRIPT_FINAL = "transcript.final"
    SPEECH_STARTED = "speech.started"
    SPEECH_ENDED = "speech.ended"
    ASSISTANT_MESSAGE = "assistant.message"
    TOOL_CALLED = "tool.called"


class CarrierEventType(str, Enum):
    CALL_INITIATED = "call.initiated"
    CALL_ANSWERED = "call.answered"
    CALL_HANGUP = "call.hangup"
    MACHINE_DETECTION_ENDED = "call.machine.detection.ended"
    RECORDING_SAVED = "call.recording.saved"
    DTMF_RECEIVED = "call.dtmf.received"
    SPEAK_STARTED = "call.speak.started"
    SPEAK_ENDED = "call.speak.ended"


class HangupCause(str, Enum):
    NORMAL_CLEARING = "normal_clearing"
    USER_BUSY = "user_busy"
    NO_ANSWER = "no_answer"
    CALL_REJECTED = "call_rejected"


class CorrelationOutcome(str, Enum):
    """What the correlator did with an event, for observability only."""
    HANDLED = "handled"
    DROPPED = "dropped"
    IGNORED = "ignored"
    FAILED = "failed"


@dataclass(frozen=True)
class RetryRequested:
    """Carrier reported that the callee could not be reached."""
    call_control_id: str
    reason: str
    client_state: Optional[str] = None


@dataclass(frozen=True)
class OutreachRequested:
    """Carrier reported the call was rejected; reach out on another channel."""
    call_control_id: str
    reason: str
    client_state: Optional[str] = None


CarrierSignal = RetryRequested | OutreachRequested


class EndedCallData(BaseModel):
    """What the Voice Platform reports about a finished call."""
    transcript: Optional[str] = None
    recording_url: Optional[str] = None
    duration_seconds: Optional[int] = None
    end_reason: Optional[str] = None
    summary: Optional[str] = None
    user_age: Optional[int] = None

    @classmethod
    def from_voice_call(cls, call: dict[str, Any]) -> EndedCallData:
        variables = (call.get("assistantOverrides") or {}).get("variableValues") or {}
        duration = call.get("duration")
        age = variables.get("user_age")
        return cls(
            transcript=call.get("transcript") or None,
            recording_url=call.get("recordingUrl") or None,
            duration_seconds=int(duration) if isinstance(duration, (int, float)) else None,
            end_reason=call.get("endedReason"),
            summary=call.get("summary"),
            user_age=int(age) if isinstance(age, (int, float)) else None,
        )


@dataclass
class PipelineResult:
    """Outcome of one post-call pipeline run."""
    external_call_id: str
    user_id: str
    success: bool = True
    follow_up_needed: bool = False
    crisis_detected: bool = False
    next_call_date: Optional[datetime] = None
    failed_steps: list[str] = field(default_factory=list)

    def step_failed(self, step: str) -> None:
        self.failed_steps.append(step)
        self.success = False


# ── Internal trigger bodies ──────────────────────────────────────


class NewUserRequest(BaseModel):
    user_id: Optional[str] = None
    user_phone: Optional[str] = None
    user_name: Optional[str] = None
    migrant_name: Optional[str] = None
    companion: Optional[str] = None
    registered_at: Optional[datetime] = None


class UserUpdatedRequest(BaseModel):
    user_id: Optional[str] = None
    updated_fields: Optional[dict[str, Any]] = None


class SubscriptionCancelledRequest(BaseModel):
    user_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    reason: Optional[str] = None
