"""
Event Correlator.

Maps webhook events from the Voice Platform and the Telephony Carrier
back to internal call identities and applies the matching transitions.

The Voice Platform is authoritative for call outcomes (started, ended,
failed, transcript). Carrier events are diagnostic: they are logged and
recorded, and hangup causes that call for a retry or an alternate-channel
outreach are emitted as typed signals to subscribers instead of being
acted on here.

A call.ended event first claims the call's terminal transition; the
post-call pipeline only runs for the claim winner, so redelivered,
concurrent or late terminal events leave the stored outcome alone.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any, Awaitable, Callable, Optional, Protocol

from carecall.logging_config import get_logger
from carecall.schemas.call import CallRecord, CallStatus, ScheduledCall, utcnow
from carecall.schemas.events import (
    CarrierEventType,
    CarrierSignal,
    CorrelationOutcome,
    EndedCallData,
    EventSource,
    HangupCause,
    OutreachRequested,
    PipelineResult,
    RetryRequested,
    VoiceEventType,
)
from carecall.services.transcript_analyzer import detect_emergency_keywords

logger = get_logger(__name__)

SignalHandler = Callable[[CarrierSignal], Awaitable[Any]]


def decode_client_state(raw: str | None) -> str | None:
    """Carrier client_state is base64; undecodable values pass through as-is."""
    if not raw:
        return None
    try:
        return base64.b64decode(raw, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return raw


class CorrelationStore(Protocol):
    async def upsert_call_record(self, record: CallRecord) -> dict[str, Any] | None: ...

    async def get_call_record(self, external_call_id: str) -> dict[str, Any] | None: ...

    async def mark_first_call_done(self, user_id: str) -> bool: ...

    async def log_call_event(
        self, call_control_id: str, event_type: str, data: dict[str, Any]
    ) -> dict[str, Any] | None: ...


class CallLifecycle(Protocol):
    async def find_by_external_id(self, external_call_id: str) -> ScheduledCall | None: ...

    async def get_call_status(self, call_id: str) -> ScheduledCall | None: ...

    async def claim_completion(self, call_id: str, external_call_id: Optional[str] = None) -> bool: ...

    async def record_result(self, call_id: str, result: dict[str, Any]) -> bool: ...

    async def mark_call_failed(self, call_id: str, error: str, external_call_id: Optional[str] = None) -> bool: ...


class Pipeline(Protocol):
    async def process(self, external_call_id: str, user_id: str, call: EndedCallData) -> PipelineResult: ...


class EventCorrelator:
    def __init__(self, db: CorrelationStore, scheduler: CallLifecycle, pipeline: Pipeline) -> None:
        self._db = db
        self._scheduler = scheduler
        self._pipeline = pipeline
        self._subscribers: list[SignalHandler] = []
        # Calls without a scheduler record whose pipeline is running
        self._ending: set[str] = set()

    def subscribe(self, handler: SignalHandler) -> None:
        """Register a consumer of carrier retry/outreach signals."""
        self._subscribers.append(handler)

    async def correlate(self, source: EventSource, event_type: str, payload: dict[str, Any]) -> CorrelationOutcome:
        """Dispatch one webhook event; exceptions propagate to the webhook layer."""
        if source == EventSource.VOICE_PLATFORM:
            return await self._handle_voice_event(event_type, payload)
        if source == EventSource.CARRIER:
            return await self._handle_carrier_event(event_type, payload)

        logger.warning("unknown_event_source", source=source, event_type=event_type)
        return CorrelationOutcome.IGNORED

    # ── Voice Platform ───────────────────────────────────────────

    async def _handle_voice_event(self, event_type: str, event: dict[str, Any]) -> CorrelationOutcome:
        call = event.get("call") or {}
        external_call_id = call.get("id")

        try:
            kind = VoiceEventType(event_type)
        except ValueError:
            logger.info("voice_event_unhandled", event_type=event_type, external_call_id=external_call_id)
            return CorrelationOutcome.IGNORED

        if kind == VoiceEventType.CALL_STARTED:
            return await self._voice_call_started(external_call_id, call)
        if kind == VoiceEventType.CALL_ENDED:
            return await self._voice_call_ended(external_call_id, call)
        if kind == VoiceEventType.CALL_FAILED:
            return await self._voice_call_failed(external_call_id, event)
        if kind == VoiceEventType.TRANSCRIPT_PARTIAL:
            return self._voice_transcript_partial(external_call_id, event.get("transcript") or {})
        if kind == VoiceEventType.TOOL_CALLED:
            return self._voice_tool_called(external_call_id, event.get("tool") or {})

        if kind == VoiceEventType.ASSISTANT_MESSAGE:
            content = ((event.get("message") or {}).get("content") or "")[:50]
            logger.info("assistant_message", external_call_id=external_call_id, preview=content)
        else:
            # transcript.final is processed with call.ended
            logger.info("voice_event_logged", event_type=event_type, external_call_id=external_call_id)
        return CorrelationOutcome.HANDLED

    async def _resolve_scheduled(self, external_call_id: str, call: dict[str, Any]) -> ScheduledCall | None:
        """
        Find the scheduled call behind a Voice Platform call.

        Events can arrive before placement has returned the external id,
        so the internal id echoed back in the assistant variables is the
        fallback.
        """
        scheduled = await self._scheduler.find_by_external_id(external_call_id)
        if scheduled is not None:
            return scheduled

        variables = (call.get("assistantOverrides") or {}).get("variableValues") or {}
        internal_call_id = variables.get("internal_call_id")
        if not internal_call_id:
            return None
        return await self._scheduler.get_call_status(internal_call_id)

    async def _voice_call_started(self, external_call_id: str | None, call: dict[str, Any]) -> CorrelationOutcome:
        if not external_call_id:
            logger.warning("voice_call_started_without_id")
            return CorrelationOutcome.DROPPED

        phone = (call.get("customer") or {}).get("number")
        scheduled = await self._resolve_scheduled(external_call_id, call)

        record = CallRecord(
            external_call_id=external_call_id,
            user_id=scheduled.user_id if scheduled else None,
            phone_number=phone,
            status=CallStatus.IN_PROGRESS.value,
            started_at=utcnow(),
        )
        await self._db.upsert_call_record(record)
        logger.info("voice_call_started", external_call_id=external_call_id, phone=phone)
        return CorrelationOutcome.HANDLED

    async def _voice_call_ended(self, external_call_id: str | None, call: dict[str, Any]) -> CorrelationOutcome:
        if not external_call_id:
            logger.warning("voice_call_ended_without_id")
            return CorrelationOutcome.DROPPED

        data = EndedCallData.from_voice_call(call)
        logger.info(
            "voice_call_ended",
            external_call_id=external_call_id,
            duration=data.duration_seconds,
            reason=data.end_reason,
        )

        scheduled = await self._resolve_scheduled(external_call_id, call)
        if scheduled is not None:
            if not await self._scheduler.claim_completion(scheduled.id, external_call_id):
                logger.info("voice_call_ended_duplicate", external_call_id=external_call_id, call_id=scheduled.id)
                return CorrelationOutcome.DROPPED
            user_id = scheduled.user_id
        else:
            record = await self._db.get_call_record(external_call_id)
            user_id = record.get("user_id") if record else None
            if not user_id:
                # The platform will not redeliver a terminal event; nothing to retry.
                logger.warning("voice_call_ended_unknown_call", external_call_id=external_call_id)
                return CorrelationOutcome.DROPPED
            if (
                record.get("transcript")
                or record.get("status") in (CallStatus.COMPLETED.value, CallStatus.FAILED.value)
                or external_call_id in self._ending
            ):
                logger.info("voice_call_ended_duplicate", external_call_id=external_call_id)
                return CorrelationOutcome.DROPPED

        self._ending.add(external_call_id)
        try:
            result = await self._pipeline.process(external_call_id, user_id, data)
        finally:
            self._ending.discard(external_call_id)

        if scheduled is not None:
            await self._scheduler.record_result(scheduled.id, {
                "external_call_id": external_call_id,
                "duration_seconds": data.duration_seconds,
                "end_reason": data.end_reason,
                "completed_at": utcnow().isoformat(),
                "follow_up_needed": result.follow_up_needed,
            })
        else:
            await self._db.mark_first_call_done(user_id)

        if not result.success:
            logger.warning(
                "post_call_pipeline_partial_failure",
                external_call_id=external_call_id,
                failed_steps=result.failed_steps,
            )
        return CorrelationOutcome.HANDLED

    async def _voice_call_failed(self, external_call_id: str | None, event: dict[str, Any]) -> CorrelationOutcome:
        if not external_call_id:
            logger.warning("voice_call_failed_without_id")
            return CorrelationOutcome.DROPPED

        call = event.get("call") or {}
        error = event.get("error") or call.get("error") or {}
        message = error.get("message") if isinstance(error, dict) else str(error)
        message = message or "Unknown error"
        logger.error("voice_call_failed", external_call_id=external_call_id, error=message)

        scheduled = await self._resolve_scheduled(external_call_id, call)
        if scheduled is not None:
            if not await self._scheduler.mark_call_failed(scheduled.id, message, external_call_id):
                logger.info("voice_call_failed_ignored", external_call_id=external_call_id, call_id=scheduled.id)
                return CorrelationOutcome.DROPPED
        else:
            record = await self._db.get_call_record(external_call_id)
            if record and record.get("status") in (CallStatus.COMPLETED.value, CallStatus.FAILED.value):
                logger.info("voice_call_failed_ignored", external_call_id=external_call_id)
                return CorrelationOutcome.DROPPED

        await self._db.upsert_call_record(CallRecord(
            external_call_id=external_call_id,
            user_id=scheduled.user_id if scheduled else None,
            status=CallStatus.FAILED.value,
            error_message=message,
            ended_at=utcnow(),
        ))
        return CorrelationOutcome.HANDLED

    def _voice_transcript_partial(self, external_call_id: str | None, transcript: dict[str, Any]) -> CorrelationOutcome:
        if transcript.get("role") != "user":
            return CorrelationOutcome.HANDLED

        text = transcript.get("text") or ""
        logger.info("user_speech", external_call_id=external_call_id, text=text)
        if detect_emergency_keywords(text):
            # No supervisor alert channel exists; this log line is the signal.
            logger.warning("emergency_keywords_detected", external_call_id=external_call_id)
        return CorrelationOutcome.HANDLED

    def _voice_tool_called(self, external_call_id: str | None, tool: dict[str, Any]) -> CorrelationOutcome:
        name = tool.get("name")
        if name == "escalate_to_human":
            logger.warning("call_escalated_to_human", external_call_id=external_call_id)
        else:
            logger.info("tool_called", external_call_id=external_call_id, tool=name, tool_input=tool.get("input"))
        return CorrelationOutcome.HANDLED

    # ── Telephony Carrier ────────────────────────────────────────

    async def _handle_carrier_event(self, event_type: str, event: dict[str, Any]) -> CorrelationOutcome:
        payload = event.get("payload") or {}
        call_control_id = payload.get("call_control_id")

        try:
            kind = CarrierEventType(event_type)
        except ValueError:
            logger.info("carrier_event_unhandled", event_type=event_type, call_control_id=call_control_id)
            return CorrelationOutcome.IGNORED

        if not call_control_id:
            logger.warning("carrier_event_without_call_control_id", event_type=event_type)
            return CorrelationOutcome.DROPPED

        now = utcnow().isoformat()
        client_state = decode_client_state(payload.get("client_state"))

        if kind == CarrierEventType.CALL_INITIATED:
            await self._log_carrier_event(call_control_id, "initiated", {
                "to": payload.get("to"),
                "from_number": payload.get("from"),
                "direction": payload.get("direction"),
                "started_at": now,
            })

        elif kind == CarrierEventType.CALL_ANSWERED:
            await self._log_carrier_event(call_control_id, "answered", {"answered_at": now})

        elif kind == CarrierEventType.CALL_HANGUP:
            cause = payload.get("hangup_cause")
            await self._log_carrier_event(call_control_id, "hangup", {
                "hangup_cause": cause,
                "hangup_source": payload.get("hangup_source"),
                "ended_at": now,
            })
            await self._apply_hangup_policy(call_control_id, cause, client_state)

        elif kind == CarrierEventType.MACHINE_DETECTION_ENDED:
            detection = payload.get("result")
            logger.info("machine_detection", call_control_id=call_control_id, result=detection)
            if detection == "machine":
                await self._log_carrier_event(call_control_id, "voicemail_detected", {"detected_at": now})
                await self._emit(RetryRequested(call_control_id, "machine_detected", client_state))

        elif kind == CarrierEventType.RECORDING_SAVED:
            mp3 = (payload.get("recording_urls") or {}).get("mp3")
            if mp3:
                await self._log_carrier_event(call_control_id, "recording_saved", {
                    "recording_url": mp3,
                    "saved_at": now,
                })

        elif kind == CarrierEventType.DTMF_RECEIVED:
            digit = payload.get("digit")
            await self._log_carrier_event(call_control_id, "dtmf", {"digit": digit})
            if digit == "0":
                logger.info("transfer_requested", call_control_id=call_control_id)

        else:
            logger.info("carrier_speak_event", event_type=event_type, call_control_id=call_control_id)

        return CorrelationOutcome.HANDLED

    async def _apply_hangup_policy(self, call_control_id: str, cause: str | None, client_state: str | None) -> None:
        try:
            hangup = HangupCause(cause)
        except ValueError:
            logger.info("hangup_cause_unknown", call_control_id=call_control_id, cause=cause)
            return

        if hangup == HangupCause.NORMAL_CLEARING:
            # Completion is handled by the Voice Platform call.ended event.
            logger.info("call_ended_normally", call_control_id=call_control_id)
        elif hangup in (HangupCause.USER_BUSY, HangupCause.NO_ANSWER):
            await self._emit(RetryRequested(call_control_id, hangup.value, client_state))
        elif hangup == HangupCause.CALL_REJECTED:
            await self._emit(OutreachRequested(call_control_id, hangup.value, client_state))

    async def _log_carrier_event(self, call_control_id: str, event_type: str, data: dict[str, Any]) -> None:
        logger.info("carrier_call_event", call_control_id=call_control_id, carrier_event=event_type, **data)
        await self._db.log_call_event(call_control_id, event_type, data)

    async def _emit(self, signal: CarrierSignal) -> None:
        logger.info(
            "carrier_signal_emitted",
            signal=type(signal).__name__,
            call_control_id=signal.call_control_id,
            reason=signal.reason,
        )
        for handler in self._subscribers:
            try:
                await handler(signal)
            except Exception as e:
                logger.error("carrier_signal_handler_error", signal=type(signal).__name__, error=str(e))
