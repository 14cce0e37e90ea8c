"""
Post-Call Pipeline.

Runs once a call is known to have ended:

1. Obtain the transcript (event payload, else the Voice Platform)
2. Analyze it
3. Store the recording in the legal and active buckets
4. Merge the outcome into the call record and write the insight
5. Send an anonymized copy to the similarity index
6. Compute the next call date when follow-up is needed

Each storage step is independent: a failure is logged, recorded on the
result, and the remaining steps still run.
"""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol
from zoneinfo import ZoneInfo

import httpx

from carecall.config import Settings, get_settings
from carecall.logging_config import get_logger
from carecall.schemas.call import CallRecord, CallStatus, utcnow
from carecall.schemas.events import EndedCallData, PipelineResult
from carecall.schemas.insight import ConversationDocument, Insight, TranscriptAnalysis
from carecall.services.anonymizer import anonymize_transcript, get_age_group
from carecall.services.blob_store import BucketClass, recording_key, transcript_key
from carecall.services.transcript_analyzer import analyze_transcript

logger = get_logger(__name__)


class CallRecordStore(Protocol):
    async def upsert_call_record(self, record: CallRecord) -> dict[str, Any] | None: ...

    async def upsert_insight(self, insight: Insight) -> dict[str, Any] | None: ...


class TranscriptSource(Protocol):
    async def get_transcript(self, external_call_id: str) -> str | None: ...


class BlobStore(Protocol):
    async def put(self, bucket_class: BucketClass, key: str, data: bytes, content_type: str = ...) -> str: ...


class SimilarityIndex(Protocol):
    async def index(self, document: ConversationDocument) -> str | None: ...


async def download_recording(url: str) -> bytes:
    async with httpx.AsyncClient(timeout=60.0, follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()
        return response.content


def calculate_next_call_date(now: datetime, settings: Settings) -> datetime:
    """Next calendar day at the configured local hour."""
    tz = ZoneInfo(settings.local_timezone)
    local_next = now.astimezone(tz) + timedelta(days=1)
    return local_next.replace(hour=settings.follow_up_hour, minute=0, second=0, microsecond=0)


class PostCallPipeline:
    def __init__(
        self,
        db: CallRecordStore,
        voice: TranscriptSource,
        blob_store: BlobStore,
        similarity_index: SimilarityIndex,
        settings: Optional[Settings] = None,
        fetch_recording: Callable[[str], Awaitable[bytes]] = download_recording,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db = db
        self._voice = voice
        self._blobs = blob_store
        self._index = similarity_index
        self._settings = settings or get_settings()
        self._fetch_recording = fetch_recording
        self._now = clock or utcnow

    async def process(self, external_call_id: str, user_id: str, call: EndedCallData) -> PipelineResult:
        result = PipelineResult(external_call_id=external_call_id, user_id=user_id)
        logger.info("post_call_processing_started", external_call_id=external_call_id, user_id=user_id)

        transcript = call.transcript or await self._voice.get_transcript(external_call_id)
        if not transcript:
            logger.warning("post_call_transcript_missing", external_call_id=external_call_id)

        analysis = analyze_transcript(transcript or "")
        result.follow_up_needed = analysis.follow_up_needed
        result.crisis_detected = analysis.crisis_detected
        if analysis.crisis_detected:
            # No escalation channel exists yet; the flag is persisted on the insight.
            logger.warning("crisis_detected", external_call_id=external_call_id, user_id=user_id)

        if analysis.follow_up_needed:
            result.next_call_date = calculate_next_call_date(self._now(), self._settings)

        if call.recording_url:
            await self._store_recording(result, call.recording_url)
        if transcript:
            await self._store_transcript(result, transcript)

        await self._save_call_record(result, call, transcript, analysis)
        if transcript:
            await self._save_insight(result, analysis)
            await self._index_conversation(result, call, transcript, analysis)

        logger.info(
            "post_call_processing_finished",
            external_call_id=external_call_id,
            success=result.success,
            failed_steps=result.failed_steps,
            follow_up_needed=result.follow_up_needed,
        )
        return result

    # -- Steps --

    async def _store_recording(self, result: PipelineResult, recording_url: str) -> None:
        try:
            audio = await self._fetch_recording(recording_url)
        except Exception as e:
            logger.error("recording_download_failed", external_call_id=result.external_call_id, error=str(e))
            result.step_failed("recording_download")
            return

        key = recording_key(result.user_id, result.external_call_id)
        for bucket_class in (BucketClass.LEGAL, BucketClass.ACTIVE):
            try:
                await self._blobs.put(bucket_class, key, audio, content_type="audio/wav")
            except Exception as e:
                logger.error(
                    "recording_store_failed",
                    external_call_id=result.external_call_id,
                    bucket=bucket_class.value,
                    error=str(e),
                )
                result.step_failed(f"recording_{bucket_class.value}")

    async def _store_transcript(self, result: PipelineResult, transcript: str) -> None:
        body = json.dumps(
            {"raw": transcript, "analyzed_at": self._now().isoformat()},
            ensure_ascii=False,
        ).encode("utf-8")
        try:
            await self._blobs.put(
                BucketClass.ACTIVE,
                transcript_key(result.user_id, result.external_call_id),
                body,
                content_type="application/json",
            )
        except Exception as e:
            logger.error("transcript_store_failed", external_call_id=result.external_call_id, error=str(e))
            result.step_failed("transcript_blob")

    async def _save_call_record(
        self,
        result: PipelineResult,
        call: EndedCallData,
        transcript: str | None,
        analysis: TranscriptAnalysis,
    ) -> None:
        record = CallRecord(
            external_call_id=result.external_call_id,
            user_id=result.user_id,
            status=CallStatus.COMPLETED.value,
            duration_seconds=call.duration_seconds,
            end_reason=call.end_reason,
            recording_url=call.recording_url,
            ended_at=self._now(),
        )
        if transcript:
            record.transcript = transcript
            record.summary = call.summary or analysis.summary
            record.sentiment = analysis.emotional_state.value
            record.topics_discussed = analysis.topics
            record.behavioral_codes = [c.value for c in analysis.behavioral_codes]
            record.follow_up_needed = analysis.follow_up_needed
            record.next_call_scheduled = result.next_call_date

        if await self._db.upsert_call_record(record) is None:
            result.step_failed("call_record")

    async def _save_insight(self, result: PipelineResult, analysis: TranscriptAnalysis) -> None:
        insight = Insight.from_analysis(result.external_call_id, result.user_id, analysis)
        if await self._db.upsert_insight(insight) is None:
            result.step_failed("insight")

    async def _index_conversation(
        self,
        result: PipelineResult,
        call: EndedCallData,
        transcript: str,
        analysis: TranscriptAnalysis,
    ) -> None:
        document = ConversationDocument(
            content=anonymize_transcript(transcript),
            emotional_state=analysis.emotional_state.value,
            behavioral_codes=[c.value for c in analysis.behavioral_codes],
            topics=analysis.topics,
            age_group=get_age_group(call.user_age),
            call_duration=call.duration_seconds or 0,
            timestamp=self._now(),
        )
        try:
            await self._index.index(document)
        except Exception as e:
            logger.error("similarity_index_failed", external_call_id=result.external_call_id, error=str(e))
            result.step_failed("similarity_index")
