from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from carecall.errors import SimilarityIndexError, VoicePlatformError
from carecall.schemas.call import CallRecord
from carecall.schemas.insight import ConversationDocument, Insight
from carecall.services.blob_store import BucketClass


class FakeClock:
    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeTimer:
    """Records armed timers; tests fire them explicitly."""

    armed: Dict[str, tuple[float, Callable[[], Awaitable[Any]]]]
    history: List[tuple[str, float]]

    def __init__(self) -> None:
        self.armed = {}
        self.history = []

    def arm(self, call_id: str, delay_seconds: float, callback: Callable[[], Awaitable[Any]]) -> None:
        self.armed[call_id] = (delay_seconds, callback)
        self.history.append((call_id, delay_seconds))

    def cancel(self, call_id: str) -> bool:
        return self.armed.pop(call_id, None) is not None

    def is_armed(self, call_id: str) -> bool:
        return call_id in self.armed

    def delay_for(self, call_id: str) -> Optional[float]:
        entry = self.armed.get(call_id)
        return entry[0] if entry else None

    async def fire(self, call_id: str) -> Any:
        _, callback = self.armed.pop(call_id)
        return await callback()

    async def shutdown(self) -> None:
        self.armed.clear()


class FakeDatabase:
    users: Dict[str, Dict[str, Any]]
    records: Dict[str, Dict[str, Any]]
    insights: List[Insight]
    call_events: List[Dict[str, Any]]
    first_call_done: List[str]

    def __init__(self, users: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.users = users or {}
        self.history: Dict[str, List[Dict[str, Any]]] = {}
        self.records = {}
        self.insights = []
        self.call_events = []
        self.first_call_done = []
        self.fail_upserts = False

    async def get_user(self, user_id: str) -> Dict[str, Any] | None:
        return self.users.get(user_id)

    async def get_call_history(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        return self.history.get(user_id, [])[:limit]

    async def mark_first_call_done(self, user_id: str) -> bool:
        self.first_call_done.append(user_id)
        return True

    async def upsert_call_record(self, record: CallRecord) -> Dict[str, Any] | None:
        if self.fail_upserts:
            return None
        row = self.records.setdefault(record.external_call_id, {})
        row.update(record.to_row())
        return dict(row)

    async def get_call_record(self, external_call_id: str) -> Dict[str, Any] | None:
        row = self.records.get(external_call_id)
        return dict(row) if row is not None else None

    async def get_calls_missing_transcript(self, limit: int = 10) -> List[Dict[str, Any]]:
        rows = [
            r for r in self.records.values()
            if r.get("status") == "completed" and not r.get("transcript") and r.get("user_id")
        ]
        return rows[:limit]

    async def upsert_insight(self, insight: Insight) -> Dict[str, Any] | None:
        if not any(i.call_id == insight.call_id for i in self.insights):
            self.insights.append(insight)
        return insight.to_row()

    async def log_call_event(self, call_control_id: str, event_type: str, data: Dict[str, Any]) -> Dict[str, Any] | None:
        event = {"call_control_id": call_control_id, "event_type": event_type, **data}
        self.call_events.append(event)
        return event

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy"}


class FakeVoicePlatform:
    calls: List[Dict[str, Any]]
    ended: List[str]

    def __init__(self, fail_with: Optional[str] = None, transcripts: Optional[Dict[str, str]] = None) -> None:
        self.fail_with = fail_with
        self.transcripts = transcripts or {}
        self.calls = []
        self.ended = []
        # When set, place_call blocks until the event fires
        self.gate: Optional[asyncio.Event] = None

    async def place_call(self, phone: str, context: Dict[str, Any]) -> str:
        self.calls.append({"phone": phone, "context": context})
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with:
            raise VoicePlatformError(self.fail_with, status_code=400)
        return f"vapi_{len(self.calls)}"

    async def get_transcript(self, external_call_id: str) -> str | None:
        return self.transcripts.get(external_call_id)

    async def end_call(self, external_call_id: str) -> Dict[str, Any]:
        self.ended.append(external_call_id)
        return {"id": external_call_id, "status": "ended"}

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy", "assistant_id": "assistant_test"}


class FakeBlobStore:
    objects: Dict[tuple[BucketClass, str], bytes]

    def __init__(self, failing: Optional[set[BucketClass]] = None) -> None:
        self.objects = {}
        self.failing = failing or set()

    async def put(self, bucket_class: BucketClass, key: str, data: bytes, content_type: str = "audio/wav") -> str:
        if bucket_class in self.failing:
            raise RuntimeError(f"{bucket_class.value} bucket unavailable")
        self.objects[(bucket_class, key)] = data
        return key

    async def get(self, bucket_class: BucketClass, key: str) -> bytes | None:
        return self.objects.get((bucket_class, key))

    async def health_check(self) -> Dict[str, Any]:
        if self.failing:
            return {"status": "unhealthy", "error": "bucket unavailable"}
        return {"status": "healthy"}


class FakeSimilarityIndex:
    documents: List[ConversationDocument]

    def __init__(self, fail: bool = False, results: Optional[List[Dict[str, Any]]] = None) -> None:
        self.fail = fail
        self.results = results or []
        self.documents = []
        self.queries: List[tuple[str, int]] = []

    async def index(self, document: ConversationDocument) -> str | None:
        if self.fail:
            raise SimilarityIndexError("index unavailable")
        self.documents.append(document)
        return f"doc_{len(self.documents)}"

    async def query_similar(self, topic_query: str, limit: int = 5) -> List[Dict[str, Any]]:
        if self.fail:
            raise SimilarityIndexError("index unavailable")
        self.queries.append((topic_query, limit))
        return self.results[:limit]

    async def health_check(self) -> Dict[str, Any]:
        if self.fail:
            raise SimilarityIndexError("index unavailable")
        return {"status": "disabled"}


async def fake_fetch_recording(url: str) -> bytes:
    return b"RIFF-fake-audio:" + url.encode()
