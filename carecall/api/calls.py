"""
API Router — Call Operations.

Observability and manual control over scheduled calls: stats, listing,
cancel/reschedule, explicit end of a live call, a test call outside
production, and a similarity query over past conversations.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from carecall.api.dependencies import get_services
from carecall.errors import SimilarityIndexError, VoicePlatformError
from carecall.logging_config import get_logger
from carecall.schemas.call import CallStats, ScheduledCall, UserData, utcnow
from carecall.services.container import Services
from carecall.services.context_builder import (
    analyze_call_history,
    build_call_context,
    build_full_context,
    generate_briefing,
    get_similar_patterns,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/api", tags=["Calls"])


class RescheduleRequest(BaseModel):
    scheduled_for: datetime


class TestCallRequest(BaseModel):
    user_id: str
    phone: str
    user_name: Optional[str] = "Test User"


class CallListResponse(BaseModel):
    count: int
    data: list[ScheduledCall]


async def _get_call_or_404(services: Services, call_id: str) -> ScheduledCall:
    call = await services.scheduler.get_call_status(call_id)
    if call is None:
        raise HTTPException(status_code=404, detail="Call not found")
    return call


@router.get("/stats", response_model=CallStats)
async def get_stats(services: Services = Depends(get_services)) -> CallStats:
    return await services.scheduler.get_call_stats()


@router.get("/calls", response_model=CallListResponse)
async def list_calls(
    user_id: Optional[str] = None,
    services: Services = Depends(get_services),
) -> CallListResponse:
    """Calls still waiting for their first attempt, soonest first."""
    if user_id:
        calls = await services.scheduler.get_user_scheduled_calls(user_id)
    else:
        calls = await services.scheduler.list_scheduled_calls()
    return CallListResponse(count=len(calls), data=calls)


@router.get("/calls/{call_id}", response_model=ScheduledCall)
async def get_call(call_id: str, services: Services = Depends(get_services)) -> ScheduledCall:
    return await _get_call_or_404(services, call_id)


@router.post("/calls/{call_id}/cancel")
async def cancel_call(call_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    call = await _get_call_or_404(services, call_id)
    if not await services.scheduler.cancel_scheduled_call(call_id):
        raise HTTPException(status_code=409, detail=f"Call cannot be cancelled in status {call.status.value}")
    return {"call_id": call_id, "status": "cancelled"}


@router.post("/calls/{call_id}/reschedule")
async def reschedule_call(
    call_id: str,
    body: RescheduleRequest,
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    call = await _get_call_or_404(services, call_id)
    if not await services.scheduler.reschedule_call(call_id, body.scheduled_for):
        raise HTTPException(status_code=409, detail=f"Call cannot be rescheduled in status {call.status.value}")

    updated = await services.scheduler.get_call_status(call_id)
    return {"call_id": call_id, "scheduled_for": updated.scheduled_for.isoformat() if updated else None}


@router.post("/calls/{call_id}/end")
async def end_call(call_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Ask the Voice Platform to hang up a live call."""
    call = await _get_call_or_404(services, call_id)
    if not call.external_call_id:
        raise HTTPException(status_code=409, detail="Call has no live Voice Platform call")

    try:
        await services.voice.end_call(call.external_call_id)
    except VoicePlatformError as e:
        logger.error("end_call_error", call_id=call_id, error=str(e))
        raise HTTPException(status_code=502, detail=str(e))

    return {"call_id": call_id, "external_call_id": call.external_call_id, "status": "ending"}


@router.get("/context/{user_id}")
async def get_context(user_id: str, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Full context and operator briefing for a user's next call."""
    user = await services.db.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    history = await services.db.get_call_history(user_id, limit=services.settings.call_history_limit)
    analysis = analyze_call_history(history)
    patterns = await get_similar_patterns(services.similarity_index, analysis.dominant_topics)
    context = build_full_context(user, history, patterns)

    return {
        "user_id": user_id,
        "context": context,
        "briefing": generate_briefing(context),
        "variables": build_call_context(user, history),
    }


@router.get("/similar")
async def similar_conversations(
    topic: str = Query(..., min_length=1),
    limit: int = Query(default=5, ge=1, le=50),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    try:
        results = await services.similarity_index.query_similar(topic, limit=limit)
    except SimilarityIndexError as e:
        logger.error("similarity_query_error", topic=topic, error=str(e))
        raise HTTPException(status_code=502, detail=str(e))
    return {"topic": topic, "count": len(results), "data": results}


@router.post("/test-call")
async def test_call(body: TestCallRequest, services: Services = Depends(get_services)) -> dict[str, Any]:
    """Schedule an immediate call. Refused in production."""
    if services.settings.is_production:
        raise HTTPException(status_code=403, detail="Not allowed in production")

    call = await services.scheduler.schedule_call(
        UserData(
            user_id=body.user_id,
            phone=body.phone,
            user_name=body.user_name,
            registered_at=utcnow(),
        ),
        delay_minutes=0,
    )
    if call is None:
        raise HTTPException(status_code=400, detail="Invalid phone number")

    return {"call_id": call.id, "scheduled_for": call.scheduled_for.isoformat(), "status": call.status.value}
