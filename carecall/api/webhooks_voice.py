"""
API Router — Voice Platform Webhook.

Receives every VAPI event on a single route. The sender retries on any
non-2xx response, so processing errors are logged and still acknowledged.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from carecall.api.dependencies import get_services, require_voice_signature
from carecall.logging_config import get_logger
from carecall.schemas.call import utcnow
from carecall.schemas.events import CorrelationOutcome, EventSource
from carecall.services.container import Services

logger = get_logger(__name__)
router = APIRouter(prefix="/webhooks/voice", tags=["Webhooks"])


@router.post("", dependencies=[Depends(require_voice_signature)])
async def voice_event(
    event: dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    event_type = event.get("type") or "unknown"
    logger.info("voice_event_received", event_type=event_type)

    try:
        outcome = await services.correlator.correlate(EventSource.VOICE_PLATFORM, event_type, event)
    except Exception as e:
        logger.error("voice_event_processing_error", event_type=event_type, error=str(e))
        return {"received": True, "outcome": CorrelationOutcome.FAILED.value}

    return {"received": True, "outcome": outcome.value}


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy", "service": "voice-webhook", "timestamp": utcnow().isoformat()}
