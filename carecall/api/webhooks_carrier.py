"""
API Router — Telephony Carrier Webhook.

Telnyx wraps each event as ``{"data": {"event_type": ..., "payload": ...}}``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends

from carecall.api.dependencies import get_services
from carecall.logging_config import get_logger
from carecall.schemas.call import utcnow
from carecall.schemas.events import CorrelationOutcome, EventSource
from carecall.services.container import Services

logger = get_logger(__name__)
router = APIRouter(prefix="/webhooks/carrier", tags=["Webhooks"])


@router.post("")
async def carrier_event(
    body: dict[str, Any] = Body(...),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    event = body.get("data") or {}
    event_type = event.get("event_type") or "unknown"
    logger.info("carrier_event_received", event_type=event_type)

    try:
        outcome = await services.correlator.correlate(EventSource.CARRIER, event_type, event)
    except Exception as e:
        logger.error("carrier_event_processing_error", event_type=event_type, error=str(e))
        return {"received": True, "outcome": CorrelationOutcome.FAILED.value}

    return {"received": True, "outcome": outcome.value}


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy", "service": "carrier-webhook", "timestamp": utcnow().isoformat()}
