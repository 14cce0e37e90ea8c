"""
API Router — Internal Trigger Webhooks.

Called by database triggers on user registration, profile updates and
subscription cancellation. All routes require the shared Bearer token.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from carecall.api.dependencies import get_services, require_internal_token
from carecall.logging_config import get_logger
from carecall.schemas.call import UserData, utcnow
from carecall.schemas.events import (
    NewUserRequest,
    SubscriptionCancelledRequest,
    UserUpdatedRequest,
)
from carecall.services.container import Services
from carecall.services.phone_numbers import is_valid_mexican_number

logger = get_logger(__name__)
router = APIRouter(prefix="/webhooks/internal", tags=["Webhooks"])


def _bad_request(error: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"received": True, "error": error})


@router.post("/new-user", dependencies=[Depends(require_internal_token)])
async def new_user(body: NewUserRequest, services: Services = Depends(get_services)) -> Any:
    """Schedule the first companion call for a newly registered user."""
    if not body.user_id or not body.user_phone:
        return _bad_request("Missing required fields: user_id, user_phone")
    if not is_valid_mexican_number(body.user_phone):
        return _bad_request("Invalid phone number")

    logger.info("new_user_received", user_id=body.user_id, phone=body.user_phone)

    try:
        call = await services.scheduler.schedule_call(
            UserData(
                user_id=body.user_id,
                phone=body.user_phone,
                user_name=body.user_name,
                migrant_name=body.migrant_name,
                companion=body.companion or "Lupita",
                registered_at=body.registered_at or utcnow(),
            ),
            delay_minutes=services.settings.first_call_delay_minutes,
        )
    except Exception as e:
        logger.error("new_user_schedule_error", user_id=body.user_id, error=str(e))
        return {"received": True, "scheduled": False}

    if call is None:
        return _bad_request("Failed to schedule call")

    return {
        "received": True,
        "scheduled": True,
        "call_id": call.id,
        "scheduled_for": call.scheduled_for.isoformat(),
    }


@router.post("/user-updated", dependencies=[Depends(require_internal_token)])
async def user_updated(body: UserUpdatedRequest) -> Any:
    if not body.user_id:
        return _bad_request("Missing user_id")

    logger.info("user_updated_received", user_id=body.user_id, updated_fields=body.updated_fields)
    return {"received": True}


@router.post("/subscription-cancelled", dependencies=[Depends(require_internal_token)])
async def subscription_cancelled(
    body: SubscriptionCancelledRequest,
    services: Services = Depends(get_services),
) -> Any:
    if not body.user_id:
        return _bad_request("Missing user_id")

    logger.info("subscription_cancelled_received", user_id=body.user_id, reason=body.reason)

    cancelled = 0
    if services.settings.feature_cancel_on_unsubscribe:
        try:
            cancelled = await services.scheduler.cancel_user_calls(body.user_id)
        except Exception as e:
            logger.error("subscription_cancel_calls_error", user_id=body.user_id, error=str(e))

    return {"received": True, "cancelled_calls": cancelled}


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy", "service": "internal-webhook", "timestamp": utcnow().isoformat()}
