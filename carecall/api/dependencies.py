"""
Shared FastAPI dependencies: the per-app service container and webhook
authentication.
"""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request

from carecall.logging_config import get_logger
from carecall.services.container import Services

logger = get_logger(__name__)


def get_services(request: Request) -> Services:
    return request.app.state.services


def require_internal_token(
    authorization: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> None:
    """Bearer token shared with the database triggers."""
    if not authorization or not authorization.startswith("Bearer "):
        logger.warning("internal_webhook_unauthorized", reason="missing_bearer")
        raise HTTPException(status_code=401, detail="Unauthorized")

    token = authorization.split(" ", 1)[1]
    expected = services.settings.supabase_webhook_secret
    if not expected or not hmac.compare_digest(token, expected):
        logger.warning("internal_webhook_unauthorized", reason="invalid_token")
        raise HTTPException(status_code=401, detail="Invalid token")


def require_voice_signature(
    x_vapi_signature: Optional[str] = Header(default=None),
    services: Services = Depends(get_services),
) -> None:
    """Shared-secret check on Voice Platform webhooks, skipped in development."""
    settings = services.settings
    if settings.is_development or not settings.vapi_webhook_secret:
        return
    if not x_vapi_signature or not hmac.compare_digest(x_vapi_signature, settings.vapi_webhook_secret):
        logger.warning("voice_webhook_invalid_signature")
        raise HTTPException(status_code=401, detail="Invalid signature")
