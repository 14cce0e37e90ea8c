"""
FastAPI API Server.

Webhook receivers for the internal triggers, the Voice Platform and
the Telephony Carrier, plus the call operations API. The scheduler's
timers live in this process.

Start with:
    uvicorn carecall.api_server:app --reload --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from dotenv import load_dotenv
load_dotenv(".env.local")

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from carecall.api.calls import router as calls_router
from carecall.api.middleware import RequestIdMiddleware, RateLimitMiddleware
from carecall.api.webhooks_carrier import router as carrier_router
from carecall.api.webhooks_internal import router as internal_router
from carecall.api.webhooks_voice import router as voice_router
from carecall.logging_config import setup_logging, get_logger
from carecall.schemas.call import utcnow
from carecall.services.container import Services, build_services

setup_logging()
logger = get_logger(__name__)

SERVICE_NAME = "carecall"
VERSION = "0.1.0"

# Component states that do not degrade the service
HEALTHY_STATES = frozenset({"healthy", "disabled"})


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application.

    When ``services`` is given (tests), it is used as-is and left open on
    shutdown; otherwise production services are built on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("api_server_starting")
        owned = services is None
        app.state.services = services or build_services()

        recovered = await app.state.services.scheduler.recover()
        logger.info("api_server_ready", recovered_calls=recovered)
        yield

        logger.info("api_server_stopping")
        if owned:
            await app.state.services.close()

    app = FastAPI(
        title="CareCall API",
        description="Outbound companion calls: scheduling, webhook correlation and post-call analysis",
        version=VERSION,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # Middleware (outermost first)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(internal_router)
    app.include_router(voice_router)
    app.include_router(carrier_router)
    app.include_router(calls_router)

    @app.get("/health", tags=["System"])
    async def health_check(request: Request) -> JSONResponse:
        """Aggregate collaborator health; 503 when any of them is down."""
        components = await request.app.state.services.health_check()
        healthy = all(c.get("status") in HEALTHY_STATES for c in components.values())
        if not healthy:
            logger.warning("health_degraded", components={k: v.get("status") for k, v in components.items()})

        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "service": SERVICE_NAME,
                "timestamp": utcnow().isoformat(),
                "services": components,
            },
        )

    @app.get("/", tags=["System"])
    async def root() -> dict[str, object]:
        """API root."""
        return {
            "service": "CareCall",
            "version": VERSION,
            "docs": "/docs",
            "webhooks": {
                "internal": "/webhooks/internal/new-user",
                "voice": "/webhooks/voice",
                "carrier": "/webhooks/carrier",
            },
        }

    return app


app = create_app()
