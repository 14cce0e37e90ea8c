"""
Service wiring.

Builds the collaborators once per process and connects the correlator's
carrier signals to the scheduler. Used by the API server lifespan and
by the standalone workers.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from carecall.config import CallStoreBackend, Settings, get_settings
from carecall.db import get_db
from carecall.logging_config import get_logger
from carecall.services.blob_store import SupabaseBlobStore
from carecall.services.call_scheduler import CallScheduler
from carecall.services.call_store import CallStore, InMemoryCallStore, RedisCallStore
from carecall.services.event_correlator import EventCorrelator
from carecall.services.post_call_pipeline import PostCallPipeline
from carecall.services.similarity_index import WeaviateSimilarityIndex
from carecall.services.voice_platform import VoicePlatformClient

logger = get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    db: Any
    voice: Any
    scheduler: CallScheduler
    pipeline: PostCallPipeline
    correlator: EventCorrelator
    similarity_index: Any
    blob_store: Any = None
    closers: list = field(default_factory=list)

    async def close(self) -> None:
        await self.scheduler.shutdown()
        for close in self.closers:
            try:
                await close()
            except Exception as e:
                logger.error("service_close_error", error=str(e))

    async def health_check(self) -> dict[str, dict[str, Any]]:
        """Per-collaborator health; a check that raises counts as unhealthy."""
        components = {
            "database": self.db,
            "voice_platform": self.voice,
            "blob_store": self.blob_store,
            "similarity_index": self.similarity_index,
        }
        components = {name: c for name, c in components.items() if c is not None}
        checks = [c.health_check() for c in components.values()]
        results = await asyncio.gather(*checks, return_exceptions=True)

        report: dict[str, dict[str, Any]] = {}
        for name, result in zip(components, results):
            if isinstance(result, Exception):
                logger.error("health_check_error", component=name, error=str(result))
                result = {"status": "unhealthy", "error": str(result)}
            report[name] = result
        return report


def build_call_store(settings: Settings) -> CallStore:
    if settings.call_store_backend == CallStoreBackend.REDIS:
        logger.info("call_store_backend", backend="redis")
        return RedisCallStore(settings.redis_url)
    logger.info("call_store_backend", backend="memory")
    return InMemoryCallStore()


def wire_services(
    settings: Settings,
    db,
    voice,
    blob_store,
    similarity_index,
    store: Optional[CallStore] = None,
    timer=None,
    clock=None,
    fetch_recording=None,
) -> Services:
    """Connect already-built collaborators; tests pass fakes here."""
    scheduler = CallScheduler(db, voice, store=store, timer=timer, settings=settings, clock=clock)

    pipeline_kwargs = {"settings": settings, "clock": clock}
    if fetch_recording is not None:
        pipeline_kwargs["fetch_recording"] = fetch_recording
    pipeline = PostCallPipeline(db, voice, blob_store, similarity_index, **pipeline_kwargs)

    correlator = EventCorrelator(db, scheduler, pipeline)
    correlator.subscribe(scheduler.handle_carrier_signal)

    return Services(
        settings=settings,
        db=db,
        voice=voice,
        scheduler=scheduler,
        pipeline=pipeline,
        correlator=correlator,
        similarity_index=similarity_index,
        blob_store=blob_store,
    )


def build_services(settings: Optional[Settings] = None) -> Services:
    """Production wiring: Supabase, VAPI, Weaviate and the configured call store."""
    settings = settings or get_settings()
    db = get_db()
    voice = VoicePlatformClient(settings)
    similarity_index = WeaviateSimilarityIndex(settings)
    store = build_call_store(settings)

    services = wire_services(
        settings,
        db=db,
        voice=voice,
        blob_store=SupabaseBlobStore(db.client, settings),
        similarity_index=similarity_index,
        store=store,
    )
    services.closers.extend([voice.close, similarity_index.close, store.close])
    return services
