"""
Transcript Backfill Worker.

Some calls end before the Voice Platform has a transcript ready. Their
records are saved as completed without analysis; this worker polls for
them, fetches the transcript, and runs the post-call pipeline again so
the analysis, insight and similarity document get written.

Start with:
    python -m carecall.workers.transcript_backfill
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timedelta
from typing import Callable

from dotenv import load_dotenv
load_dotenv(".env.local")

from carecall.logging_config import setup_logging, get_logger
from carecall.schemas.call import utcnow
from carecall.schemas.events import EndedCallData
from carecall.services.container import Services, build_services

setup_logging()
logger = get_logger(__name__)

# How often to look for records without a transcript (seconds)
POLL_INTERVAL = 60.0
BATCH_SIZE = 20
# Upper bound on one query, including rows skipped while waiting to retry
MAX_FETCH = 200
# Wait before asking the Voice Platform again for a missing transcript
UNAVAILABLE_RETRY_SECONDS = 15 * 60


class TranscriptBackfillWorker:
    def __init__(
        self,
        services: Services,
        poll_interval: float = POLL_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._services = services
        self._poll_interval = poll_interval
        self._clock = clock
        self._stopped = asyncio.Event()
        # external_call_id -> when to ask the Voice Platform again
        self._unavailable: dict[str, datetime] = {}

    async def start(self) -> None:
        logger.info("transcript_backfill_started", poll_interval=self._poll_interval)

        while not self._stopped.is_set():
            try:
                processed = await self.run_once()
                if processed:
                    logger.info("transcripts_backfilled", count=processed)
            except Exception as e:
                logger.error("transcript_backfill_error", error=str(e))

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass

    async def run_once(self) -> int:
        """Process one batch; returns how many records got a transcript."""
        now = self._clock()
        for external_call_id, retry_at in list(self._unavailable.items()):
            if retry_at <= now:
                del self._unavailable[external_call_id]

        rows = await self._services.db.get_calls_missing_transcript(
            limit=min(BATCH_SIZE + len(self._unavailable), MAX_FETCH)
        )

        processed = 0
        for row in rows:
            external_call_id = row.get("external_call_id")
            user_id = row.get("user_id")
            if not external_call_id or not user_id or external_call_id in self._unavailable:
                continue

            transcript = await self._services.voice.get_transcript(external_call_id)
            if not transcript:
                self._unavailable[external_call_id] = now + timedelta(seconds=UNAVAILABLE_RETRY_SECONDS)
                logger.info("transcript_still_unavailable", external_call_id=external_call_id)
                continue

            # Recording was already stored when the call ended
            result = await self._services.pipeline.process(
                external_call_id,
                user_id,
                EndedCallData(transcript=transcript, duration_seconds=row.get("duration_seconds")),
            )
            logger.info(
                "transcript_backfilled",
                external_call_id=external_call_id,
                success=result.success,
                follow_up_needed=result.follow_up_needed,
            )
            processed += 1

        return processed

    def request_stop(self) -> None:
        self._stopped.set()

    async def stop(self) -> None:
        self._stopped.set()
        await self._services.close()
        logger.info("transcript_backfill_stopped")


async def main() -> None:
    worker = TranscriptBackfillWorker(build_services())

    loop = asyncio.get_running_loop()

    def shutdown_handler() -> None:
        logger.info("shutdown_signal_received")
        worker.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, shutdown_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass

    try:
        await worker.start()
    except KeyboardInterrupt:
        pass
    finally:
        await worker.stop()


if __name__ == "__main__":
    asyncio.run(main())
