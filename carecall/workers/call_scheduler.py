"""
Call Scheduler Worker.

Recovers pending calls from the call store on startup, then sweeps for
due calls whose timers were lost (restart, or calls scheduled by another
process). Run it next to the API server when the Redis call store is
used; attempt claims in Redis keep both from placing the same attempt.

Start with:
    python -m carecall.workers.call_scheduler
"""

from __future__ import annotations

import asyncio
import signal

from dotenv import load_dotenv
load_dotenv(".env.local")

from carecall.config import get_settings
from carecall.logging_config import setup_logging, get_logger
from carecall.services.container import Services, build_services

setup_logging()
logger = get_logger(__name__)
settings = get_settings()


class CallSchedulerWorker:
    """Long-running sweep loop around a CallScheduler."""

    def __init__(self, services: Services, sweep_interval: float = settings.sweep_interval_seconds) -> None:
        self._services = services
        self._sweep_interval = sweep_interval
        self._stopped = asyncio.Event()

    async def start(self) -> None:
        scheduler = self._services.scheduler
        recovered = await scheduler.recover()
        logger.info(
            "call_scheduler_worker_started",
            recovered=recovered,
            sweep_interval=self._sweep_interval,
            store_backend=self._services.settings.call_store_backend.value,
        )

        while not self._stopped.is_set():
            try:
                executed = await scheduler.execute_due_calls()
                if executed:
                    logger.info("due_calls_executed", count=executed)
            except Exception as e:
                logger.error("call_sweep_error", error=str(e))

            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self._sweep_interval)
            except asyncio.TimeoutError:
                pass

    def request_stop(self) -> None:
        self._stopped.set()

    async def stop(self) -> None:
        """Stop the sweep loop and release connections."""
        self._stopped.set()
        await self._services.close()
        logger.info("call_scheduler_worker_stopped")


async def main() -> None:
    worker = CallSchedulerWorker(build_services(settings))

    # Handle graceful shutdown
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
