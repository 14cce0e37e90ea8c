"""
Call Scheduler Service.

Owns the lifecycle of outbound companion calls: delayed scheduling of
the first call, execution through the Voice Platform, the fixed-backoff
retry policy, cancellation/rescheduling, and recovery of pending calls
after a restart.

Every transition on a call runs under that call's own asyncio lock, so
a timer firing and a webhook touching the same call are applied one at
a time in arrival order, and nothing is applied once the call is
terminal. Unrelated calls never wait on each other.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol

from carecall.config import Settings, get_settings
from carecall.errors import UserNotFoundError
from carecall.logging_config import call_id_var, get_logger
from carecall.schemas.call import (
    CallStats,
    CallStatus,
    ScheduledCall,
    UserData,
    utcnow,
)
from carecall.schemas.events import CarrierSignal, OutreachRequested
from carecall.services.call_store import CallStore, InMemoryCallStore
from carecall.services.context_builder import build_call_context
from carecall.services.phone_numbers import format_mexican_number, is_valid_mexican_number

logger = get_logger(__name__)


class RelationalStore(Protocol):
    async def get_user(self, user_id: str) -> dict[str, Any] | None: ...

    async def get_call_history(self, user_id: str, limit: int = 10) -> list[dict[str, Any]]: ...

    async def mark_first_call_done(self, user_id: str) -> bool: ...


class CallPlacer(Protocol):
    async def place_call(self, phone: str, context: dict[str, Any]) -> str: ...


class Timer(Protocol):
    def arm(self, call_id: str, delay_seconds: float, callback: Callable[[], Awaitable[Any]]) -> None: ...

    def cancel(self, call_id: str) -> bool: ...

    def is_armed(self, call_id: str) -> bool: ...

    async def shutdown(self) -> None: ...


class AsyncioTimer:
    """One-shot timers as asyncio tasks; re-arming a call replaces its timer."""

    def __init__(self) -> None:
        self._tasks: dict[str, asyncio.Task[Any]] = {}

    def arm(self, call_id: str, delay_seconds: float, callback: Callable[[], Awaitable[Any]]) -> None:
        self.cancel(call_id)
        self._tasks[call_id] = asyncio.create_task(
            self._fire(call_id, max(0.0, delay_seconds), callback),
            name=f"call-timer-{call_id}",
        )

    async def _fire(self, call_id: str, delay_seconds: float, callback: Callable[[], Awaitable[Any]]) -> None:
        await asyncio.sleep(delay_seconds)
        # Unregister before running so the callback may arm a new timer
        # (retry) without cancelling itself.
        if self._tasks.get(call_id) is asyncio.current_task():
            del self._tasks[call_id]
        try:
            await callback()
        except Exception as e:
            logger.error("call_timer_callback_error", call_id=call_id, error=str(e))

    def cancel(self, call_id: str) -> bool:
        task = self._tasks.pop(call_id, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def is_armed(self, call_id: str) -> bool:
        task = self._tasks.get(call_id)
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


class CallScheduler:
    """
    Schedules, executes and retries outbound calls.

    Collaborators are injected so the same class runs against Supabase
    and VAPI in production and against fakes in tests.
    """

    def __init__(
        self,
        db: RelationalStore,
        voice: CallPlacer,
        store: Optional[CallStore] = None,
        timer: Optional[Timer] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._db = db
        self._voice = voice
        self._store: CallStore = store or InMemoryCallStore()
        self._timer: Timer = timer or AsyncioTimer()
        self._settings = settings or get_settings()
        self._now = clock or utcnow
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tasks: set[asyncio.Task[Any]] = set()
        self._last_id_stamp = 0

    @property
    def store(self) -> CallStore:
        return self._store

    @property
    def retry_backoff(self) -> timedelta:
        return timedelta(minutes=self._settings.retry_backoff_minutes)

    # -- Scheduling --

    async def schedule_call(
        self,
        user_data: UserData | dict[str, Any],
        delay_minutes: Optional[int] = None,
    ) -> ScheduledCall | None:
        """
        Create a call for a user and arm its timer.

        Args:
            user_data: Registration data; ``registered_at`` defaults to now.
            delay_minutes: Minutes after registration; defaults to the
                configured first-call delay.

        Returns:
            The scheduled call, or None when the phone number is invalid
            (nothing is stored or armed in that case).
        """
        if isinstance(user_data, dict):
            user_data = UserData.model_validate(user_data)
        if delay_minutes is None:
            delay_minutes = self._settings.first_call_delay_minutes

        if not is_valid_mexican_number(user_data.phone):
            logger.error("invalid_phone_number", user_id=user_data.user_id, phone=user_data.phone)
            return None

        now = self._now()
        base = user_data.registered_at or now
        if base.tzinfo is None:
            base = base.replace(tzinfo=timezone.utc)

        call = ScheduledCall(
            id=self._new_call_id(user_data.user_id),
            user_id=user_data.user_id,
            user_name=user_data.user_name,
            migrant_name=user_data.migrant_name,
            companion=user_data.companion,
            phone=format_mexican_number(user_data.phone),
            scheduled_for=base + timedelta(minutes=delay_minutes),
            max_attempts=self._settings.max_call_attempts,
            created_at=now,
        )
        await self._store.save(call)
        self._arm(call)

        logger.info(
            "call_scheduled",
            call_id=call.id,
            user_id=call.user_id,
            scheduled_for=call.scheduled_for.isoformat(),
            delay_minutes=delay_minutes,
        )
        return call

    async def execute_scheduled_call(self, call_id: str) -> str | None:
        """
        Place one attempt of a scheduled call.

        Returns:
            The Voice Platform call id on success, otherwise None.
        """
        token = call_id_var.set(call_id)
        try:
            async with self._locks[call_id]:
                call = await self._store.get(call_id)
                if call is None:
                    self._locks.pop(call_id, None)
                    logger.error("scheduled_call_not_found", call_id=call_id)
                    return None
                if not call.is_pending:
                    if call.is_terminal:
                        self._locks.pop(call_id, None)
                    logger.info("call_execution_skipped", call_id=call_id, status=call.status.value)
                    return None
                if call.attempts >= call.max_attempts:
                    call.status = CallStatus.FAILED
                    await self._store.save(call)
                    await self._retire(call)
                    logger.warning("call_attempts_exhausted", call_id=call_id, attempts=call.attempts)
                    return None
                if not await self._store.claim_attempt(call_id, call.attempts + 1):
                    logger.info("call_attempt_claimed_elsewhere", call_id=call_id, attempt=call.attempts + 1)
                    return None

                call.attempts += 1
                call.status = CallStatus.EXECUTING
                call.external_call_id = None
                await self._store.save(call)

                try:
                    external_call_id = await self._place(call)
                except Exception as e:
                    logger.error(
                        "call_execution_error",
                        call_id=call_id,
                        attempt=call.attempts,
                        error=str(e),
                    )
                    await self._apply_failure(call, str(e))
                    return None

                call.status = CallStatus.IN_PROGRESS
                call.external_call_id = external_call_id
                call.started_at = self._now()
                await self._store.save(call)

                logger.info(
                    "call_initiated",
                    call_id=call_id,
                    external_call_id=external_call_id,
                    attempt=call.attempts,
                )
                return external_call_id
        finally:
            call_id_var.reset(token)

    async def _place(self, call: ScheduledCall) -> str:
        user = await self._db.get_user(call.user_id)
        if not user:
            raise UserNotFoundError(call.user_id)

        if call.migrant_name and not user.get("migrant_name"):
            user = {**user, "migrant_name": call.migrant_name}

        history = await self._db.get_call_history(call.user_id, limit=self._settings.call_history_limit)
        context = build_call_context(user, history)
        context["internal_call_id"] = call.id
        return await self._voice.place_call(call.phone, context)

    # -- Retry Logic --

    async def _apply_failure(self, call: ScheduledCall, reason: str) -> None:
        """Fixed-backoff retry while attempts remain; permanent failure otherwise."""
        call.status = CallStatus.FAILED
        call.last_error = reason

        if call.attempts < call.max_attempts:
            call.status = CallStatus.RETRY_SCHEDULED
            call.scheduled_for = self._now() + self.retry_backoff
            await self._store.save(call)
            self._arm(call)
            logger.info(
                "call_retry_scheduled",
                call_id=call.id,
                attempt=call.attempts,
                max_attempts=call.max_attempts,
                retry_at=call.scheduled_for.isoformat(),
            )
        else:
            await self._store.save(call)
            await self._retire(call)
            logger.warning(
                "call_permanently_failed",
                call_id=call.id,
                attempts=call.attempts,
                reason=reason,
            )

    # -- State Management --

    async def claim_completion(self, call_id: str, external_call_id: Optional[str] = None) -> bool:
        """
        Move a call to COMPLETED and record the user's first-call milestone.

        Exactly one caller wins per call. Returns False when the call is
        unknown or already terminal, or when ``external_call_id`` belongs
        to a different attempt; the caller must then skip its post-call
        work.
        """
        async with self._locks[call_id]:
            call = await self._store.get(call_id)
            if call is None or call.is_terminal:
                self._locks.pop(call_id, None)
                logger.info("call_completion_ignored", call_id=call_id, status=call.status.value if call else None)
                return False
            if external_call_id and call.external_call_id != external_call_id:
                logger.warning(
                    "call_completion_attempt_mismatch",
                    call_id=call_id,
                    external_call_id=external_call_id,
                    current_external_call_id=call.external_call_id,
                )
                return False

            call.status = CallStatus.COMPLETED
            call.completed_at = self._now()
            self._timer.cancel(call_id)
            await self._store.save(call)
            await self._retire(call)

            await self._db.mark_first_call_done(call.user_id)

        logger.info("call_completed", call_id=call_id, user_id=call.user_id)
        return True

    async def record_result(self, call_id: str, result: dict[str, Any]) -> bool:
        """Attach post-call results to a completed call."""
        call = await self._store.get(call_id)
        if call is None or call.status != CallStatus.COMPLETED:
            return False
        call.result = result
        await self._store.save(call)
        return True

    async def mark_call_completed(self, call_id: str, result: Optional[dict[str, Any]] = None) -> bool:
        if not await self.claim_completion(call_id):
            return False
        if result is not None:
            await self.record_result(call_id, result)
        return True

    async def mark_call_failed(self, call_id: str, error: str, external_call_id: Optional[str] = None) -> bool:
        """Record a failure reported by the Voice Platform; no retry follows."""
        async with self._locks[call_id]:
            call = await self._store.get(call_id)
            if call is None or call.is_terminal:
                self._locks.pop(call_id, None)
                return False
            if external_call_id and call.external_call_id != external_call_id:
                logger.warning("call_failure_attempt_mismatch", call_id=call_id, external_call_id=external_call_id)
                return False

            call.status = CallStatus.FAILED
            call.last_error = error
            self._timer.cancel(call_id)
            await self._store.save(call)
            await self._retire(call)

        logger.warning("call_marked_failed", call_id=call_id, error=error)
        return True

    async def cancel_scheduled_call(self, call_id: str) -> bool:
        """Cancel a call that has not started executing yet."""
        async with self._locks[call_id]:
            call = await self._store.get(call_id)
            if call is None or call.status != CallStatus.SCHEDULED:
                if call is None or call.is_terminal:
                    self._locks.pop(call_id, None)
                return False

            call.status = CallStatus.CANCELLED
            call.cancelled_at = self._now()
            self._timer.cancel(call_id)
            await self._store.save(call)
            await self._retire(call)

        logger.info("call_cancelled", call_id=call_id)
        return True

    async def cancel_user_calls(self, user_id: str) -> int:
        cancelled = 0
        for call in await self.get_user_scheduled_calls(user_id):
            if await self.cancel_scheduled_call(call.id):
                cancelled += 1
        logger.info("user_calls_cancelled", user_id=user_id, cancelled=cancelled)
        return cancelled

    async def reschedule_call(self, call_id: str, new_time: datetime) -> bool:
        """Move a not-yet-started call; its previous timer is replaced."""
        if new_time.tzinfo is None:
            new_time = new_time.replace(tzinfo=timezone.utc)

        async with self._locks[call_id]:
            call = await self._store.get(call_id)
            if call is None or call.status != CallStatus.SCHEDULED:
                if call is None or call.is_terminal:
                    self._locks.pop(call_id, None)
                return False

            call.scheduled_for = new_time
            await self._store.save(call)
            self._arm(call)

        logger.info("call_rescheduled", call_id=call_id, scheduled_for=new_time.isoformat())
        return True

    # -- Carrier signals --

    async def handle_carrier_signal(self, signal: CarrierSignal) -> bool:
        """
        React to a carrier-reported busy/no-answer/machine/rejected call.

        Only acts when ``feature_carrier_retry`` is enabled; the retry
        reuses the same policy as an execution failure.
        """
        if not self._settings.feature_carrier_retry:
            logger.info(
                "carrier_signal_ignored",
                signal=type(signal).__name__,
                reason=signal.reason,
                call_control_id=signal.call_control_id,
            )
            return False

        if isinstance(signal, OutreachRequested):
            logger.warning(
                "alternate_channel_outreach_requested",
                call_control_id=signal.call_control_id,
                reason=signal.reason,
            )
            return False

        call = None
        if signal.client_state:
            call = await self._store.get(signal.client_state)
        if call is None:
            call = await self._store.find_by_external_id(signal.call_control_id)
        if call is None:
            logger.warning("carrier_signal_unmatched", call_control_id=signal.call_control_id)
            return False

        async with self._locks[call.id]:
            current = await self._store.get(call.id)
            if current is None or current.status != CallStatus.IN_PROGRESS:
                if current is None or current.is_terminal:
                    self._locks.pop(call.id, None)
                logger.info(
                    "carrier_retry_not_applicable",
                    call_id=call.id,
                    status=current.status.value if current else None,
                )
                return False
            await self._apply_failure(current, f"carrier:{signal.reason}")
        return True

    # -- Queries --

    async def get_call_status(self, call_id: str) -> ScheduledCall | None:
        return await self._store.get(call_id)

    async def find_by_external_id(self, external_call_id: str) -> ScheduledCall | None:
        return await self._store.find_by_external_id(external_call_id)

    async def list_scheduled_calls(self) -> list[ScheduledCall]:
        calls = [c for c in await self._store.all() if c.status == CallStatus.SCHEDULED]
        return sorted(calls, key=lambda c: c.scheduled_for)

    async def get_user_scheduled_calls(self, user_id: str) -> list[ScheduledCall]:
        return [c for c in await self.list_scheduled_calls() if c.user_id == user_id]

    async def get_call_stats(self) -> CallStats:
        calls = await self._store.all()
        counts = {status.value: 0 for status in CallStatus}
        for call in calls:
            counts[call.status.value] += 1
        return CallStats(total=len(calls), **counts)

    # -- Recovery --

    async def recover(self) -> int:
        """
        Re-arm pending calls found in the store after a restart.

        Past-due calls execute immediately. Calls caught mid-execution by
        the previous process go through the retry policy.
        """
        recovered = 0
        for call in await self._store.all():
            if call.is_pending:
                self._arm(call)
                recovered += 1
            elif call.status == CallStatus.EXECUTING:
                async with self._locks[call.id]:
                    current = await self._store.get(call.id)
                    if current and current.status == CallStatus.EXECUTING:
                        await self._apply_failure(current, "interrupted by restart")
                        recovered += 1

        logger.info("scheduler_recovered", recovered=recovered)
        return recovered

    async def execute_due_calls(self) -> int:
        """Execute due calls that have no live timer in this process."""
        executed = 0
        for call_id in await self._store.due_ids(self._now()):
            if self._timer.is_armed(call_id):
                continue
            await self.execute_scheduled_call(call_id)
            executed += 1
        return executed

    async def wait_idle(self) -> None:
        """Wait for immediately-executed calls spawned by this scheduler."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        await self._timer.shutdown()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info("call_scheduler_shutdown")

    # -- Internals --

    async def _retire(self, call: ScheduledCall) -> None:
        """Drop per-call bookkeeping once a call is terminal; runs under its lock."""
        self._locks.pop(call.id, None)
        await self._store.release_claims(call.id)

    def _arm(self, call: ScheduledCall) -> None:
        delay = (call.scheduled_for - self._now()).total_seconds()
        if delay > 0:
            self._timer.arm(call.id, delay, lambda call_id=call.id: self.execute_scheduled_call(call_id))
        else:
            self._timer.cancel(call.id)
            self._spawn(self.execute_scheduled_call(call.id))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _new_call_id(self, user_id: str) -> str:
        stamp = int(self._now().timestamp() * 1000)
        stamp = max(stamp, self._last_id_stamp + 1)
        self._last_id_stamp = stamp
        return f"call_{user_id}_{stamp}"
