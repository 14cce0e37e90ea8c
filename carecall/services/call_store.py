"""
Scheduled Call Store.

Keeps ScheduledCall records for the CallScheduler. The in-memory store
serves single-process development and tests; the Redis store survives
restarts and keeps a "due at" sorted set so a sweeper can find calls
whose timers were lost with a previous process.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

import redis.asyncio as aioredis

from carecall.logging_config import get_logger
from carecall.schemas.call import ScheduledCall

logger = get_logger(__name__)

# Redis key prefixes
CALL_STATE_KEY = "calls:state:{}"        # Hash per call
CALL_IDS_KEY = "calls:all"               # Set of every known call id
DUE_INDEX_KEY = "calls:due"              # Sorted set: call id -> due timestamp
EXTERNAL_ID_KEY = "calls:external:{}"    # External call id -> internal call id
ATTEMPT_CLAIM_KEY = "calls:claim:{}:{}"   # Set once per (call id, attempt)
CLAIM_TTL_SECONDS = 24 * 60 * 60


class CallStore(Protocol):
    async def save(self, call: ScheduledCall) -> None: ...

    async def get(self, call_id: str) -> Optional[ScheduledCall]: ...

    async def all(self) -> list[ScheduledCall]: ...

    async def find_by_external_id(self, external_call_id: str) -> Optional[ScheduledCall]: ...

    async def due_ids(self, now: datetime) -> list[str]: ...

    async def claim_attempt(self, call_id: str, attempt: int) -> bool: ...

    async def release_claims(self, call_id: str) -> None: ...

    async def close(self) -> None: ...


class InMemoryCallStore:
    """Dict-backed store; records are copied in and out."""

    def __init__(self) -> None:
        self._calls: dict[str, ScheduledCall] = {}
        self._by_external: dict[str, str] = {}
        self._claims: dict[str, set[int]] = {}

    async def save(self, call: ScheduledCall) -> None:
        previous = self._calls.get(call.id)
        if previous and previous.external_call_id and previous.external_call_id != call.external_call_id:
            self._by_external.pop(previous.external_call_id, None)
        if call.external_call_id:
            self._by_external[call.external_call_id] = call.id
        self._calls[call.id] = call.model_copy(deep=True)

    async def get(self, call_id: str) -> Optional[ScheduledCall]:
        call = self._calls.get(call_id)
        return call.model_copy(deep=True) if call else None

    async def all(self) -> list[ScheduledCall]:
        return [c.model_copy(deep=True) for c in self._calls.values()]

    async def find_by_external_id(self, external_call_id: str) -> Optional[ScheduledCall]:
        call_id = self._by_external.get(external_call_id)
        return await self.get(call_id) if call_id else None

    async def due_ids(self, now: datetime) -> list[str]:
        due = [c for c in self._calls.values() if c.is_pending and c.scheduled_for <= now]
        return [c.id for c in sorted(due, key=lambda c: c.scheduled_for)]

    async def claim_attempt(self, call_id: str, attempt: int) -> bool:
        claimed = self._claims.setdefault(call_id, set())
        if attempt in claimed:
            return False
        claimed.add(attempt)
        return True

    async def release_claims(self, call_id: str) -> None:
        self._claims.pop(call_id, None)

    async def close(self) -> None:
        return None


class RedisCallStore:
    """
    Redis-backed store.

    Each call is a hash holding its JSON document and status; pending
    calls are indexed by due time, and the current external id maps back
    to the internal id.
    """

    def __init__(self, redis_url: str) -> None:
        self._redis: aioredis.Redis = aioredis.from_url(redis_url, decode_responses=True)

    async def save(self, call: ScheduledCall) -> None:
        key = CALL_STATE_KEY.format(call.id)
        previous_external = await self._redis.hget(key, "external_call_id")

        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(key, mapping={
                "data": call.model_dump_json(),
                "status": call.status.value,
                "external_call_id": call.external_call_id or "",
            })
            pipe.sadd(CALL_IDS_KEY, call.id)

            if call.is_pending:
                pipe.zadd(DUE_INDEX_KEY, {call.id: call.scheduled_for.timestamp()})
            else:
                pipe.zrem(DUE_INDEX_KEY, call.id)

            if previous_external and previous_external != call.external_call_id:
                pipe.delete(EXTERNAL_ID_KEY.format(previous_external))
            if call.external_call_id:
                pipe.set(EXTERNAL_ID_KEY.format(call.external_call_id), call.id)

            await pipe.execute()

    async def get(self, call_id: str) -> Optional[ScheduledCall]:
        raw = await self._redis.hget(CALL_STATE_KEY.format(call_id), "data")
        if not raw:
            return None
        return ScheduledCall.model_validate_json(raw)

    async def all(self) -> list[ScheduledCall]:
        calls: list[ScheduledCall] = []
        for call_id in await self._redis.smembers(CALL_IDS_KEY):
            call = await self.get(call_id)
            if call:
                calls.append(call)
        return calls

    async def find_by_external_id(self, external_call_id: str) -> Optional[ScheduledCall]:
        call_id = await self._redis.get(EXTERNAL_ID_KEY.format(external_call_id))
        return await self.get(call_id) if call_id else None

    async def due_ids(self, now: datetime) -> list[str]:
        return list(await self._redis.zrangebyscore(DUE_INDEX_KEY, "-inf", now.timestamp()))

    async def claim_attempt(self, call_id: str, attempt: int) -> bool:
        """First process to claim an attempt places it; others skip."""
        claimed = await self._redis.set(
            ATTEMPT_CLAIM_KEY.format(call_id, attempt), "1", nx=True, ex=CLAIM_TTL_SECONDS
        )
        return bool(claimed)

    async def release_claims(self, call_id: str) -> None:
        # Claims outlive the call until their TTL: another process may still
        # hold a stale copy of the call and must not win a fresh claim.
        return None

    async def close(self) -> None:
        await self._redis.aclose()
        logger.info("redis_call_store_closed")
