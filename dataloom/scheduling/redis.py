"""Redis scheduler backend for schedules shared across processes."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .base import ScheduleRegistration, SchedulerBackend

logger = logging.getLogger(__name__)


class RedisSchedulerBackend(SchedulerBackend):
    """Registrations live in a hash; due times live in a sorted set.

    Claiming a due registration removes its sorted-set member first, so only
    one scheduler process fires it.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        namespace: str = "dataloom:schedules",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisSchedulerBackend")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._hash = namespace
        self._due = f"{namespace}:due"
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def register(self, registration: ScheduleRegistration) -> None:
        client = await self._client()
        await client.hset(self._hash, registration.key, registration.model_dump_json())
        await client.zadd(
            self._due, {registration.key: registration.next_run_at.timestamp()}
        )

    async def clear(self, key: str) -> bool:
        client = await self._client()
        removed = await client.hdel(self._hash, key)
        await client.zrem(self._due, key)
        return bool(removed)

    async def get(self, key: str) -> Optional[ScheduleRegistration]:
        client = await self._client()
        raw = await client.hget(self._hash, key)
        return ScheduleRegistration.model_validate_json(raw) if raw else None

    async def list(self) -> List[ScheduleRegistration]:
        client = await self._client()
        values = await client.hvals(self._hash)
        registrations = [ScheduleRegistration.model_validate_json(v) for v in values]
        return sorted(registrations, key=lambda r: r.next_run_at)

    async def pop_due(self, now: datetime) -> List[ScheduleRegistration]:
        client = await self._client()
        keys = await client.zrangebyscore(self._due, "-inf", now.timestamp())
        due = []
        for key in keys:
            if not await client.zrem(self._due, key):
                continue
            raw = await client.hget(self._hash, key)
            if raw is None:
                logger.debug(f"Dropping due entry {key} without registration")
                continue
            registration = ScheduleRegistration.model_validate_json(raw)
            if registration.recurring:
                await self.register(registration.advanced(now))
            else:
                await client.hdel(self._hash, key)
            due.append(registration)
        return due
