from __future__ import annotations

import json
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from redis.asyncio import Redis

from jobgate.core.config import settings
from jobgate.core.logging import get_logger
from jobgate.observability.metrics import OVERFLOW_PUSHES

QUEUES_SET = "queues"

log = get_logger("rl.overflow")


@runtime_checkable
class OverflowQueue(Protocol):
    """Holds deferred jobs until the host re-delivers them."""

    async def push(self, job_class: str, args: Sequence[Any]) -> None: ...


def restriction_queue_name(queue: str) -> str:
    return f"{settings.RESTRICTION_QUEUE_PREFIX}_{queue}"


def encode_job(job_class: str, args: Sequence[Any]) -> str:
    return json.dumps({"class": job_class, "args": list(args)}, separators=(",", ":"))


def decode_job(payload: str | bytes) -> dict[str, Any]:
    return json.loads(payload)


class RedisOverflowQueue:
    """Overflow queue stored as a Redis list at ``queue:<name>``."""

    def __init__(self, redis: Redis, name: str, *, max_peek: Optional[int] = None):
        self.redis = redis
        self.name = name
        self.max_peek = settings.MAX_QUEUE_PEEK if max_peek is None else max_peek

    @property
    def key(self) -> str:
        return f"queue:{self.name}"

    async def push(self, job_class: str, args: Sequence[Any]) -> None:
        pipe = self.redis.pipeline(transaction=False)
        pipe.sadd(QUEUES_SET, self.name)
        pipe.rpush(self.key, encode_job(job_class, args))
        await pipe.execute()
        OVERFLOW_PUSHES.labels(queue=self.name).inc()
        log.bind(queue=self.name, job_class=job_class).info("overflow.push")

    async def peek(self, count: Optional[int] = None) -> list[dict[str, Any]]:
        count = self.max_peek if count is None else min(count, self.max_peek)
        if count <= 0:
            return []
        raw = await self.redis.lrange(self.key, 0, count - 1)
        return [decode_job(item) for item in raw]

    async def size(self) -> int:
        return int(await self.redis.llen(self.key))
