"""Redis-backed concurrency limiter.

Each running job holds one member of a sorted set, scored with the time of
its last heartbeat. Members older than ``stale_ttl`` are presumed to belong
to crashed processes: they are ignored when counting and swept by a
maintenance pass that a small fraction of new holders run. Worker clocks are
assumed to agree within ``max_clock_skew`` seconds.

An instance tracks one reservation at a time, so a host keeps one limiter
per concurrently running job.
"""

from __future__ import annotations

import asyncio
import random
import time
from typing import Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from jobgate.core.config import settings
from jobgate.core.logging import get_logger
from jobgate.observability.metrics import SLOTS_HELD, STALE_SLOTS_EVICTED

JOB_ID_KEY = "restriction:concurrency_job_id"

log = get_logger("rl.concurrency")


class ConcurrencyLimiter:
    def __init__(
        self,
        redis: Redis,
        *,
        heartbeat_interval: float | None = None,
        max_clock_skew: float | None = None,
        maintenance_probability: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.heartbeat_interval = (
            settings.CONCURRENT_HEARTBEAT
            if heartbeat_interval is None
            else heartbeat_interval
        )
        self.max_clock_skew = (
            settings.MAX_CLOCK_SKEW if max_clock_skew is None else max_clock_skew
        )
        self.maintenance_probability = (
            settings.MAINTENANCE_PROBABILITY
            if maintenance_probability is None
            else maintenance_probability
        )
        self.clock = clock
        self.job_id: Optional[int] = None
        self._heartbeat: Optional[asyncio.Task] = None
        self._heartbeat_stop: Optional[asyncio.Event] = None

    @property
    def stale_ttl(self) -> float:
        return self.max_clock_skew + self.heartbeat_interval

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat is not None and not self._heartbeat.done()

    def _now(self) -> int:
        return int(self.clock())

    def _live_range(self, now: int) -> tuple[float, float]:
        return now - self.stale_ttl, now + self.max_clock_skew

    async def try_start(self, key: str, concurrency: int) -> bool:
        """Reserve a slot under ``key``; False when ``concurrency`` are live.

        Callers racing on the same key can transiently over-admit by the
        number of racers until the losers remove their members.

        Raises ``RuntimeError`` while this instance still holds a slot.
        """
        if self.job_id is not None:
            raise RuntimeError(
                f"limiter already holds slot {self.job_id}; finish it first"
            )
        job_id = int(await self.redis.incr(JOB_ID_KEY))
        now = self._now()
        low, high = self._live_range(now)
        pipe = self.redis.pipeline(transaction=True)
        pipe.zadd(key, {str(job_id): now})
        pipe.zcount(key, low, high)
        _, count = await pipe.execute()

        if int(count) <= concurrency:
            self.job_id = job_id
            self._start_heartbeat(key, job_id)
            SLOTS_HELD.inc()
            log.bind(key=key, job_id=job_id, count=int(count)).debug(
                "concurrency.acquired"
            )
            return True

        await self.redis.zrem(key, str(job_id))
        log.bind(key=key, count=int(count), limit=concurrency).debug(
            "concurrency.refused"
        )
        return False

    async def can_start(self, key: str, concurrency: int) -> bool:
        low, high = self._live_range(self._now())
        return int(await self.redis.zcount(key, low, high)) < concurrency

    async def finish(self, key: str) -> None:
        # the heartbeat must be gone before the member is removed, or a late
        # tick could race the ZREM
        await self._stop_heartbeat()
        if self.job_id is None:
            return
        job_id, self.job_id = self.job_id, None
        await self.redis.zrem(key, str(job_id))
        SLOTS_HELD.dec()
        log.bind(key=key, job_id=job_id).debug("concurrency.released")

    async def abandon(self) -> None:
        """Stop heartbeating without touching the store.

        The slot is left to go stale and be swept by another holder.
        """
        await self._stop_heartbeat()
        if self.job_id is not None:
            log.bind(job_id=self.job_id).warning("concurrency.abandoned")
            self.job_id = None
            SLOTS_HELD.dec()

    async def perform_maintenance(self, key: str) -> int:
        cutoff = self._now() - self.stale_ttl
        removed = int(await self.redis.zremrangebyscore(key, "-inf", cutoff))
        if removed:
            STALE_SLOTS_EVICTED.inc(removed)
            log.bind(key=key, removed=removed).info("concurrency.maintenance")
        return removed

    def _start_heartbeat(self, key: str, job_id: int) -> None:
        self._heartbeat_stop = asyncio.Event()
        self._heartbeat = asyncio.create_task(
            self._heartbeat_loop(key, job_id, self._heartbeat_stop),
            name=f"heartbeat:{key}:{job_id}",
        )

    async def _stop_heartbeat(self) -> None:
        task, self._heartbeat = self._heartbeat, None
        stop, self._heartbeat_stop = self._heartbeat_stop, None
        if task is None:
            return
        # the event ends the loop even if a cancel is absorbed mid-request
        if stop is not None:
            stop.set()
        task.cancel()
        # asyncio.wait neither raises the task's CancelledError nor cancels
        # the task when our own caller is cancelled, so that still propagates
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            log.opt(exception=task.exception()).warning("concurrency.heartbeat_crashed")

    async def _heartbeat_loop(self, key: str, job_id: int, stop: asyncio.Event) -> None:
        member = str(job_id)
        if random.random() < self.maintenance_probability:
            try:
                await self.perform_maintenance(key)
            except RedisError as exc:
                log.bind(key=key).opt(exception=exc).warning(
                    "concurrency.maintenance_failed"
                )
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), self.heartbeat_interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                return
            try:
                # XX: never resurrect a member that finish() or a sweep removed
                await self.redis.zadd(key, {member: self._now()}, xx=True)
            except RedisError as exc:
                log.bind(key=key, job_id=job_id).opt(exception=exc).warning(
                    "concurrency.heartbeat_failed"
                )
