from __future__ import annotations

import time
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from redis.asyncio import Redis

from jobgate.core.config import Settings, settings as global_settings
from jobgate.core.logging import get_logger
from jobgate.observability.metrics import (
    ADMISSIONS_TOTAL,
    DECISION_LATENCY_MS,
    update_redis_pool_gauge,
)
from jobgate.observability.tracing import get_tracer
from jobgate.rl.errors import OverflowPushError
from jobgate.rl.keys import Limit, parse_limits, restriction_key
from jobgate.rl.overflow import OverflowQueue
from jobgate.rl.schemas import AdmissionDecision, ReleaseToken
from jobgate.rl.strategies import fixed_window
from jobgate.rl.strategies.concurrency import ConcurrencyLimiter

log = get_logger("rl.coordinator")
tracer = get_tracer(__name__)


class RestrictionCoordinator:
    """Admits or defers one job against its declared limits.

    Hosts call :meth:`admit` before running a job and, when admitted,
    :meth:`release` exactly once afterwards whether the job succeeded or
    failed. A coordinator holds at most one concurrency slot, so use one
    instance per concurrently running job.
    """

    def __init__(
        self,
        redis: Redis,
        overflow: OverflowQueue,
        *,
        concurrency_limiter: Optional[ConcurrencyLimiter] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.overflow = overflow
        self.settings = settings or global_settings
        self.clock = clock
        self.concurrency = concurrency_limiter or ConcurrencyLimiter(
            redis,
            heartbeat_interval=self.settings.CONCURRENT_HEARTBEAT,
            max_clock_skew=self.settings.MAX_CLOCK_SKEW,
            maintenance_probability=self.settings.MAINTENANCE_PROBABILITY,
            clock=clock,
        )

    async def admit(
        self,
        job_class: str,
        args: Sequence[Any],
        limits: Mapping[str, int],
        *,
        identifier: Optional[str] = None,
    ) -> AdmissionDecision:
        args = list(args)
        identifier = identifier or job_class
        # reject malformed declarations before anything is written
        declared = parse_limits(limits)

        if self.settings.INLINE:
            return AdmissionDecision(
                admitted=True,
                job_class=job_class,
                identifier=identifier,
                token=ReleaseToken(job_class=job_class, identifier=identifier),
            )

        start = time.perf_counter()
        outcome = "error"
        with tracer.start_as_current_span("restriction.admit") as span:
            span.set_attribute("restriction.identifier", identifier)
            span.set_attribute("restriction.limits", len(declared))
            try:
                decision = await self._admit(job_class, identifier, args, declared)
                outcome = "admitted" if decision.admitted else "deferred"
                span.set_attribute("restriction.outcome", outcome)
                return decision
            finally:
                DECISION_LATENCY_MS.observe((time.perf_counter() - start) * 1000.0)
                ADMISSIONS_TOTAL.labels(outcome=outcome).inc()
                update_redis_pool_gauge(self.redis)

    async def _admit(
        self,
        job_class: str,
        identifier: str,
        args: List[Any],
        declared: List[Limit],
    ) -> AdmissionDecision:
        now = self.clock()
        # every rate key incremented in this call, refused one included
        incremented: List[Tuple[str, int]] = []
        concurrency_key: Optional[str] = None
        refused_by: Optional[str] = None

        try:
            for limit in declared:
                period = limit.period
                key = restriction_key(identifier, period, args, now=now)
                if period.is_concurrent:
                    if not await self.concurrency.try_start(key, limit.cap):
                        refused_by = period.descriptor
                        break
                    concurrency_key = key
                    continue

                counter = await fixed_window.try_increment(
                    self.redis, key, limit=limit.cap, window_sec=period.seconds
                )
                incremented.append((key, period.seconds))
                if not counter.admitted:
                    refused_by = period.descriptor
                    break
        except BaseException:
            if concurrency_key is not None:
                await self.concurrency.abandon()
            raise

        if refused_by is None:
            log.bind(job_class=job_class, identifier=identifier).debug(
                "restriction.admitted"
            )
            return AdmissionDecision(
                admitted=True,
                job_class=job_class,
                identifier=identifier,
                token=ReleaseToken(
                    job_class=job_class,
                    identifier=identifier,
                    concurrency_key=concurrency_key,
                ),
            )

        await self._defer(job_class, args, concurrency_key, incremented)
        log.bind(
            job_class=job_class, identifier=identifier, refused_by=refused_by
        ).info("restriction.deferred")
        return AdmissionDecision(
            admitted=False,
            job_class=job_class,
            identifier=identifier,
            refused_by=refused_by,
        )

    async def _defer(
        self,
        job_class: str,
        args: List[Any],
        concurrency_key: Optional[str],
        incremented: List[Tuple[str, int]],
    ) -> None:
        try:
            if concurrency_key is not None:
                await self.concurrency.finish(concurrency_key)
        finally:
            await fixed_window.rollback_many(self.redis, incremented)
        await self._push(job_class, args)

    async def _push(self, job_class: str, args: List[Any]) -> None:
        try:
            await self.overflow.push(job_class, args)
        except Exception as exc:
            log.bind(job_class=job_class).opt(exception=exc).error(
                "overflow.push_failed"
            )
            raise OverflowPushError(job_class, args) from exc

    async def release(self, token: Optional[ReleaseToken]) -> None:
        if token is None or token.concurrency_key is None:
            return
        await self.concurrency.finish(token.concurrency_key)
        log.bind(job_class=token.job_class, key=token.concurrency_key).debug(
            "restriction.released"
        )

    async def would_defer(
        self,
        job_class: str,
        args: Sequence[Any],
        limits: Mapping[str, int],
        *,
        identifier: Optional[str] = None,
    ) -> bool:
        """Whether :meth:`admit` would defer the job right now.

        Reads counters and slot counts without reserving anything.
        """
        args = list(args)
        identifier = identifier or job_class
        declared = parse_limits(limits)
        if self.settings.INLINE:
            return False

        now = self.clock()
        for limit in declared:
            key = restriction_key(identifier, limit.period, args, now=now)
            if limit.period.is_concurrent:
                if not await self.concurrency.can_start(key, limit.cap):
                    return True
            elif await fixed_window.current_count(self.redis, key) >= limit.cap:
                return True
        return False

    async def repush_if_restricted(
        self,
        job_class: str,
        args: Sequence[Any],
        limits: Mapping[str, int],
        *,
        identifier: Optional[str] = None,
    ) -> bool:
        args = list(args)
        if not await self.would_defer(job_class, args, limits, identifier=identifier):
            return False
        await self._push(job_class, args)
        return True
