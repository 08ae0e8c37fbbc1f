"""Declarative restrictions for job classes.

Subclass :class:`RestrictedJob`, declare limits with :meth:`restrict` and let
the worker call :meth:`RestrictedJob.run`::

    class SyncAccount(RestrictedJob):
        queue = "sync"

        @classmethod
        async def perform(cls, account):
            ...

    SyncAccount.restrict(per_hour=100, concurrent=2, per_minute_and_region=10)

Jobs whose limits depend on their arguments override :meth:`restrictions`,
and should then override :meth:`restriction_identifier` so that each
distinct set of limits counts under its own keys.
"""

from __future__ import annotations

import inspect
from typing import Any, ClassVar, Dict, Optional

from redis.asyncio import Redis

from jobgate.rl.coordinator import RestrictionCoordinator
from jobgate.rl.keys import parse_limits
from jobgate.rl.overflow import OverflowQueue, RedisOverflowQueue, restriction_queue_name


class RestrictedJob:
    queue: ClassVar[str] = "default"

    @classmethod
    def base_restrictions(cls) -> Dict[str, int]:
        # per class, not inherited
        if "_base_restrictions" not in cls.__dict__:
            cls._base_restrictions = {}
        return cls._base_restrictions

    @classmethod
    def restrict(cls, **limits: int) -> None:
        parse_limits(limits)
        cls.base_restrictions().update(limits)

    @classmethod
    def restrictions(cls, *args: Any) -> Dict[str, int]:
        return dict(cls.base_restrictions())

    @classmethod
    def restriction_identifier(cls, *args: Any) -> str:
        return cls.__name__

    @classmethod
    def restriction_queue_name(cls) -> str:
        return restriction_queue_name(cls.queue)

    @classmethod
    def perform(cls, *args: Any) -> Any:
        raise NotImplementedError

    @classmethod
    def coordinator(
        cls, redis: Redis, overflow: Optional[OverflowQueue] = None
    ) -> RestrictionCoordinator:
        if overflow is None:
            overflow = RedisOverflowQueue(redis, cls.restriction_queue_name())
        return RestrictionCoordinator(redis, overflow)

    @classmethod
    async def run(
        cls,
        redis: Redis,
        *args: Any,
        overflow: Optional[OverflowQueue] = None,
        coordinator: Optional[RestrictionCoordinator] = None,
    ) -> bool:
        """Perform the job if its restrictions allow it, else defer it.

        Returns False when the job went to the overflow queue. The slot is
        released whether ``perform`` returns or raises.
        """
        coordinator = coordinator or cls.coordinator(redis, overflow)
        decision = await coordinator.admit(
            cls.__name__,
            args,
            cls.restrictions(*args),
            identifier=cls.restriction_identifier(*args),
        )
        if not decision.admitted:
            return False
        try:
            result = cls.perform(*args)
            if inspect.isawaitable(result):
                await result
        finally:
            await coordinator.release(decision.token)
        return True

    @classmethod
    async def repush_if_restricted(
        cls,
        redis: Redis,
        *args: Any,
        overflow: Optional[OverflowQueue] = None,
    ) -> bool:
        return await cls.coordinator(redis, overflow).repush_if_restricted(
            cls.__name__,
            args,
            cls.restrictions(*args),
            identifier=cls.restriction_identifier(*args),
        )
