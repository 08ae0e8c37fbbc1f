from __future__ import annotations

import asyncio
import time
import uuid
from typing import Callable, Dict, NamedTuple, Optional

from redis.exceptions import RedisError

from jobgate.core.config import settings
from jobgate.core.logging import get_logger
from jobgate.rl.coordinator import RestrictionCoordinator
from jobgate.rl.schemas import ReleaseToken

log = get_logger("rl.registry")


class _Held(NamedTuple):
    coordinator: RestrictionCoordinator
    token: ReleaseToken
    held_at: float


class ReservationRegistry:
    """Admitted executions awaiting release, keyed by an opaque token id.

    Used by the HTTP service, where the host holds only a string while the
    coordinator owning the slot heartbeat stays in this process. A host that
    crashes never calls release, so every entry carries a lease: once it is
    older than ``lease`` seconds :meth:`expire` releases it on the host's
    behalf.
    """

    def __init__(
        self,
        *,
        lease: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.lease = settings.MAX_JOB_DURATION if lease is None else lease
        self.clock = clock
        self._held: Dict[str, _Held] = {}

    def __len__(self) -> int:
        return len(self._held)

    def __contains__(self, token_id: str) -> bool:
        return token_id in self._held

    def hold(self, coordinator: RestrictionCoordinator, token: ReleaseToken) -> str:
        token_id = uuid.uuid4().hex
        self._held[token_id] = _Held(coordinator, token, self.clock())
        return token_id

    async def release(self, token_id: str) -> bool:
        entry = self._held.get(token_id)
        if entry is None:
            return False
        await entry.coordinator.release(entry.token)
        # dropped only once released so a failed release can be retried
        del self._held[token_id]
        return True

    async def release_all(self) -> int:
        released = 0
        for token_id in list(self._held):
            if await self.release(token_id):
                released += 1
        if released:
            log.bind(released=released).info("registry.release_all")
        return released

    async def expire(self) -> int:
        """Release every entry held longer than the lease."""
        cutoff = self.clock() - self.lease
        expired = [tid for tid, entry in self._held.items() if entry.held_at <= cutoff]
        released = 0
        for token_id in expired:
            entry = self._held[token_id]
            log.bind(
                token_id=token_id,
                identifier=entry.token.identifier,
                held_for=self.clock() - entry.held_at,
            ).warning("registry.lease_expired")
            if await self.release(token_id):
                released += 1
        return released

    async def sweep(self, interval: float, stop: asyncio.Event) -> None:
        """Run :meth:`expire` every ``interval`` seconds until ``stop`` is set."""
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                return
            try:
                await self.expire()
            except RedisError as exc:
                # entries stay held and are retried on the next pass
                log.opt(exception=exc).warning("registry.expire_failed")
