from functools import lru_cache

from fastapi import Request
from redis.asyncio import Redis

from jobgate.core.config import settings
from jobgate.rl.registry import ReservationRegistry


@lru_cache()
def _redis_client() -> Redis:
    return Redis.from_url(settings.REDIS_URL, decode_responses=True)


async def get_redis() -> Redis:
    return _redis_client()


def get_registry(request: Request) -> ReservationRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        registry = request.app.state.registry = ReservationRegistry()
    return registry
