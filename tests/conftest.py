import os
import sys
import pytest
import pytest_asyncio

# Ensure project root on path
sys.path.insert(0, os.getcwd())

import httpx

from jobgate.main import app
from jobgate.core.config import Settings
from jobgate.core.deps import get_redis as _get_redis_dep
from jobgate.rl.registry import ReservationRegistry

# 2020-07-02T19:53:00Z
EPOCH = 1593719580


class FakeClock:
    def __init__(self, now: float = EPOCH):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ListOverflow:
    def __init__(self):
        self.pushes = []

    async def push(self, job_class, args):
        self.pushes.append((job_class, list(args)))


class FailingOverflow:
    async def push(self, job_class, args):
        raise ConnectionError("overflow store down")


@pytest_asyncio.fixture()
async def fake_redis():
    try:
        from fakeredis.aioredis import FakeRedis
    except Exception as e:
        pytest.skip(f"fakeredis not available: {e}")
    r = FakeRedis(decode_responses=True)
    await r.flushall()
    yield r
    await r.aclose()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def overflow():
    return ListOverflow()


@pytest.fixture()
def failing_overflow():
    return FailingOverflow()


@pytest.fixture()
def test_settings():
    # no random maintenance sweeps unless a test asks for one
    return Settings(MAINTENANCE_PROBABILITY=0.0)


@pytest_asyncio.fixture()
async def async_client(fake_redis):
    app.state._test_redis = fake_redis
    registry = app.state.registry = ReservationRegistry()

    from fastapi import Request

    async def _override_get_redis(request: Request):
        return request.app.state._test_redis

    app.dependency_overrides[_get_redis_dep] = _override_get_redis

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    await registry.release_all()
    app.dependency_overrides.clear()
