import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from jobgate.core.config import settings
from jobgate.api.v1 import router as api_v1
from jobgate.observability.tracing import setup_tracing, instrument_fastapi
from jobgate.core.logging import setup_logging, get_logger
from jobgate.rl.registry import ReservationRegistry


setup_logging()
log = get_logger("jobgate.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    log.bind(
        env=settings.APP_ENV, version=settings.APP_VERSION, level=settings.LOG_LEVEL
    ).info("startup")
    setup_tracing()
    registry = app.state.registry = ReservationRegistry()
    stop = asyncio.Event()
    sweeper = asyncio.create_task(
        registry.sweep(settings.LEASE_SWEEP_INTERVAL, stop), name="registry-sweep"
    )
    yield
    stop.set()
    await sweeper
    # free slots still held by this process so they do not wait out the staleness window
    await registry.release_all()
    log.info("shutdown")


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)
app.include_router(api_v1, prefix="/v1")
app.mount("/metrics", make_asgi_app())
instrument_fastapi(app)
