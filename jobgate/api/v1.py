from fastapi import APIRouter, Depends, HTTPException, Response
from redis.asyncio import Redis

from jobgate.core.config import settings
from jobgate.core.deps import get_redis, get_registry
from jobgate.core.logging import get_logger
from jobgate.rl.coordinator import RestrictionCoordinator
from jobgate.rl.errors import OverflowPushError, RollbackError
from jobgate.rl.overflow import RedisOverflowQueue, restriction_queue_name
from jobgate.rl.registry import ReservationRegistry
from jobgate.rl.schemas import (
    AdmitRequest,
    AdmitResponse,
    PeekResponse,
    ReleaseRequest,
)

router = APIRouter()
log = get_logger("api.v1")


def _coordinator(redis: Redis, queue: str) -> RestrictionCoordinator:
    return RestrictionCoordinator(
        redis, RedisOverflowQueue(redis, restriction_queue_name(queue))
    )


@router.get("/health")
async def health():
    return {"status": "ok", "version": settings.APP_VERSION}


@router.post("/admit", response_model=AdmitResponse)
async def admit(
    payload: AdmitRequest,
    response: Response,
    redis: Redis = Depends(get_redis),
    registry: ReservationRegistry = Depends(get_registry),
):
    coordinator = _coordinator(redis, payload.queue)
    try:
        decision = await coordinator.admit(
            payload.job_class,
            payload.args,
            payload.limits,
            identifier=payload.identifier,
        )
    except RollbackError as exc:
        raise HTTPException(status_code=503, detail="restriction rollback failed") from exc
    except OverflowPushError as exc:
        raise HTTPException(status_code=503, detail="overflow queue unavailable") from exc

    log.bind(
        job_class=payload.job_class,
        admitted=decision.admitted,
        refused_by=decision.refused_by,
    ).info("admit")
    if not decision.admitted:
        response.status_code = 429
        return AdmitResponse(
            admitted=False,
            refused_by=decision.refused_by,
            deferred_to=restriction_queue_name(payload.queue),
        )
    return AdmitResponse(admitted=True, token=registry.hold(coordinator, decision.token))


@router.post("/release")
async def release(
    payload: ReleaseRequest,
    registry: ReservationRegistry = Depends(get_registry),
):
    if not await registry.release(payload.token):
        raise HTTPException(status_code=404, detail="Unknown token")
    log.info("release")
    return {"released": True}


@router.post("/peek", response_model=PeekResponse)
async def peek(
    payload: AdmitRequest,
    redis: Redis = Depends(get_redis),
):
    coordinator = _coordinator(redis, payload.queue)
    would_defer = await coordinator.would_defer(
        payload.job_class,
        payload.args,
        payload.limits,
        identifier=payload.identifier,
    )
    return PeekResponse(would_defer=would_defer)
