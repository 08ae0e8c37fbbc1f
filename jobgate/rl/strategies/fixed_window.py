from typing import Iterable, Tuple
from redis.asyncio import Redis
from redis.exceptions import RedisError
from jobgate.core.logging import get_logger
from jobgate.observability.metrics import ROLLBACKS_TOTAL
from jobgate.rl.errors import RollbackError
from jobgate.rl.schemas import CounterDecision

log = get_logger("rl.fixed_window")


async def try_increment(
    redis: Redis,
    key: str,
    *,
    limit: int,
    window_sec: int,
) -> CounterDecision:
    # The caller that creates the window sets its TTL. Later increments leave
    # the TTL alone so the window never slides on traffic.
    created = await redis.set(key, 1, nx=True)
    if created:
        await redis.expire(key, window_sec)
        return CounterDecision(admitted=True, count=1, limit=limit, key=key)

    count = int(await redis.incrby(key, 1))
    # a refused caller still holds its increment until rollback() runs
    return CounterDecision(admitted=count <= limit, count=count, limit=limit, key=key)


async def rollback(redis: Redis, key: str, *, window_sec: int) -> None:
    await rollback_many(redis, [(key, window_sec)])


async def rollback_many(redis: Redis, entries: Iterable[Tuple[str, int]]) -> None:
    """Undo one increment per key in a single pipelined round trip.

    The expiry is re-applied because the key may have expired between the
    increment and the decrement, which would otherwise leave behind a
    ``-1`` counter with no TTL.
    """
    entries = list(entries)
    if not entries:
        return
    keys = [key for key, _ in entries]
    pipe = redis.pipeline(transaction=False)
    for key, window_sec in entries:
        pipe.incrby(key, -1)
        pipe.expire(key, window_sec)
    try:
        results = await pipe.execute(raise_on_error=False)
    except RedisError as exc:
        log.bind(keys=keys).opt(exception=exc).error("restriction.rollback_failed")
        raise RollbackError(keys, [exc]) from exc

    errors = [r for r in results if isinstance(r, Exception)]
    if errors:
        log.bind(keys=keys, errors=[str(e) for e in errors]).error(
            "restriction.rollback_failed"
        )
        raise RollbackError(keys, errors) from errors[0]
    ROLLBACKS_TOTAL.inc(len(entries))
    log.bind(keys=keys).debug("restriction.rollback")


async def current_count(redis: Redis, key: str) -> int:
    value = await redis.get(key)
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
