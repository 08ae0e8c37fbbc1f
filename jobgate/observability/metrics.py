from __future__ import annotations

from prometheus_client import Counter, Histogram, Gauge

from jobgate.core.config import settings

_NS = settings.METRICS_NAMESPACE

ADMISSIONS_TOTAL = Counter(
    "admissions_total",
    "Admission decisions by outcome",
    labelnames=("outcome",),
    namespace=_NS,
)

DECISION_LATENCY_MS = Histogram(
    "decision_latency_ms",
    "Admission decision latency in milliseconds",
    namespace=_NS,
)

ROLLBACKS_TOTAL = Counter(
    "rollbacks_total",
    "Rate counter keys decremented after a refused admission",
    namespace=_NS,
)

STALE_SLOTS_EVICTED = Counter(
    "stale_slots_evicted_total",
    "Concurrency slots removed by maintenance sweeps",
    namespace=_NS,
)

SLOTS_HELD = Gauge(
    "concurrency_slots_held",
    "Concurrency slots currently held by this process",
    namespace=_NS,
)

OVERFLOW_PUSHES = Counter(
    "overflow_pushes_total",
    "Jobs pushed to an overflow queue",
    labelnames=("queue",),
    namespace=_NS,
)

REDIS_POOL_IN_USE = Gauge(
    "redis_pool_in_use",
    "Approximate number of Redis pool connections in use",
    namespace=_NS,
)


def update_redis_pool_gauge(redis_client) -> None:
    pool = getattr(redis_client, "connection_pool", None)
    if pool is None:
        return
    in_use = 0
    # attribute names differ across redis-py versions
    if hasattr(pool, "_in_use_connections"):
        in_use = len(pool._in_use_connections)  # type: ignore[attr-defined]
    elif hasattr(pool, "_created_connections") and hasattr(
        pool, "_available_connections"
    ):
        created = pool._created_connections  # type: ignore[attr-defined]
        if not isinstance(created, int):
            created = len(created)
        available = len(pool._available_connections)  # type: ignore[attr-defined]
        in_use = max(created - available, 0)
    REDIS_POOL_IN_USE.set(in_use)
