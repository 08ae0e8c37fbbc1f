"""Restriction keys.

A limit declaration maps period descriptors to caps::

    {"per_hour": 10, "per_300": 2, "per_minute_and_region": 5, "concurrent": 1}

Each descriptor resolves to a store key
``restriction:<identifier>[:<custom value>]:<bucket>`` whose bucket is ``*``
for ``concurrent``, the epoch divided by the window length for fixed windows,
and a UTC calendar string for ``per_month``/``per_year``.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Mapping, Optional, Sequence

from jobgate.rl.errors import InvalidLimitError

RESTRICTION_PREFIX = "restriction"
CONCURRENT = "concurrent"
CUSTOM_KEY_SEPARATOR = "_and_"

SECONDS = {
    "per_second": 1,
    "per_minute": 60,
    "per_hour": 60 * 60,
    "per_day": 24 * 60 * 60,
    "per_week": 7 * 24 * 60 * 60,
    # calendar windows expire after a fixed upper bound, not at the calendar edge
    "per_month": 31 * 24 * 60 * 60,
    "per_year": 366 * 24 * 60 * 60,
}

CALENDAR_FORMATS = {
    "per_month": "%Y-%m",
    "per_year": "%Y",
}

_ARBITRARY_PERIOD = re.compile(r"^per_(\d+)$")


@dataclass(frozen=True)
class Period:
    descriptor: str
    name: str
    seconds: Optional[int] = None
    calendar_format: Optional[str] = None
    custom_field: Optional[str] = None

    @property
    def is_concurrent(self) -> bool:
        return self.name == CONCURRENT


@dataclass(frozen=True)
class Limit:
    period: Period
    cap: int


@lru_cache(maxsize=512)
def parse_period(descriptor: str) -> Period:
    if not isinstance(descriptor, str) or not descriptor:
        raise InvalidLimitError(descriptor, "period descriptor must be a string")
    # segments after the first field are ignored: "per_hour_and_a_and_b" keys on "a"
    name, *fields = descriptor.split(CUSTOM_KEY_SEPARATOR)
    if fields and not fields[0]:
        raise InvalidLimitError(descriptor, "custom key suffix names no field")
    custom_field = fields[0] if fields else None

    if name == CONCURRENT:
        return Period(descriptor, name, custom_field=custom_field)
    if name in SECONDS:
        return Period(
            descriptor,
            name,
            seconds=SECONDS[name],
            calendar_format=CALENDAR_FORMATS.get(name),
            custom_field=custom_field,
        )
    m = _ARBITRARY_PERIOD.match(name)
    if m is None:
        raise InvalidLimitError(descriptor, "unknown period")
    seconds = int(m.group(1))
    if seconds <= 0:
        raise InvalidLimitError(descriptor, "window must be a positive number of seconds")
    return Period(descriptor, name, seconds=seconds, custom_field=custom_field)


def parse_limits(limits: Mapping[str, Any]) -> list[Limit]:
    if not isinstance(limits, Mapping):
        raise InvalidLimitError(limits, "limits must be a mapping of period to cap")
    parsed = []
    concurrent = None
    for descriptor, cap in limits.items():
        period = parse_period(descriptor)
        if period.is_concurrent:
            # one slot per job; a second descriptor would need a second limiter
            if concurrent is not None:
                raise InvalidLimitError(
                    descriptor,
                    f"only one concurrent limit allowed, already have {concurrent!r}",
                )
            concurrent = descriptor
        if isinstance(cap, bool) or not isinstance(cap, int):
            raise InvalidLimitError(descriptor, f"cap must be an integer, got {cap!r}")
        if cap < 0:
            raise InvalidLimitError(descriptor, "cap must not be negative")
        parsed.append(Limit(period, cap))
    return parsed


def _as_period(period: Period | str) -> Period:
    return period if isinstance(period, Period) else parse_period(period)


def window_seconds(period: Period | str) -> Optional[int]:
    return _as_period(period).seconds


def period_bucket(period: Period | str, now: float | None = None) -> str:
    p = _as_period(period)
    if p.is_concurrent:
        return "*"
    if now is None:
        now = time.time()
    if p.calendar_format:
        return datetime.fromtimestamp(now, tz=timezone.utc).strftime(p.calendar_format)
    return str(int(now) // p.seconds)


def custom_value(period: Period, args: Sequence[Any]) -> Optional[str]:
    if not period.custom_field or not args or not isinstance(args[0], Mapping):
        return None
    value = args[0].get(period.custom_field)
    return None if value is None else str(value)


def restriction_key(
    identifier: str,
    period: Period | str,
    args: Sequence[Any] = (),
    now: float | None = None,
) -> str:
    p = _as_period(period)
    parts = [RESTRICTION_PREFIX, identifier, custom_value(p, args), period_bucket(p, now)]
    return ":".join(part for part in parts if part is not None)
