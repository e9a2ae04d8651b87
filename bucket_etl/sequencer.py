"""Pure bucket arithmetic: where a pipeline goes after its current checkpoint.

Buckets are visited interval by interval, and inside an interval partition
by partition: ``(i, 0) .. (i, N-1), (i+g, 0) ..``. A bucket is only handed
out once its interval has closed and ``lookback`` more has passed, so rows
stamped anywhere inside the interval get ``lookback`` to land.
"""
from datetime import datetime, timedelta
from typing import Union

from .models import EPOCH, Bucket, ensure_utc


class CaughtUp:
    """Returned by :func:`next_bucket` when the next bucket is not eligible yet."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CAUGHT_UP"


CAUGHT_UP = CaughtUp()


def truncate(ts: datetime, granularity: timedelta) -> datetime:
    """Floor ``ts`` to a multiple of ``granularity`` counted from the Unix epoch."""
    if granularity <= timedelta(0):
        raise ValueError("granularity must be positive")
    ts = ensure_utc(ts)
    return ts - (ts - EPOCH) % granularity


def bucket_end(interval: datetime, granularity: timedelta) -> datetime:
    return ensure_utc(interval) + granularity


def horizon(now: datetime, lookback: timedelta, granularity: timedelta) -> datetime:
    """First interval that is not yet eligible at ``now``; everything before it is."""
    return truncate(ensure_utc(now) - lookback, granularity)


def bootstrap_position(interval: datetime, granularity: timedelta) -> Bucket:
    """Position that makes the first :func:`next_bucket` call yield ``(interval, 0)``."""
    return Bucket(truncate(interval, granularity), -1)


def next_bucket(
    position: Bucket,
    now: datetime,
    lookback: timedelta,
    granularity: timedelta,
    partition_count: int,
) -> Union[Bucket, CaughtUp]:
    interval, partition = position
    if partition_count < 1:
        raise ValueError("partition_count must be at least 1")
    if not -1 <= partition < partition_count:
        raise ValueError(f"partition {partition} outside [-1, {partition_count})")

    interval = ensure_utc(interval)
    if partition == partition_count - 1:
        candidate = Bucket(interval + granularity, 0)
    else:
        candidate = Bucket(interval, partition + 1)

    if candidate.interval >= horizon(now, lookback, granularity):
        return CAUGHT_UP
    return candidate
