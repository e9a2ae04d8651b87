"""Shared helpers for the bucket ETL tests."""

from datetime import datetime, timedelta, timezone
from typing import List

from bucket_etl.hashing import HashPartitioner


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock shared by the scheduler and the cursor store."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


def keys_for_partition(partition: int, partition_count: int, count: int, prefix: str = "user") -> List[str]:
    """First ``count`` keys of the form ``prefix-i`` that hash into ``partition``."""
    partitioner = HashPartitioner(partition_count)
    keys: List[str] = []
    i = 0
    while len(keys) < count:
        key = f"{prefix}-{i}"
        if partitioner.assign(key) == partition:
            keys.append(key)
        i += 1
    return keys
