import hashlib
from typing import Dict, Iterable


def stable_hash(value: str) -> int:
    """md5-based hash that is identical across processes and restarts."""
    return int(hashlib.md5(value.encode("utf-8")).hexdigest(), 16)


class HashPartitioner:
    """Assigns keys to one of ``partition_count`` buckets by hash modulo."""

    def __init__(self, partition_count: int):
        if partition_count < 1:
            raise ValueError("partition_count must be at least 1")
        self.partition_count = partition_count

    def assign(self, key: str) -> int:
        return stable_hash(key) % self.partition_count

    def distribution(self, keys: Iterable[str]) -> Dict[int, int]:
        counts: Dict[int, int] = {}
        for key in keys:
            partition = self.assign(key)
            counts[partition] = counts.get(partition, 0) + 1
        return counts
