from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterator, Optional

from .config import PipelineConfig
from .errors import PipelineError, TransientScanError
from .hashing import HashPartitioner
from .lookup import Lookup
from .models import SourceRecord, ensure_utc
from .sequencer import bucket_end, truncate
from .sources import Source


@dataclass
class ScanStats:
    rows_scanned: int = 0
    rows_matched: int = 0
    rows_excluded: int = 0


def _partition_key(record: SourceRecord) -> str:
    return record.partition_key


class ScanStage:
    """Reads the source rows that belong to exactly one bucket.

    The full bucket predicate is applied here on top of whatever the source
    hands back, so a badly clustered source is slow but never wrong.
    """

    def __init__(
        self,
        source: Source,
        lookup: Lookup,
        config: PipelineConfig,
        lookup_key: Callable[[SourceRecord], str] = _partition_key,
    ):
        self.source = source
        self.lookup = lookup
        self.config = config
        self.lookup_key = lookup_key
        self.partitioner = HashPartitioner(config.partition_count)

    def scan(
        self,
        interval: datetime,
        partition: int,
        stats: Optional[ScanStats] = None,
    ) -> Iterator[SourceRecord]:
        """Yield the rows of ``(interval, partition)`` in source order.

        Nothing is written anywhere, so the same bucket can be scanned again
        after a failure.
        """
        interval = ensure_utc(interval)
        if truncate(interval, self.config.granularity) != interval:
            raise ValueError(f"Interval {interval.isoformat()} is not aligned to {self.config.granularity}")
        if not 0 <= partition < self.config.partition_count:
            raise ValueError(f"Partition {partition} outside [0, {self.config.partition_count})")

        stats = stats if stats is not None else ScanStats()
        end = bucket_end(interval, self.config.granularity)
        for record in self._fetch(partition, interval, end):
            stats.rows_scanned += 1
            if self.partitioner.assign(record.partition_key) != partition:
                continue
            if truncate(record.event_timestamp, self.config.granularity) != interval:
                continue
            if self.lookup.excluded(self.lookup_key(record)):
                stats.rows_excluded += 1
                continue
            stats.rows_matched += 1
            yield record

    def _fetch(self, partition: int, start: datetime, end: datetime) -> Iterator[SourceRecord]:
        try:
            yield from self.source.fetch_bucket(partition, start, end)
        except PipelineError:
            raise
        except Exception as exc:
            raise TransientScanError(f"Source read failed for partition {partition}: {exc}") from exc
