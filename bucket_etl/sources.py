"""Append-only source collaborators.

The scan stage reads one bucket at a time, so a source has to be physically
clustered by ``(partition, interval)``. Without that, reading a bucket means
reading its whole partition and filtering, and a tick that should take
milliseconds takes minutes. Both backends here keep such a clustering;
``InMemorySource(clustered=False)`` deliberately drops the interval part of it.
"""
import json
import os
import random
import sqlite3
import string
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from .config import PipelineConfig
from .errors import TransientScanError
from .hashing import HashPartitioner
from .models import SourceRecord, ensure_utc, from_micros, to_micros
from .sequencer import truncate


def _random_word(length: int = 6) -> str:
    return "".join(random.choices(string.ascii_lowercase, k=length))


class Source(Protocol):
    def fetch_bucket(self, partition: int, start: datetime, end: datetime) -> Iterator[SourceRecord]:
        ...

    def append(self, record: SourceRecord) -> SourceRecord:
        ...

    def stats(self) -> Dict[str, Any]:
        ...


class InMemorySource:
    """In-memory stand-in for the upstream event table."""

    def __init__(self, layout: PipelineConfig, clustered: bool = True):
        self.layout = layout
        self.clustered = clustered
        self.partitioner = HashPartitioner(layout.partition_count)
        self.rows_read = 0
        self._rows: List[SourceRecord] = []
        self._index: Dict[Tuple[Any, ...], List[int]] = {}
        self._lock = threading.Lock()

    def _cluster_key(self, partition: int, interval: datetime) -> Tuple[Any, ...]:
        if self.clustered:
            return (partition, interval)
        return (partition,)

    def append(self, record: SourceRecord) -> SourceRecord:
        partition = self.partitioner.assign(record.partition_key)
        interval = truncate(record.event_timestamp, self.layout.granularity)
        with self._lock:
            self._rows.append(record)
            self._index.setdefault(self._cluster_key(partition, interval), []).append(len(self._rows) - 1)
        return record

    def add(
        self,
        partition_key: str,
        event_timestamp: datetime,
        payload: Optional[Dict[str, Any]] = None,
        status: str = "active",
    ) -> SourceRecord:
        return self.append(
            SourceRecord(
                partition_key=partition_key,
                event_timestamp=event_timestamp,
                payload=payload or {},
                status=status,
            )
        )

    def seed(self, count: int, now: datetime) -> None:
        for _ in range(count):
            self.add(
                partition_key=f"user-{random.randint(0, 999)}",
                event_timestamp=ensure_utc(now) - timedelta(seconds=random.randint(0, 3 * 3600)),
                payload={
                    "title": _random_word(),
                    "category": random.choice(["alpha", "beta", "gamma"]),
                },
                status=random.choice(["active", "active", "active", "deleted"]),
            )

    def fetch_bucket(self, partition: int, start: datetime, end: datetime) -> Iterator[SourceRecord]:
        start, end = ensure_utc(start), ensure_utc(end)
        with self._lock:
            positions = list(self._index.get(self._cluster_key(partition, start), ()))
            rows = [self._rows[pos] for pos in positions]
            self.rows_read += len(rows)
        for row in rows:
            if start <= row.event_timestamp < end:
                yield row

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "backend": "memory",
                "rows": len(self._rows),
                "clusters": len(self._index),
                "clustered": self.clustered,
            }

    def __len__(self) -> int:
        return len(self._rows)


class SQLiteSource:
    """SQLite-backed event table indexed by (partition, interval)."""

    def __init__(self, db_path: str, layout: PipelineConfig):
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self.layout = layout
        self.partitioner = HashPartitioner(layout.partition_count)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_table()

    def _init_table(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS source_events (
                row_id INTEGER PRIMARY KEY AUTOINCREMENT,
                record_id TEXT NOT NULL UNIQUE,
                partition_key TEXT NOT NULL,
                event_ts INTEGER NOT NULL,
                payload TEXT NOT NULL,
                status TEXT NOT NULL,
                partition_no INTEGER NOT NULL,
                interval_start INTEGER NOT NULL
            );
            """
        )
        self.conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_source_events_bucket
            ON source_events (partition_no, interval_start, row_id);
            """
        )
        self.conn.commit()

    def append(self, record: SourceRecord) -> SourceRecord:
        interval = truncate(record.event_timestamp, self.layout.granularity)
        with self._lock:
            self.conn.execute(
                """
                INSERT INTO source_events
                    (record_id, partition_key, event_ts, payload, status, partition_no, interval_start)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.record_id,
                    record.partition_key,
                    to_micros(record.event_timestamp),
                    json.dumps(record.payload, sort_keys=True),
                    record.status,
                    self.partitioner.assign(record.partition_key),
                    to_micros(interval),
                ),
            )
            self.conn.commit()
        return record

    def fetch_bucket(self, partition: int, start: datetime, end: datetime) -> Iterator[SourceRecord]:
        try:
            with self._lock:
                rows = self.conn.execute(
                    """
                    SELECT record_id, partition_key, event_ts, payload, status
                    FROM source_events
                    WHERE partition_no = ? AND interval_start = ?
                      AND event_ts >= ? AND event_ts < ?
                    ORDER BY row_id
                    """,
                    (
                        partition,
                        to_micros(truncate(start, self.layout.granularity)),
                        to_micros(start),
                        to_micros(end),
                    ),
                ).fetchall()
        except sqlite3.Error as exc:
            raise TransientScanError(f"Source unavailable: {exc}") from exc
        for row in rows:
            yield SourceRecord(
                record_id=row["record_id"],
                partition_key=row["partition_key"],
                event_timestamp=from_micros(row["event_ts"]),
                payload=json.loads(row["payload"]),
                status=row["status"],
            )

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            row = self.conn.execute("SELECT COUNT(*) AS c FROM source_events").fetchone()
        return {"backend": "sqlite", "rows": row["c"], "clustered": True}

    def close(self) -> None:
        self.conn.close()


def create_source(backend: str, path: str, layout: PipelineConfig) -> Source:
    backend = backend.lower()
    if backend == "sqlite":
        return SQLiteSource(path, layout)
    return InMemorySource(layout)
