import json
import os
import sqlite3
import threading
from typing import Any, Dict, List, Protocol

from .models import DerivedRecord, HeartbeatRecord, SinkBatch, from_micros, to_micros


class Warehouse(Protocol):
    def append_batch(self, batch: SinkBatch) -> int:
        ...

    def snapshot(self, limit: int = 50) -> List[DerivedRecord]:
        ...

    def heartbeats(self, limit: int = 50) -> List[HeartbeatRecord]:
        ...

    def metrics(self) -> Dict[str, Any]:
        ...


class InMemoryWarehouse:
    """In-memory destination that keeps every delivery, duplicates included."""

    def __init__(self):
        self.rows: List[DerivedRecord] = []
        self.heartbeat_rows: List[HeartbeatRecord] = []
        self.batches_received = 0
        self._lock = threading.Lock()

    def append_batch(self, batch: SinkBatch) -> int:
        with self._lock:
            self.batches_received += 1
            if batch.is_heartbeat:
                self.heartbeat_rows.append(batch.heartbeat())
                return 0
            self.rows.extend(batch.records)
            return len(batch.records)

    def snapshot(self, limit: int = 50) -> List[DerivedRecord]:
        with self._lock:
            return self.rows[-limit:]

    def heartbeats(self, limit: int = 50) -> List[HeartbeatRecord]:
        with self._lock:
            return self.heartbeat_rows[-limit:]

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "backend": "memory",
                "rows": len(self.rows),
                "heartbeats": len(self.heartbeat_rows),
                "batches_received": self.batches_received,
            }


class SQLiteWarehouse:
    """SQLite-backed destination; redelivered rows for the same bucket overwrite themselves."""

    def __init__(self, db_path: str):
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_tables()

    def _init_tables(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS derived_records (
                pipeline_id TEXT NOT NULL,
                destination TEXT NOT NULL,
                interval_start INTEGER NOT NULL,
                partition_no INTEGER NOT NULL,
                record_id TEXT NOT NULL,
                payload TEXT NOT NULL,
                delivered_seq INTEGER NOT NULL,
                PRIMARY KEY (pipeline_id, destination, interval_start, partition_no, record_id)
            );
            """
        )
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS heartbeats (
                pipeline_id TEXT NOT NULL,
                destination TEXT NOT NULL,
                interval_start INTEGER NOT NULL,
                partition_no INTEGER NOT NULL,
                delivered_seq INTEGER NOT NULL,
                PRIMARY KEY (pipeline_id, destination, interval_start, partition_no)
            );
            """
        )
        self.conn.commit()

    def _next_seq(self) -> int:
        row = self.conn.execute(
            """
            SELECT MAX(seq) AS s FROM (
                SELECT MAX(delivered_seq) AS seq FROM derived_records
                UNION ALL
                SELECT MAX(delivered_seq) AS seq FROM heartbeats
            )
            """
        ).fetchone()
        return (row["s"] or 0) + 1

    def append_batch(self, batch: SinkBatch) -> int:
        with self._lock, self.conn:
            seq = self._next_seq()
            if batch.is_heartbeat:
                self.conn.execute(
                    """
                    INSERT OR REPLACE INTO heartbeats
                        (pipeline_id, destination, interval_start, partition_no, delivered_seq)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (batch.pipeline_id, batch.destination, to_micros(batch.interval), batch.partition, seq),
                )
                return 0
            self.conn.executemany(
                """
                INSERT OR REPLACE INTO derived_records
                    (pipeline_id, destination, interval_start, partition_no, record_id, payload, delivered_seq)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        record.pipeline_id,
                        record.destination,
                        to_micros(record.interval),
                        record.partition,
                        record.record_id,
                        json.dumps(record.payload, sort_keys=True),
                        seq,
                    )
                    for record in batch.records
                ],
            )
            return len(batch.records)

    def snapshot(self, limit: int = 50) -> List[DerivedRecord]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT pipeline_id, destination, interval_start, partition_no, record_id, payload
                FROM derived_records
                ORDER BY delivered_seq DESC, record_id
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            DerivedRecord(
                pipeline_id=row["pipeline_id"],
                destination=row["destination"],
                interval=from_micros(row["interval_start"]),
                partition=row["partition_no"],
                record_id=row["record_id"],
                payload=json.loads(row["payload"]),
            )
            for row in rows
        ]

    def heartbeats(self, limit: int = 50) -> List[HeartbeatRecord]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT pipeline_id, destination, interval_start, partition_no
                FROM heartbeats
                ORDER BY delivered_seq DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            HeartbeatRecord(
                pipeline_id=row["pipeline_id"],
                destination=row["destination"],
                interval=from_micros(row["interval_start"]),
                partition=row["partition_no"],
            )
            for row in rows
        ]

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            rows = self.conn.execute("SELECT COUNT(*) AS c FROM derived_records").fetchone()
            beats = self.conn.execute("SELECT COUNT(*) AS c FROM heartbeats").fetchone()
        return {"backend": "sqlite", "rows": rows["c"], "heartbeats": beats["c"]}

    def close(self) -> None:
        self.conn.close()


def create_warehouse(backend: str, path: str) -> Warehouse:
    backend = backend.lower()
    if backend == "sqlite":
        return SQLiteWarehouse(path)
    return InMemoryWarehouse()
