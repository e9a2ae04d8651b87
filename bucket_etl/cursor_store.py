import itertools
import os
import sqlite3
import threading
from datetime import datetime
from typing import Callable, Dict, List, Optional, Protocol, Union

from .errors import CheckpointConflictError, CheckpointWriteError, CursorReadError
from .models import Bucket, Checkpoint, ensure_utc, from_micros, to_micros, utc_now


class _NoExpectation:
    def __repr__(self) -> str:
        return "NO_EXPECTATION"


NO_EXPECTATION = _NoExpectation()

Expected = Union[Checkpoint, None, _NoExpectation]


class CursorStore(Protocol):
    def get_latest(self, pipeline_id: str) -> Optional[Checkpoint]:
        ...

    def append(
        self,
        pipeline_id: str,
        interval: datetime,
        partition: int,
        expected: Expected = NO_EXPECTATION,
    ) -> Checkpoint:
        ...

    def history(self, pipeline_id: str, limit: int = 50) -> List[Checkpoint]:
        ...


def _validate_append(
    pipeline_id: str,
    latest: Optional[Checkpoint],
    bucket: Bucket,
    expected: Expected,
    partition_count: Optional[int],
) -> None:
    if bucket.partition < 0 or (partition_count is not None and bucket.partition >= partition_count):
        raise CheckpointConflictError(
            f"Partition {bucket.partition} outside [0, {partition_count}) for '{pipeline_id}'"
        )
    if not isinstance(expected, _NoExpectation):
        expected_seq = expected.sequence_no if expected is not None else None
        latest_seq = latest.sequence_no if latest is not None else None
        if expected_seq != latest_seq:
            raise CheckpointConflictError(
                f"Cursor for '{pipeline_id}' moved: expected sequence {expected_seq}, found {latest_seq}"
            )
    if latest is not None and bucket <= latest.bucket:
        raise CheckpointConflictError(
            f"Checkpoint ({bucket.interval.isoformat()}, {bucket.partition}) does not advance "
            f"past ({latest.interval.isoformat()}, {latest.partition}) for '{pipeline_id}'"
        )


class InMemoryCursorStore:
    """Process-local append-only checkpoint log."""

    def __init__(
        self,
        partition_count: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.partition_count = partition_count
        self.clock = clock
        self._records: Dict[str, List[Checkpoint]] = {}
        self._sequence = itertools.count(1)
        self._lock = threading.Lock()

    @staticmethod
    def _latest(records: List[Checkpoint]) -> Optional[Checkpoint]:
        if not records:
            return None
        return max(records, key=lambda c: (c.recorded_at, c.sequence_no))

    def get_latest(self, pipeline_id: str) -> Optional[Checkpoint]:
        with self._lock:
            return self._latest(self._records.get(pipeline_id, []))

    def append(
        self,
        pipeline_id: str,
        interval: datetime,
        partition: int,
        expected: Expected = NO_EXPECTATION,
    ) -> Checkpoint:
        bucket = Bucket(ensure_utc(interval), partition)
        with self._lock:
            records = self._records.setdefault(pipeline_id, [])
            latest = self._latest(records)
            _validate_append(pipeline_id, latest, bucket, expected, self.partition_count)
            recorded_at = ensure_utc(self.clock())
            if latest is not None and recorded_at < latest.recorded_at:
                recorded_at = latest.recorded_at
            checkpoint = Checkpoint(
                pipeline_id=pipeline_id,
                interval=bucket.interval,
                partition=bucket.partition,
                recorded_at=recorded_at,
                sequence_no=next(self._sequence),
            )
            records.append(checkpoint)
            return checkpoint

    def history(self, pipeline_id: str, limit: int = 50) -> List[Checkpoint]:
        with self._lock:
            records = sorted(
                self._records.get(pipeline_id, []),
                key=lambda c: (c.recorded_at, c.sequence_no),
                reverse=True,
            )
        return records[:limit]


class SQLiteCursorStore:
    """SQLite-backed checkpoint log; the latest row wins by (recorded_at, sequence_no)."""

    def __init__(
        self,
        db_path: str,
        partition_count: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if db_path != ":memory:":
            os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self.partition_count = partition_count
        self.clock = clock
        self.conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_table()

    def _init_table(self) -> None:
        self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS checkpoints (
                sequence_no INTEGER PRIMARY KEY AUTOINCREMENT,
                pipeline_id TEXT NOT NULL,
                interval_start INTEGER NOT NULL,
                partition_no INTEGER NOT NULL,
                recorded_at INTEGER NOT NULL
            );
            """
        )
        self.conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_checkpoints_latest
            ON checkpoints (pipeline_id, recorded_at, sequence_no);
            """
        )

    @staticmethod
    def _row_to_checkpoint(row: sqlite3.Row) -> Checkpoint:
        return Checkpoint(
            pipeline_id=row["pipeline_id"],
            interval=from_micros(row["interval_start"]),
            partition=row["partition_no"],
            recorded_at=from_micros(row["recorded_at"]),
            sequence_no=row["sequence_no"],
        )

    def _select_latest(self, pipeline_id: str) -> Optional[Checkpoint]:
        row = self.conn.execute(
            """
            SELECT sequence_no, pipeline_id, interval_start, partition_no, recorded_at
            FROM checkpoints
            WHERE pipeline_id = ?
            ORDER BY recorded_at DESC, sequence_no DESC
            LIMIT 1
            """,
            (pipeline_id,),
        ).fetchone()
        return self._row_to_checkpoint(row) if row else None

    def get_latest(self, pipeline_id: str) -> Optional[Checkpoint]:
        try:
            with self._lock:
                return self._select_latest(pipeline_id)
        except sqlite3.Error as exc:
            raise CursorReadError(f"Failed to read cursor for '{pipeline_id}': {exc}") from exc

    def append(
        self,
        pipeline_id: str,
        interval: datetime,
        partition: int,
        expected: Expected = NO_EXPECTATION,
    ) -> Checkpoint:
        bucket = Bucket(ensure_utc(interval), partition)
        with self._lock:
            try:
                self.conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise CheckpointWriteError(f"Failed to lock cursor for '{pipeline_id}': {exc}") from exc
            try:
                latest = self._select_latest(pipeline_id)
                _validate_append(pipeline_id, latest, bucket, expected, self.partition_count)
                recorded_at = to_micros(self.clock())
                if latest is not None:
                    recorded_at = max(recorded_at, to_micros(latest.recorded_at))
                cursor = self.conn.execute(
                    """
                    INSERT INTO checkpoints (pipeline_id, interval_start, partition_no, recorded_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (pipeline_id, to_micros(bucket.interval), bucket.partition, recorded_at),
                )
                self.conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self.conn.execute("ROLLBACK")
                raise CheckpointWriteError(f"Failed to append cursor for '{pipeline_id}': {exc}") from exc
            except CheckpointConflictError:
                self.conn.execute("ROLLBACK")
                raise
        return Checkpoint(
            pipeline_id=pipeline_id,
            interval=bucket.interval,
            partition=bucket.partition,
            recorded_at=from_micros(recorded_at),
            sequence_no=cursor.lastrowid,
        )

    def history(self, pipeline_id: str, limit: int = 50) -> List[Checkpoint]:
        try:
            with self._lock:
                rows = self.conn.execute(
                    """
                    SELECT sequence_no, pipeline_id, interval_start, partition_no, recorded_at
                    FROM checkpoints
                    WHERE pipeline_id = ?
                    ORDER BY recorded_at DESC, sequence_no DESC
                    LIMIT ?
                    """,
                    (pipeline_id, limit),
                ).fetchall()
        except sqlite3.Error as exc:
            raise CursorReadError(f"Failed to read cursor history for '{pipeline_id}': {exc}") from exc
        return [self._row_to_checkpoint(row) for row in rows]

    def close(self) -> None:
        self.conn.close()


def create_cursor_store(
    backend: str,
    path: str,
    partition_count: Optional[int] = None,
    clock: Callable[[], datetime] = utc_now,
) -> CursorStore:
    backend = backend.lower()
    if backend == "sqlite":
        return SQLiteCursorStore(path, partition_count=partition_count, clock=clock)
    return InMemoryCursorStore(partition_count=partition_count, clock=clock)
