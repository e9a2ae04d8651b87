import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_micros(value: datetime) -> int:
    """Microseconds since the Unix epoch, the storage format of every timestamp column."""
    delta = ensure_utc(value) - EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1_000_000 + delta.microseconds


def from_micros(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=value)


class Bucket(NamedTuple):
    """One cell of the (interval x partition) grid, ordered by interval first."""

    interval: datetime
    partition: int


class Checkpoint(BaseModel):
    """Immutable record of the furthest bucket a pipeline fully processed."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    interval: datetime
    partition: int = Field(ge=0)
    recorded_at: datetime
    sequence_no: int

    @field_validator("interval", "recorded_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @property
    def bucket(self) -> Bucket:
        return Bucket(self.interval, self.partition)


class SourceRecord(BaseModel):
    """Append-only upstream row."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    partition_key: str
    event_timestamp: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)
    status: str = "active"

    @field_validator("event_timestamp")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class DerivedRecord(BaseModel):
    """Transformed row annotated with the bucket it was derived from."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    destination: str
    interval: datetime
    partition: int
    record_id: str
    payload: Dict[str, Any]


class HeartbeatRecord(BaseModel):
    """Provenance-only marker written when a bucket produced no rows."""

    model_config = ConfigDict(frozen=True)

    pipeline_id: str
    destination: str
    interval: datetime
    partition: int


class SinkBatch(BaseModel):
    """Everything one destination receives for one bucket."""

    pipeline_id: str
    destination: str
    interval: datetime
    partition: int
    records: List[DerivedRecord] = Field(default_factory=list)

    @property
    def is_heartbeat(self) -> bool:
        return not self.records

    def heartbeat(self) -> HeartbeatRecord:
        return HeartbeatRecord(
            pipeline_id=self.pipeline_id,
            destination=self.destination,
            interval=self.interval,
            partition=self.partition,
        )


class TickOutcome(str, Enum):
    PROCESSED = "processed"
    HEARTBEAT = "heartbeat"
    CAUGHT_UP = "caught_up"
    SCAN_FAILED = "scan_failed"
    SINK_FAILED = "sink_failed"
    CURSOR_UNAVAILABLE = "cursor_unavailable"
    CHECKPOINT_FAILED = "checkpoint_failed"


class TickMetrics(BaseModel):
    """Per-tick observation handed to the metrics collaborator."""

    pipeline_id: str
    outcome: TickOutcome
    started_at: datetime
    duration_seconds: float
    interval: Optional[datetime] = None
    partition: Optional[int] = None
    rows_scanned: int = 0
    rows_written: int = 0
    rows_excluded: int = 0
    transform_errors: int = 0
    consecutive_failures: int = 0
    escalated: bool = False
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (TickOutcome.PROCESSED, TickOutcome.HEARTBEAT)
