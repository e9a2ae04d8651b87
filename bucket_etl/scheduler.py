import asyncio
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Tuple

from .config import PipelineConfig
from .cursor_store import CursorStore
from .errors import (
    CheckpointWriteError,
    CursorReadError,
    PipelineError,
    PipelineHaltedError,
    SinkWriteError,
    StarvationError,
    TransientScanError,
)
from .logger import logger, measure_latency
from .metrics import MetricsRecorder
from .models import Bucket, Checkpoint, TickMetrics, TickOutcome, utc_now
from .scan import ScanStage, ScanStats
from .sequencer import CaughtUp, bootstrap_position, horizon, next_bucket
from .sink import SinkWriter
from .transform import TransformStage


class SchedulerState(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    HALTED = "halted"


class Scheduler:
    """Drives one pipeline through the bucket grid, one bucket per tick.

    A bucket that fails stays pinned until it succeeds; the cursor never
    skips ahead of it. After ``starvation_threshold`` consecutive failures the
    bucket is escalated but still retried.
    """

    def __init__(
        self,
        pipeline_id: str,
        config: PipelineConfig,
        cursor_store: CursorStore,
        scan_stage: ScanStage,
        transform_stage: TransformStage,
        sink_writer: SinkWriter,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], datetime] = utc_now,
        start_interval: Optional[datetime] = None,
        starvation_threshold: int = 10,
        on_escalation: Optional[Callable[[StarvationError], None]] = None,
    ):
        self.pipeline_id = pipeline_id
        self.config = config
        self.cursor_store = cursor_store
        self.scan_stage = scan_stage
        self.transform_stage = transform_stage
        self.sink_writer = sink_writer
        self.metrics = metrics
        self.clock = clock
        self.start_interval = start_interval
        self.starvation_threshold = starvation_threshold
        self.on_escalation = on_escalation

        self.state = SchedulerState.IDLE
        self.last_metrics: Optional[TickMetrics] = None
        self.consecutive_failures = 0
        self._pending: Optional[Bucket] = None
        self._tick_lock = threading.Lock()
        self._stopping = False

    @property
    def pending_bucket(self) -> Optional[Bucket]:
        return self._pending

    def tick(self) -> TickMetrics:
        """Process at most one bucket."""
        with self._tick_lock:
            if self.state is SchedulerState.HALTED:
                raise PipelineHaltedError(f"Pipeline '{self.pipeline_id}' is halted")
            self.state = SchedulerState.PROCESSING
            try:
                return self._run_unit()
            finally:
                if self.state is SchedulerState.PROCESSING:
                    self.state = SchedulerState.IDLE

    def _next_unit(self, now: datetime) -> Tuple[Optional[Bucket], Optional[Checkpoint]]:
        checkpoint = self.cursor_store.get_latest(self.pipeline_id)
        if self._pending is not None:
            return self._pending, checkpoint

        if checkpoint is not None:
            position = checkpoint.bucket
        else:
            start = self.start_interval
            if start is None:
                # newest interval that is already past the lookback window
                start = horizon(now, self.config.lookback, self.config.granularity) - self.config.granularity
            position = bootstrap_position(start, self.config.granularity)

        step = next_bucket(
            position,
            now,
            self.config.lookback,
            self.config.granularity,
            self.config.partition_count,
        )
        if isinstance(step, CaughtUp):
            return None, checkpoint
        return step, checkpoint

    def _run_unit(self) -> TickMetrics:
        started_at = self.clock()
        started = time.perf_counter()

        try:
            bucket, checkpoint = self._next_unit(started_at)
        except CursorReadError as exc:
            return self._fail(TickOutcome.CURSOR_UNAVAILABLE, None, exc, started_at, started)

        if bucket is None:
            return self._emit(
                TickMetrics(
                    pipeline_id=self.pipeline_id,
                    outcome=TickOutcome.CAUGHT_UP,
                    started_at=started_at,
                    duration_seconds=time.perf_counter() - started,
                )
            )

        stats = ScanStats()
        try:
            with measure_latency("scan_transform", pipeline_id=self.pipeline_id, partition=bucket.partition):
                records = self.scan_stage.scan(bucket.interval, bucket.partition, stats)
                result = self.transform_stage.apply(self.pipeline_id, bucket, records)
        except TransientScanError as exc:
            return self._fail(TickOutcome.SCAN_FAILED, bucket, exc, started_at, started, stats)

        try:
            self.sink_writer.write(
                self.pipeline_id,
                bucket.interval,
                bucket.partition,
                result.batches,
                expected=checkpoint,
            )
        except SinkWriteError as exc:
            return self._fail(TickOutcome.SINK_FAILED, bucket, exc, started_at, started, stats, result.errors)
        except CheckpointWriteError as exc:
            self.state = SchedulerState.HALTED
            self._pending = bucket
            metrics = TickMetrics(
                pipeline_id=self.pipeline_id,
                outcome=TickOutcome.CHECKPOINT_FAILED,
                started_at=started_at,
                duration_seconds=time.perf_counter() - started,
                interval=bucket.interval,
                partition=bucket.partition,
                rows_scanned=stats.rows_scanned,
                rows_written=result.rows,
                rows_excluded=stats.rows_excluded,
                transform_errors=result.errors,
                consecutive_failures=self.consecutive_failures + 1,
                error=str(exc),
            )
            self._emit(metrics)
            logger.critical(
                "checkpoint_write_failed",
                pipeline_id=self.pipeline_id,
                interval=bucket.interval.isoformat(),
                partition=bucket.partition,
                error=str(exc),
            )
            raise

        self._pending = None
        self.consecutive_failures = 0
        outcome = TickOutcome.PROCESSED if result.rows else TickOutcome.HEARTBEAT
        metrics = TickMetrics(
            pipeline_id=self.pipeline_id,
            outcome=outcome,
            started_at=started_at,
            duration_seconds=time.perf_counter() - started,
            interval=bucket.interval,
            partition=bucket.partition,
            rows_scanned=stats.rows_scanned,
            rows_written=result.rows,
            rows_excluded=stats.rows_excluded,
            transform_errors=result.errors,
        )
        logger.info(
            "bucket_processed",
            pipeline_id=self.pipeline_id,
            interval=bucket.interval.isoformat(),
            partition=bucket.partition,
            outcome=outcome.value,
            rows_scanned=stats.rows_scanned,
            rows_written=result.rows,
            transform_errors=result.errors,
        )
        return self._emit(metrics)

    def _fail(
        self,
        outcome: TickOutcome,
        bucket: Optional[Bucket],
        exc: PipelineError,
        started_at: datetime,
        started: float,
        stats: Optional[ScanStats] = None,
        transform_errors: int = 0,
    ) -> TickMetrics:
        if bucket is not None:
            self._pending = bucket
        self.consecutive_failures += 1
        escalated = self.consecutive_failures >= self.starvation_threshold
        stats = stats or ScanStats()
        logger.error(
            "tick_failed",
            pipeline_id=self.pipeline_id,
            outcome=outcome.value,
            interval=bucket.interval.isoformat() if bucket else None,
            partition=bucket.partition if bucket else None,
            consecutive_failures=self.consecutive_failures,
            error=str(exc),
        )
        if bucket is not None and self.consecutive_failures == self.starvation_threshold:
            self._escalate(bucket)
        return self._emit(
            TickMetrics(
                pipeline_id=self.pipeline_id,
                outcome=outcome,
                started_at=started_at,
                duration_seconds=time.perf_counter() - started,
                interval=bucket.interval if bucket else None,
                partition=bucket.partition if bucket else None,
                rows_scanned=stats.rows_scanned,
                rows_excluded=stats.rows_excluded,
                transform_errors=transform_errors,
                consecutive_failures=self.consecutive_failures,
                escalated=escalated,
                error=str(exc),
            )
        )

    def _escalate(self, bucket: Bucket) -> None:
        error = StarvationError(self.pipeline_id, bucket.interval, bucket.partition, self.consecutive_failures)
        logger.critical(
            "bucket_starved",
            pipeline_id=self.pipeline_id,
            interval=bucket.interval.isoformat(),
            partition=bucket.partition,
            failures=self.consecutive_failures,
        )
        if self.on_escalation is not None:
            self.on_escalation(error)

    def _emit(self, metrics: TickMetrics) -> TickMetrics:
        self.last_metrics = metrics
        if self.metrics is not None:
            self.metrics.record(metrics)
        return metrics

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """Tick every ``tick_period`` until stopped.

        Ticks run in a worker thread. Cancelling this coroutine does not
        interrupt a tick that is already writing.
        """
        self._stopping = False
        period = self.config.tick_period.total_seconds()
        ticks = 0
        logger.info("scheduler_started", pipeline_id=self.pipeline_id, tick_period=period)
        while not self._stopping and (max_ticks is None or ticks < max_ticks):
            started = time.monotonic()
            await asyncio.to_thread(self.tick)
            ticks += 1
            elapsed = time.monotonic() - started
            if elapsed > period:
                logger.warning(
                    "tick_overran",
                    pipeline_id=self.pipeline_id,
                    elapsed_seconds=round(elapsed, 3),
                    tick_period=period,
                )
            await asyncio.sleep(max(0.0, period - elapsed))
        logger.info("scheduler_stopped", pipeline_id=self.pipeline_id, ticks=ticks)

    def stop(self) -> None:
        self._stopping = True
