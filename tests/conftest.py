from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Optional

import pytest

from bucket_etl.config import PipelineConfig
from bucket_etl.cursor_store import CursorStore, InMemoryCursorStore
from bucket_etl.lookup import ReferenceLookup
from bucket_etl.metrics import InMemoryMetrics
from bucket_etl.scan import ScanStage
from bucket_etl.scheduler import Scheduler
from bucket_etl.sink import SinkWriter
from bucket_etl.sources import InMemorySource, Source
from bucket_etl.transform import TransformStage, resolve_transforms
from bucket_etl.warehouse import InMemoryWarehouse, Warehouse
from tests.helpers import FakeClock, utc


@dataclass
class PipelineHarness:
    scheduler: Scheduler
    source: Source
    lookup: ReferenceLookup
    cursor_store: CursorStore
    warehouse: Warehouse
    metrics: InMemoryMetrics
    clock: FakeClock


@pytest.fixture
def hourly_config() -> PipelineConfig:
    return PipelineConfig(
        granularity=timedelta(hours=1),
        partition_count=4,
        lookback=timedelta(minutes=5),
        tick_period=timedelta(milliseconds=1),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(utc(2026, 1, 2, 16, 6))


@pytest.fixture
def make_pipeline(clock: FakeClock) -> Callable[..., PipelineHarness]:
    def _make(
        config: PipelineConfig,
        pipeline_id: str = "events_hourly",
        source: Optional[Source] = None,
        lookup: Optional[ReferenceLookup] = None,
        cursor_store: Optional[CursorStore] = None,
        warehouse: Optional[Warehouse] = None,
        destinations: Optional[List[str]] = None,
        **scheduler_kwargs,
    ) -> PipelineHarness:
        source = source if source is not None else InMemorySource(config)
        lookup = lookup if lookup is not None else ReferenceLookup()
        cursor_store = (
            cursor_store
            if cursor_store is not None
            else InMemoryCursorStore(partition_count=config.partition_count, clock=clock)
        )
        warehouse = warehouse if warehouse is not None else InMemoryWarehouse()
        metrics = InMemoryMetrics()
        transforms = resolve_transforms(destinations or ["normalize"])
        scheduler = Scheduler(
            pipeline_id,
            config,
            cursor_store=cursor_store,
            scan_stage=ScanStage(source, lookup, config),
            transform_stage=TransformStage(transforms, lookup),
            sink_writer=SinkWriter({name: warehouse for name in transforms}, cursor_store),
            metrics=metrics,
            clock=clock,
            **scheduler_kwargs,
        )
        return PipelineHarness(scheduler, source, lookup, cursor_store, warehouse, metrics, clock)

    return _make
