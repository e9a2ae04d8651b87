import asyncio
from datetime import datetime
from typing import Callable, Dict, List

from .config import Settings
from .cursor_store import CursorStore, create_cursor_store
from .lookup import ReferenceLookup
from .logger import logger
from .metrics import InMemoryMetrics
from .models import utc_now
from .scan import ScanStage
from .scheduler import Scheduler
from .sink import SinkWriter
from .sources import InMemorySource, create_source
from .transform import TransformStage, resolve_transforms
from .warehouse import create_warehouse


def _log_exit(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.critical("pipeline_stopped", task=task.get_name(), error=str(exc))


class PipelineRuntime:
    """One scheduler per pipeline id over a shared source and lookup.

    Pipelines never share a cursor store instance.
    """

    def __init__(self, settings: Settings, clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self.config = settings.pipeline_config()
        self.clock = clock
        self.lookup = ReferenceLookup(settings.excluded_keys)
        self.source = create_source(settings.source_backend, settings.source_path, self.config)
        if isinstance(self.source, InMemorySource) and settings.default_seed_records:
            self.source.seed(settings.default_seed_records, clock())
        self.warehouse = create_warehouse(settings.warehouse_backend, settings.warehouse_path)
        self.metrics = InMemoryMetrics(settings.metrics_history)
        self.cursor_stores: Dict[str, CursorStore] = {}
        self.schedulers: Dict[str, Scheduler] = {
            pipeline_id: self._build_scheduler(pipeline_id) for pipeline_id in settings.pipeline_ids
        }

    def _build_scheduler(self, pipeline_id: str) -> Scheduler:
        transforms = resolve_transforms(self.settings.destinations)
        cursor_store = create_cursor_store(
            self.settings.cursor_backend,
            self.settings.cursor_path,
            partition_count=self.config.partition_count,
            clock=self.clock,
        )
        self.cursor_stores[pipeline_id] = cursor_store
        return Scheduler(
            pipeline_id,
            self.config,
            cursor_store=cursor_store,
            scan_stage=ScanStage(self.source, self.lookup, self.config),
            transform_stage=TransformStage(transforms, self.lookup),
            sink_writer=SinkWriter({name: self.warehouse for name in transforms}, cursor_store),
            metrics=self.metrics,
            clock=self.clock,
            start_interval=self.settings.start_interval,
            starvation_threshold=self.settings.starvation_threshold,
        )

    def scheduler(self, pipeline_id: str) -> Scheduler:
        if pipeline_id not in self.schedulers:
            raise KeyError(f"Unknown pipeline '{pipeline_id}'")
        return self.schedulers[pipeline_id]

    async def run_all(self) -> None:
        results = await asyncio.gather(
            *(scheduler.run() for scheduler in self.schedulers.values()),
            return_exceptions=True,
        )
        for pipeline_id, result in zip(self.schedulers, results):
            if isinstance(result, BaseException):
                logger.critical("pipeline_stopped", pipeline_id=pipeline_id, error=str(result))

    def start(self) -> List["asyncio.Task[None]"]:
        tasks = []
        for pipeline_id, scheduler in self.schedulers.items():
            task = asyncio.create_task(scheduler.run(), name=f"scheduler:{pipeline_id}")
            task.add_done_callback(_log_exit)
            tasks.append(task)
        return tasks

    def stop(self) -> None:
        for scheduler in self.schedulers.values():
            scheduler.stop()
