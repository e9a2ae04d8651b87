import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import settings
from .errors import PipelineHaltedError, PipelineError
from .hashing import HashPartitioner
from .models import SourceRecord
from .runtime import PipelineRuntime
from .scheduler import Scheduler, SchedulerState


class EventPayload(BaseModel):
    partition_key: str
    event_timestamp: datetime
    payload: Dict[str, Any] = {}
    status: str = "active"


class ExclusionRequest(BaseModel):
    key: str


class PartitionRequest(BaseModel):
    keys: List[str]
    partition_count: Optional[int] = Field(default=None, ge=1)


def _get_scheduler(runtime: PipelineRuntime, pipeline_id: str) -> Scheduler:
    try:
        return runtime.scheduler(pipeline_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


def create_app(runtime: PipelineRuntime, autostart: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        tasks = runtime.start() if autostart else []
        yield
        runtime.stop()
        await asyncio.gather(*tasks, return_exceptions=True)

    app = FastAPI(
        title="Bucket ETL",
        version="0.1.0",
        description="Incremental partitioned checkpoint processor with a FastAPI control surface.",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    @app.get("/health")
    async def health() -> dict:
        halted = [pid for pid, s in runtime.schedulers.items() if s.state is SchedulerState.HALTED]
        return {"status": "degraded" if halted else "ok", "halted": halted}

    @app.get("/pipelines")
    async def list_pipelines() -> dict:
        pipelines = []
        for pipeline_id, scheduler in runtime.schedulers.items():
            pipelines.append(
                {
                    "pipeline_id": pipeline_id,
                    "state": scheduler.state.value,
                    "checkpoint": scheduler.cursor_store.get_latest(pipeline_id),
                    "pending_bucket": scheduler.pending_bucket,
                    "consecutive_failures": scheduler.consecutive_failures,
                }
            )
        return {"pipelines": pipelines, "config": runtime.config}

    @app.get("/pipelines/{pipeline_id}/checkpoint")
    async def pipeline_checkpoint(pipeline_id: str) -> dict:
        scheduler = _get_scheduler(runtime, pipeline_id)
        return {"checkpoint": scheduler.cursor_store.get_latest(pipeline_id)}

    @app.get("/pipelines/{pipeline_id}/checkpoints")
    async def pipeline_checkpoints(pipeline_id: str, limit: int = 20) -> dict:
        scheduler = _get_scheduler(runtime, pipeline_id)
        return {"checkpoints": scheduler.cursor_store.history(pipeline_id, limit)}

    @app.post("/pipelines/{pipeline_id}/tick")
    async def pipeline_tick(pipeline_id: str) -> dict:
        scheduler = _get_scheduler(runtime, pipeline_id)
        try:
            metrics = await asyncio.to_thread(scheduler.tick)
        except PipelineHaltedError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except PipelineError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"metrics": metrics}

    @app.get("/pipelines/{pipeline_id}/metrics")
    async def pipeline_metrics(pipeline_id: str, limit: int = 20) -> dict:
        _get_scheduler(runtime, pipeline_id)
        return {
            "summary": runtime.metrics.summary(pipeline_id),
            "recent": runtime.metrics.recent(pipeline_id, limit),
        }

    @app.get("/sources/stats")
    async def source_stats() -> dict:
        return {"source": runtime.source.stats(), "lookup": runtime.lookup.stats()}

    @app.post("/sources/events")
    async def append_event(event: EventPayload) -> dict:
        record = runtime.source.append(
            SourceRecord(
                partition_key=event.partition_key,
                event_timestamp=event.event_timestamp,
                payload=event.payload,
                status=event.status,
            )
        )
        return {"inserted": record}

    @app.post("/lookup/exclusions")
    async def add_exclusion(request: ExclusionRequest) -> dict:
        runtime.lookup.exclude(request.key)
        return {"excluded": request.key}

    @app.delete("/lookup/exclusions/{key}")
    async def remove_exclusion(key: str) -> dict:
        if not runtime.lookup.include(key):
            raise HTTPException(status_code=404, detail=f"Key '{key}' is not excluded")
        return {"included": key}

    @app.post("/partitions/distribution")
    async def partition_distribution(request: PartitionRequest) -> dict:
        if not request.keys:
            raise HTTPException(status_code=400, detail="No keys provided")
        partitioner = HashPartitioner(request.partition_count or runtime.config.partition_count)
        return {
            "partition_count": partitioner.partition_count,
            "distribution": partitioner.distribution(request.keys),
        }

    @app.get("/warehouse/snapshot")
    async def warehouse_snapshot(limit: int = 20) -> dict:
        return {
            "rows": runtime.warehouse.snapshot(limit),
            "heartbeats": runtime.warehouse.heartbeats(limit),
            "metrics": runtime.warehouse.metrics(),
        }

    return app


runtime = PipelineRuntime(settings)
app = create_app(runtime, autostart=settings.autostart)
