from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic_settings import BaseSettings


class PipelineConfig(BaseModel):
    """The bucket grid every pipeline advances through."""

    model_config = ConfigDict(frozen=True)

    granularity: timedelta
    partition_count: int
    lookback: timedelta
    tick_period: timedelta

    @field_validator("granularity", "tick_period")
    @classmethod
    def _positive_duration(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("must be a positive duration")
        return value

    @field_validator("lookback")
    @classmethod
    def _non_negative_lookback(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("lookback cannot be negative")
        return value

    @field_validator("partition_count")
    @classmethod
    def _at_least_one_partition(cls, value: int) -> int:
        if value < 1:
            raise ValueError("partition_count must be at least 1")
        return value


class Settings(BaseSettings):
    """Runtime configuration for the bucket ETL service."""

    granularity: timedelta = timedelta(hours=1)
    partition_count: int = 100
    lookback: timedelta = timedelta(minutes=5)
    tick_period: timedelta = timedelta(seconds=1)

    pipeline_ids: List[str] = ["events_hourly"]
    destinations: List[str] = ["normalize", "active_only"]
    start_interval: Optional[datetime] = None

    source_backend: str = "memory"  # options: memory, sqlite
    source_path: str = "data/source.db"
    cursor_backend: str = "memory"  # options: memory, sqlite
    cursor_path: str = "data/checkpoints.db"
    warehouse_backend: str = "memory"  # options: memory, sqlite
    warehouse_path: str = "data/warehouse.db"

    excluded_keys: List[str] = []
    default_seed_records: int = 0
    starvation_threshold: int = 10
    metrics_history: int = 500
    autostart: bool = True

    log_level: str = "INFO"
    json_logs: bool = False

    @field_validator("starvation_threshold", "metrics_history")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("pipeline_ids", "destinations")
    @classmethod
    def _non_empty_unique(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("at least one entry is required")
        if len(set(value)) != len(value):
            raise ValueError("entries must be unique")
        return value

    def pipeline_config(self) -> PipelineConfig:
        return PipelineConfig(
            granularity=self.granularity,
            partition_count=self.partition_count,
            lookback=self.lookback,
            tick_period=self.tick_period,
        )


settings = Settings()
