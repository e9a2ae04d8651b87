from datetime import datetime
from typing import Optional


class PipelineError(Exception):
    """Base class for every error raised by the bucket processor."""


class TransientScanError(PipelineError):
    """The source could not be read; the same bucket is retried next tick."""


class TransformError(PipelineError):
    """A single source record is malformed and is skipped."""

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message)
        self.record_id = record_id


class SinkWriteError(PipelineError):
    """A destination rejected a batch; the unit is retried without checkpointing."""

    def __init__(self, message: str, destination: Optional[str] = None):
        super().__init__(message)
        self.destination = destination


class CheckpointWriteError(PipelineError):
    """The cursor could not be advanced after a successful sink write.

    Fatal for the pipeline instance: the data is already in the sink.
    """


class CheckpointConflictError(CheckpointWriteError):
    """The cursor moved underneath us or the new bucket does not advance it."""


class CursorReadError(PipelineError):
    """The cursor store could not be read."""


class StarvationError(PipelineError):
    """The same bucket kept failing; an operator has to look at it."""

    def __init__(self, pipeline_id: str, interval: datetime, partition: int, failures: int):
        super().__init__(
            f"Pipeline '{pipeline_id}' failed bucket ({interval.isoformat()}, {partition}) "
            f"{failures} times in a row"
        )
        self.pipeline_id = pipeline_id
        self.interval = interval
        self.partition = partition
        self.failures = failures


class PipelineHaltedError(PipelineError):
    """Raised when ticking a pipeline that stopped after a checkpoint failure."""
