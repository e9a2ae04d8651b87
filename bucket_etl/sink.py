from datetime import datetime
from typing import List, Mapping

from .cursor_store import NO_EXPECTATION, CursorStore, Expected
from .errors import CheckpointWriteError, SinkWriteError
from .logger import logger
from .models import Checkpoint, DerivedRecord, SinkBatch
from .warehouse import Warehouse


class SinkWriter:
    """Delivers a bucket to every destination, then advances the cursor.

    The cursor only moves after every destination accepted its batch. A crash
    in between leaves the bucket to be delivered again, which destinations
    have to tolerate; the reverse order could lose a bucket.
    """

    def __init__(self, destinations: Mapping[str, Warehouse], cursor_store: CursorStore):
        if not destinations:
            raise ValueError("At least one destination is required")
        self.destinations = dict(destinations)
        self.cursor_store = cursor_store

    def write(
        self,
        pipeline_id: str,
        interval: datetime,
        partition: int,
        batches: Mapping[str, List[DerivedRecord]],
        expected: Expected = NO_EXPECTATION,
    ) -> Checkpoint:
        unknown = set(batches) - set(self.destinations)
        if unknown:
            raise SinkWriteError(f"No destination configured for {sorted(unknown)}")

        for name, warehouse in self.destinations.items():
            batch = SinkBatch(
                pipeline_id=pipeline_id,
                destination=name,
                interval=interval,
                partition=partition,
                records=list(batches.get(name, [])),
            )
            try:
                warehouse.append_batch(batch)
            except Exception as exc:
                raise SinkWriteError(f"Destination '{name}' rejected batch: {exc}", destination=name) from exc
            if batch.is_heartbeat:
                logger.debug(
                    "heartbeat_written",
                    pipeline_id=pipeline_id,
                    destination=name,
                    interval=interval.isoformat(),
                    partition=partition,
                )

        try:
            return self.cursor_store.append(pipeline_id, interval, partition, expected=expected)
        except CheckpointWriteError:
            raise
        except Exception as exc:
            raise CheckpointWriteError(
                f"Sink write for '{pipeline_id}' succeeded but cursor append failed: {exc}"
            ) from exc
