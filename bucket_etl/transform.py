from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .errors import TransformError
from .logger import logger
from .lookup import Lookup
from .models import Bucket, DerivedRecord, SourceRecord

Transform = Callable[[SourceRecord, Lookup], Optional[Dict[str, Any]]]


def normalize_record(record: SourceRecord, lookup: Lookup) -> Optional[Dict[str, Any]]:
    """Cleaned payload enriched with reference attributes; deleted rows are dropped."""
    if record.status == "deleted":
        return None
    title = record.payload.get("title", "")
    if not isinstance(title, str):
        raise TransformError(f"title must be a string, got {type(title).__name__}", record.record_id)
    clean_payload = dict(record.payload)
    clean_payload["origin"] = record.partition_key
    clean_payload["normalized_title"] = title.strip().title()
    clean_payload["event_timestamp"] = record.event_timestamp.isoformat()
    for key, value in lookup.attributes(record.partition_key).items():
        clean_payload.setdefault(key, value)
    return clean_payload


def active_only(record: SourceRecord, lookup: Lookup) -> Optional[Dict[str, Any]]:
    if record.status != "active":
        return None
    return {
        "partition_key": record.partition_key,
        "status": record.status,
        "event_timestamp": record.event_timestamp.isoformat(),
    }


TRANSFORMS: Dict[str, Transform] = {
    "normalize": normalize_record,
    "active_only": active_only,
}


def resolve_transforms(names: Iterable[str]) -> Dict[str, Transform]:
    resolved: Dict[str, Transform] = {}
    for name in names:
        if name not in TRANSFORMS:
            raise KeyError(f"Unknown destination transform '{name}'")
        resolved[name] = TRANSFORMS[name]
    return resolved


@dataclass
class TransformResult:
    batches: Dict[str, List[DerivedRecord]] = field(default_factory=dict)
    errors: int = 0

    @property
    def rows(self) -> int:
        return sum(len(records) for records in self.batches.values())


class TransformStage:
    """Applies each destination's transform to every row of a bucket."""

    def __init__(self, destinations: Mapping[str, Transform], lookup: Lookup):
        if not destinations:
            raise ValueError("At least one destination is required")
        self.destinations = dict(destinations)
        self.lookup = lookup

    def apply(
        self,
        pipeline_id: str,
        bucket: Bucket,
        records: Iterable[SourceRecord],
    ) -> TransformResult:
        result = TransformResult(batches={name: [] for name in self.destinations})
        for record in records:
            for name, transform in self.destinations.items():
                try:
                    payload = transform(record, self.lookup)
                except (TransformError, ValueError, TypeError, KeyError) as exc:
                    result.errors += 1
                    logger.warning(
                        "transform_skipped",
                        pipeline_id=pipeline_id,
                        destination=name,
                        record_id=record.record_id,
                        interval=bucket.interval.isoformat(),
                        partition=bucket.partition,
                        error=str(exc),
                    )
                    continue
                if payload is None:
                    continue
                result.batches[name].append(
                    DerivedRecord(
                        pipeline_id=pipeline_id,
                        destination=name,
                        interval=bucket.interval,
                        partition=bucket.partition,
                        record_id=record.record_id,
                        payload=payload,
                    )
                )
        return result
