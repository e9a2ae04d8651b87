"""Transform stage: business rules, bad-record isolation, determinism."""

from datetime import timedelta

import pytest

from bucket_etl.config import PipelineConfig
from bucket_etl.lookup import ReferenceLookup
from bucket_etl.models import Bucket, SourceRecord
from bucket_etl.scan import ScanStage
from bucket_etl.sources import InMemorySource
from bucket_etl.transform import TransformStage, active_only, normalize_record, resolve_transforms
from tests.helpers import keys_for_partition, utc

INTERVAL = utc(2026, 1, 2, 15)
BUCKET = Bucket(INTERVAL, 0)


def _record(**overrides) -> SourceRecord:
    values = {
        "record_id": "r-1",
        "partition_key": "user-1",
        "event_timestamp": INTERVAL + timedelta(minutes=3),
        "payload": {"title": "  hello world ", "category": "alpha"},
        "status": "active",
    }
    values.update(overrides)
    return SourceRecord(**values)


def test_normalize_record_enriches_from_lookup() -> None:
    lookup = ReferenceLookup(attributes={"user-1": {"segment": "gold", "category": "ignored"}})

    payload = normalize_record(_record(), lookup)

    assert payload["normalized_title"] == "Hello World"
    assert payload["origin"] == "user-1"
    assert payload["segment"] == "gold"
    assert payload["category"] == "alpha"
    assert payload["event_timestamp"] == "2026-01-02T15:03:00+00:00"


def test_deleted_records_are_excluded() -> None:
    assert normalize_record(_record(status="deleted"), ReferenceLookup()) is None
    assert active_only(_record(status="deleted"), ReferenceLookup()) is None


def test_stage_routes_records_per_destination() -> None:
    stage = TransformStage(resolve_transforms(["normalize", "active_only"]), ReferenceLookup())
    records = [
        _record(record_id="r-1"),
        _record(record_id="r-2", status="pending"),
        _record(record_id="r-3", status="deleted"),
    ]

    result = stage.apply("events_hourly", BUCKET, records)

    assert [r.record_id for r in result.batches["normalize"]] == ["r-1", "r-2"]
    assert [r.record_id for r in result.batches["active_only"]] == ["r-1"]
    assert result.rows == 3
    assert result.errors == 0
    derived = result.batches["normalize"][0]
    assert (derived.pipeline_id, derived.interval, derived.partition) == ("events_hourly", INTERVAL, 0)


def test_malformed_record_is_skipped_without_blocking_the_batch() -> None:
    stage = TransformStage(resolve_transforms(["normalize"]), ReferenceLookup())
    records = [
        _record(record_id="r-1"),
        _record(record_id="bad", payload={"title": 42}),
        _record(record_id="r-3"),
    ]

    result = stage.apply("events_hourly", BUCKET, records)

    assert [r.record_id for r in result.batches["normalize"]] == ["r-1", "r-3"]
    assert result.errors == 1


def test_empty_bucket_yields_empty_batches() -> None:
    stage = TransformStage(resolve_transforms(["normalize", "active_only"]), ReferenceLookup())
    result = stage.apply("events_hourly", BUCKET, [])
    assert result.batches == {"normalize": [], "active_only": []}
    assert result.rows == 0


def test_rescanning_unchanged_bucket_is_byte_identical(hourly_config: PipelineConfig) -> None:
    source = InMemorySource(hourly_config)
    for i, key in enumerate(keys_for_partition(0, hourly_config.partition_count, 20)):
        source.add(key, INTERVAL + timedelta(seconds=i * 7), {"title": f"item {i}", "rank": i})
    lookup = ReferenceLookup(attributes={"user-0": {"tier": "a"}})
    scan = ScanStage(source, lookup, hourly_config)
    stage = TransformStage(resolve_transforms(["normalize", "active_only"]), lookup)

    def derive() -> bytes:
        result = stage.apply("events_hourly", BUCKET, scan.scan(INTERVAL, 0))
        return b"\n".join(
            record.model_dump_json().encode("utf-8")
            for name in sorted(result.batches)
            for record in result.batches[name]
        )

    first = derive()
    assert first
    assert derive() == first


def test_unknown_destination_is_rejected() -> None:
    with pytest.raises(KeyError, match="unknown"):
        resolve_transforms(["unknown"])


def test_attributes_set_after_construction_enrich_later_records() -> None:
    lookup = ReferenceLookup()
    stage = TransformStage(resolve_transforms(["normalize"]), lookup)

    before = stage.apply("events_hourly", BUCKET, [_record()])
    lookup.set_attributes("user-1", {"segment": "silver"})
    after = stage.apply("events_hourly", BUCKET, [_record()])

    assert "segment" not in before.batches["normalize"][0].payload
    assert after.batches["normalize"][0].payload["segment"] == "silver"
    assert lookup.stats() == {"excluded_keys": 0, "enriched_keys": 1}


def test_record_rejected_by_one_destination_still_reaches_the_others() -> None:
    stage = TransformStage(resolve_transforms(["normalize", "active_only"]), ReferenceLookup())
    records = [_record(record_id="ok"), _record(record_id="bad", payload={"title": 42})]

    result = stage.apply("events_hourly", BUCKET, records)

    assert [r.record_id for r in result.batches["normalize"]] == ["ok"]
    assert [r.record_id for r in result.batches["active_only"]] == ["ok", "bad"]
    assert result.errors == 1
