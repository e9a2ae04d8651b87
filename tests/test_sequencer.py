"""Unit tests for bucket arithmetic."""

from datetime import datetime, timedelta

import pytest

from bucket_etl.models import Bucket
from bucket_etl.sequencer import (
    CAUGHT_UP,
    CaughtUp,
    bootstrap_position,
    horizon,
    next_bucket,
    truncate,
)
from tests.helpers import utc

HOUR = timedelta(hours=1)
LOOKBACK = timedelta(minutes=5)
FAR_FUTURE = utc(2030, 1, 1)


def test_truncate_floors_to_granularity() -> None:
    ts = utc(2026, 1, 2, 14, 37, 12)
    assert truncate(ts, HOUR) == utc(2026, 1, 2, 14)
    assert truncate(ts, timedelta(minutes=15)) == utc(2026, 1, 2, 14, 30)
    assert truncate(ts, timedelta(days=1)) == utc(2026, 1, 2)


def test_truncate_treats_naive_as_utc() -> None:
    assert truncate(datetime(2026, 1, 2, 14, 59), HOUR) == utc(2026, 1, 2, 14)


def test_truncate_rejects_non_positive_granularity() -> None:
    with pytest.raises(ValueError):
        truncate(utc(2026, 1, 2), timedelta(0))


def test_next_bucket_moves_to_next_partition_in_same_interval() -> None:
    result = next_bucket(Bucket(utc(2026, 1, 2, 14), 3), FAR_FUTURE, LOOKBACK, HOUR, 10)
    assert result == Bucket(utc(2026, 1, 2, 14), 4)


def test_next_bucket_wraps_to_next_interval() -> None:
    result = next_bucket(Bucket(utc(2026, 1, 2, 14), 9), FAR_FUTURE, LOOKBACK, HOUR, 10)
    assert result == Bucket(utc(2026, 1, 2, 15), 0)


@pytest.mark.parametrize("partition_count", [1, 2, 7, 100])
def test_next_bucket_partition_always_in_range(partition_count: int) -> None:
    interval = utc(2026, 1, 2, 14)
    for partition in range(partition_count):
        result = next_bucket(Bucket(interval, partition), FAR_FUTURE, LOOKBACK, HOUR, partition_count)
        assert isinstance(result, Bucket)
        assert 0 <= result.partition < partition_count
        assert result > Bucket(interval, partition)


def test_scenario_waits_for_interval_to_close() -> None:
    checkpoint = Bucket(utc(2026, 1, 2, 14), 99)
    assert next_bucket(checkpoint, utc(2026, 1, 2, 15, 6), LOOKBACK, HOUR, 100) is CAUGHT_UP
    assert next_bucket(checkpoint, utc(2026, 1, 2, 16, 5), LOOKBACK, HOUR, 100) == Bucket(utc(2026, 1, 2, 15), 0)


def test_caught_up_when_next_interval_is_beyond_horizon() -> None:
    result = next_bucket(Bucket(utc(2026, 1, 2, 15), 99), utc(2026, 1, 2, 16, 6), LOOKBACK, HOUR, 100)
    assert result is CAUGHT_UP
    assert isinstance(result, CaughtUp)


def test_bucket_becomes_eligible_exactly_one_lookback_after_interval_end() -> None:
    checkpoint = Bucket(utc(2026, 1, 2, 14), 99)
    just_before = utc(2026, 1, 2, 16, 5) - timedelta(microseconds=1)

    assert next_bucket(checkpoint, just_before, LOOKBACK, HOUR, 100) is CAUGHT_UP
    assert next_bucket(checkpoint, utc(2026, 1, 2, 16, 5), LOOKBACK, HOUR, 100) == Bucket(
        utc(2026, 1, 2, 15), 0
    )


def test_same_interval_partitions_share_the_eligibility_rule() -> None:
    assert next_bucket(Bucket(utc(2026, 1, 2, 15), 3), utc(2026, 1, 2, 15, 30), LOOKBACK, HOUR, 10) is CAUGHT_UP
    assert next_bucket(Bucket(utc(2026, 1, 2, 15), 3), utc(2026, 1, 2, 16, 5), LOOKBACK, HOUR, 10) == Bucket(
        utc(2026, 1, 2, 15), 4
    )


def test_horizon_applies_lookback_before_truncating() -> None:
    assert horizon(utc(2026, 1, 2, 15, 4), LOOKBACK, HOUR) == utc(2026, 1, 2, 14)
    assert horizon(utc(2026, 1, 2, 15, 5), LOOKBACK, HOUR) == utc(2026, 1, 2, 15)


def test_bootstrap_position_yields_partition_zero() -> None:
    position = bootstrap_position(utc(2026, 1, 2, 12, 30), HOUR)
    assert position == Bucket(utc(2026, 1, 2, 12), -1)
    assert next_bucket(position, FAR_FUTURE, LOOKBACK, HOUR, 4) == Bucket(utc(2026, 1, 2, 12), 0)


@pytest.mark.parametrize("partition", [-2, 10, 11])
def test_next_bucket_rejects_out_of_range_positions(partition: int) -> None:
    with pytest.raises(ValueError, match="partition"):
        next_bucket(Bucket(utc(2026, 1, 2, 14), partition), FAR_FUTURE, LOOKBACK, HOUR, 10)


def test_zero_lookback_releases_interval_as_soon_as_it_closes() -> None:
    checkpoint = Bucket(utc(2026, 1, 2, 14), 0)
    assert next_bucket(checkpoint, utc(2026, 1, 2, 15, 59, 59), timedelta(0), HOUR, 1) is CAUGHT_UP
    assert next_bucket(checkpoint, utc(2026, 1, 2, 16), timedelta(0), HOUR, 1) == Bucket(utc(2026, 1, 2, 15), 0)
