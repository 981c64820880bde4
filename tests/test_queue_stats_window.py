from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone

import pytest

from ingestion.tasks.ingest_queue_interval_stats import (
    _build_aggregate_query,
    _format_interval,
    _resolve_interval,
)

PLUS_EIGHT = timezone(timedelta(hours=8))
PST = timezone(timedelta(hours=-8))
PDT = timezone(timedelta(hours=-7))


@pytest.fixture
def los_angeles_local_time(monkeypatch: pytest.MonkeyPatch):
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    monkeypatch.setenv("TZ", "America/Los_Angeles")
    time.tzset()
    yield
    monkeypatch.undo()
    time.tzset()


def test_resolve_interval_daily_aligns_to_local_midnight() -> None:
    now = datetime(2016, 6, 8, 15, 42, 7, tzinfo=PLUS_EIGHT)
    start, end = _resolve_interval("P1D", now)
    assert start == datetime(2016, 6, 8, 0, 0, 0, tzinfo=PLUS_EIGHT)
    assert end - start == timedelta(hours=24)
    assert _format_interval(start, end) == "2016-06-08T00:00:00+0800/2016-06-09T00:00:00+0800"


def test_resolve_interval_half_hour_truncates_now() -> None:
    now = datetime(2016, 6, 8, 15, 42, 7, 500, tzinfo=timezone.utc)
    start, end = _resolve_interval("PT30M", now)
    assert start == datetime(2016, 6, 8, 15, 30, tzinfo=timezone.utc)
    assert end == datetime(2016, 6, 8, 16, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("granularity", "expected_start", "expected_minutes"),
    [
        ("PT15M", datetime(2016, 6, 8, 15, 30, tzinfo=PLUS_EIGHT), 15),
        ("PT60M", datetime(2016, 6, 8, 15, 0, tzinfo=PLUS_EIGHT), 60),
        ("PT1H", datetime(2016, 6, 8, 15, 0, tzinfo=PLUS_EIGHT), 60),
    ],
)
def test_resolve_interval_keeps_offset_of_now(
    granularity: str, expected_start: datetime, expected_minutes: int
) -> None:
    now = datetime(2016, 6, 8, 15, 44, 59, tzinfo=PLUS_EIGHT)
    start, end = _resolve_interval(granularity, now)
    assert start == expected_start
    assert start.utcoffset() == timedelta(hours=8)
    assert end - start == timedelta(minutes=expected_minutes)


def test_resolve_interval_rejects_unknown_granularity() -> None:
    with pytest.raises(ValueError, match="Invalid granularity"):
        _resolve_interval("PT5M", datetime.now(timezone.utc))


def test_resolve_interval_rejects_naive_now() -> None:
    with pytest.raises(ValueError, match="timezone-aware"):
        _resolve_interval("PT30M", datetime(2016, 6, 8, 15, 0))


def test_resolve_interval_defaults_to_local_now() -> None:
    start, end = _resolve_interval("PT15M")
    assert start.tzinfo is not None
    assert end - start == timedelta(minutes=15)
    assert start.minute % 15 == 0 and start.second == 0


def test_build_aggregate_query_filters_media_types_and_queues() -> None:
    query = _build_aggregate_query(
        interval="2016-06-08T00:00:00+0800/2016-06-09T00:00:00+0800",
        granularity="P1D",
        media_types=["voice", "chat"],
        queue_ids=["q-1", "q-2"],
    )
    assert query["groupBy"] == ["mediaType", "queueId"]
    assert query["flattenMultivaluedDimensions"] is True
    assert query["filter"]["type"] == "and"
    media_clause, queue_clause = query["filter"]["clauses"]
    assert media_clause == {
        "type": "or",
        "predicates": [
            {"dimension": "mediaType", "value": "voice"},
            {"dimension": "mediaType", "value": "chat"},
        ],
    }
    assert [p["value"] for p in queue_clause["predicates"]] == ["q-1", "q-2"]
    assert {p["dimension"] for p in queue_clause["predicates"]} == {"queueId"}


def test_build_aggregate_query_requires_queues() -> None:
    with pytest.raises(ValueError, match="At least one queue id"):
        _build_aggregate_query(interval="x/y", granularity="PT30M", media_types=["voice"], queue_ids=[])


def test_resolve_interval_daily_uses_midnight_offset_on_spring_changeover(los_angeles_local_time) -> None:
    # 10:00 on 2026-03-08 is PDT, but that day's midnight was still PST.
    now = datetime(2026, 3, 8, 10, 0).astimezone()
    assert now.utcoffset() == timedelta(hours=-7)

    start, end = _resolve_interval("P1D", now)

    assert start == datetime(2026, 3, 8, 0, 0, tzinfo=PST)
    assert start.utcoffset() == timedelta(hours=-8)
    assert end - start == timedelta(hours=24)


def test_resolve_interval_daily_uses_midnight_offset_on_autumn_changeover(los_angeles_local_time) -> None:
    now = datetime(2026, 11, 1, 10, 0).astimezone()
    assert now.utcoffset() == timedelta(hours=-8)

    start, end = _resolve_interval("P1D", now)

    assert start == datetime(2026, 11, 1, 0, 0, tzinfo=PDT)
    assert start.utcoffset() == timedelta(hours=-7)
    assert end - start == timedelta(hours=24)


def test_resolve_interval_daily_default_now_starts_at_local_midnight(los_angeles_local_time) -> None:
    start, _ = _resolve_interval("P1D")
    local_start = start.astimezone()
    assert (local_start.hour, local_start.minute, local_start.second) == (0, 0, 0)
    assert local_start.date() == datetime.now().date()


def test_resolve_interval_daily_with_named_zone_on_changeover() -> None:
    zoneinfo = pytest.importorskip("zoneinfo")
    try:
        los_angeles = zoneinfo.ZoneInfo("America/Los_Angeles")
    except zoneinfo.ZoneInfoNotFoundError:
        pytest.skip("tz database is not installed")

    start, end = _resolve_interval("P1D", datetime(2026, 3, 8, 10, 0, tzinfo=los_angeles))

    assert start.utcoffset() == timedelta(hours=-8)
    assert start.astimezone(timezone.utc) == datetime(2026, 3, 8, 8, 0, tzinfo=timezone.utc)
    assert end.astimezone(timezone.utc) - start.astimezone(timezone.utc) == timedelta(hours=24)
