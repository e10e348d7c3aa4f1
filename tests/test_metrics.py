from datetime import datetime, timezone

from utils.pipeline_contracts import StatusEvent
from utils.time_alignment import MINUTE_MS
from workers.metrics import MetricsAccumulator, measure_crossing_minutes

NOW = datetime(2026, 2, 10, 12, 0, tzinfo=timezone.utc)
DAY_START = int(datetime(2026, 2, 10, tzinfo=timezone.utc).timestamp() * 1000)


def _event(minute: int, sts: str, awb: str = "100") -> StatusEvent:
    return StatusEvent(
        identifier=awb,
        branch_seq="0",
        timestamp_ms=DAY_START + minute * MINUTE_MS,
        status_code=sts,
    )


class FakeStore:
    def __init__(self, events_by_awb=None, failing=()):
        self.events_by_awb = events_by_awb or {}
        self.failing = set(failing)
        self.calls = []

    def query_events(self, awb_no, start_ms, stop_ms):
        self.calls.append((awb_no, start_ms, stop_ms))
        if awb_no in self.failing:
            raise RuntimeError("store down")
        return self.events_by_awb.get(awb_no, [])


def test_measure_crossing_minutes_scans_three_thresholds():
    events = [
        _event(0, "40"),
        _event(10, "50"),
        _event(20, "60"),
        _event(45, "70"),
        _event(50, "72"),
    ]

    assert measure_crossing_minutes(events, "50", "70") == 35.0
    assert measure_crossing_minutes(events, "70", "72") == 5.0


def test_measure_crossing_minutes_requires_event_below_lower_first():
    events = [_event(10, "50"), _event(40, "70")]

    assert measure_crossing_minutes(events, "50", "70") == 0.0


def test_measure_crossing_minutes_requires_end_after_start():
    events = [_event(0, "40"), _event(10, "55")]

    assert measure_crossing_minutes(events, "50", "70") == 0.0
    assert measure_crossing_minutes([], "50", "70") == 0.0


def test_measure_crossing_minutes_compares_codes_as_strings():
    # "100" < "50" (문자열 비교)
    events = [_event(0, "100"), _event(5, "50"), _event(9, "9")]

    assert measure_crossing_minutes(events, "50", "70") == 4.0


def test_process_accumulates_each_pair_and_queries_today_only():
    store = FakeStore(
        {
            "100": [_event(0, "40"), _event(10, "50"), _event(40, "70"), _event(46, "72")],
        }
    )
    metrics = MetricsAccumulator(store)

    snapshot = metrics.process([_event(46, "72")], NOW)

    assert snapshot.count_a == 1
    assert snapshot.total_minutes_a == 30.0
    assert snapshot.count_b == 1
    assert snapshot.total_minutes_b == 6.0
    now_ms = int(NOW.timestamp() * 1000)
    assert store.calls[0] == ("100", DAY_START, now_ms)
    assert snapshot.to_payload() == {
        "sakuttl": 30.0,
        "sakucnt": 1,
        "shinttl": 6.0,
        "shincnt": 1,
    }


def test_process_counts_identifier_once_per_pair_across_cycles():
    store = FakeStore(
        {"100": [_event(0, "40"), _event(10, "50"), _event(40, "70")]}
    )
    metrics = MetricsAccumulator(store)

    metrics.process([_event(40, "70")], NOW)
    metrics.process([_event(40, "70")], NOW)
    snapshot = metrics.process([_event(41, "71")], NOW)

    assert snapshot.count_a == 1
    assert snapshot.total_minutes_a == 30.0
    assert len(store.calls) == 1
    assert metrics.seen("saku") == frozenset({"100"})


def test_unresolvable_and_failed_queries_are_marked_seen_without_counting():
    store = FakeStore(
        {"100": [_event(10, "70")]},
        failing={"200"},
    )
    metrics = MetricsAccumulator(store)

    snapshot = metrics.process(
        [_event(10, "70", awb="100"), _event(10, "75", awb="200"), _event(10, "60", awb="300")],
        NOW,
    )

    assert snapshot.count_a == 0
    assert snapshot.total_minutes_a == 0.0
    assert metrics.seen("saku") == frozenset({"100", "200"})
    # 72 이상은 200 하나뿐
    assert metrics.seen("shin") == frozenset({"200"})


def test_snapshot_starts_at_zero():
    metrics = MetricsAccumulator(FakeStore())

    assert metrics.snapshot().to_payload() == {
        "sakuttl": 0.0,
        "sakucnt": 0,
        "shinttl": 0.0,
        "shincnt": 0,
    }


def test_process_queries_each_large_batch_identifier_once_in_feed_order():
    awbs = [f"{900000 - i}" for i in range(20_000)]
    records = [_event(30, "70", awb=awb) for awb in awbs]
    records += [_event(31, "71", awb=awb) for awb in awbs[:100]]
    store = FakeStore()
    metrics = MetricsAccumulator(store)

    metrics.process(records, NOW)

    queried = [awb for awb, _start, _stop in store.calls]
    assert queried == awbs
    assert metrics.seen("saku") == frozenset(awbs)
