from utils.pipeline_contracts import NO_DATA_STATUS, QueryMode, StatusEvent
from utils.time_alignment import HOUR_MS, MINUTE_MS
from workers.timeline import (
    TimelineEngine,
    build_latest_rows,
    build_timeline,
    build_timeline_labels,
)

H = 480_000 * HOUR_MS
SPAN = 10
SPAN_MS = SPAN * MINUTE_MS


def _event(ts_ms: int, sts: str, awb: str = "X", **kwargs) -> StatusEvent:
    return StatusEvent(
        identifier=awb, branch_seq="0", timestamp_ms=ts_ms, status_code=sts, **kwargs
    )


class FakeStore:
    def __init__(self, events=(), latest=()):
        self.events = list(events)
        self.latest = list(latest)
        self.calls = []

    def query_events(self, awb_no, start_ms, stop_ms):
        self.calls.append(("events", awb_no, start_ms, stop_ms))
        return [
            event
            for event in self.events
            if event.awb_no == awb_no and start_ms <= event.timestamp_ms < stop_ms
        ]

    def query_latest_per_awb(self, start_ms, stop_ms):
        self.calls.append(("latest", start_ms, stop_ms))
        return list(self.latest)


def _assert_gap_free(buckets):
    assert [bucket.index for bucket in buckets] == list(range(len(buckets)))
    starts = [bucket.start_ms for bucket in buckets]
    assert starts == sorted(starts)
    assert len(set(starts)) == len(starts)


def test_single_event_at_from_yields_one_real_and_two_filler_buckets():
    events = [_event(H, "60")]

    buckets = build_timeline("X", events, H, H + 2 * SPAN_MS, SPAN, QueryMode.LATEST)

    assert len(buckets) == 3
    assert buckets[0].index == 0
    assert buckets[0].status_code == "60"
    assert [bucket.status_code for bucket in buckets[1:]] == [NO_DATA_STATUS] * 2
    assert [bucket.index for bucket in buckets[1:]] == [1, 2]


def test_default_mode_covers_whole_hours():
    events = [_event(H + 25 * MINUTE_MS, "60")]

    buckets = build_timeline("X", events, H + 20 * MINUTE_MS, H + 30 * MINUTE_MS, SPAN)

    assert len(buckets) == 6
    assert [bucket.status_code for bucket in buckets] == ["NA", "NA", "60", "NA", "NA", "NA"]
    assert buckets[2].q == 2
    assert buckets[2].base_time_ms == H
    _assert_gap_free(buckets)


def test_last_event_in_bucket_wins_and_fillers_sit_between_real_buckets():
    events = [
        _event(H + 1 * MINUTE_MS, "50", user_name="A"),
        _event(H + 5 * MINUTE_MS, "55", user_name="B"),
        _event(H + 35 * MINUTE_MS, "70", user_name="C"),
    ]

    buckets = build_timeline("X", events, H, H + 59 * MINUTE_MS, SPAN, QueryMode.UPDATE)

    assert [bucket.status_code for bucket in buckets] == ["55", "NA", "NA", "70", "NA", "NA"]
    assert buckets[0].user_name == "B"
    assert buckets[3].user_name == "C"
    assert buckets[1].user_name == ""
    assert buckets[1].is_stocked is False
    _assert_gap_free(buckets)


def test_uneven_span_restarts_buckets_at_each_hour():
    span = 7
    events = [
        _event(H + 57 * MINUTE_MS, "50"),
        _event(H + HOUR_MS + 1 * MINUTE_MS, "70"),
    ]

    buckets = build_timeline("X", events, H, H + HOUR_MS + 2 * MINUTE_MS, span, QueryMode.UPDATE)

    # 9 bucket/hour, 두 번째 이벤트는 다음 hour의 q=0
    assert len(buckets) == 10
    assert (buckets[8].base_time_ms, buckets[8].q, buckets[8].status_code) == (H, 8, "50")
    assert (buckets[9].base_time_ms, buckets[9].q, buckets[9].status_code) == (
        H + HOUR_MS,
        0,
        "70",
    )
    _assert_gap_free(buckets)


def test_build_timeline_returns_none_without_events():
    assert build_timeline("X", [], H, H + HOUR_MS, SPAN) is None


def test_reconstruct_distinguishes_no_data_and_is_idempotent():
    store = FakeStore(events=[_event(H + 2 * HOUR_MS, "60")])
    engine = TimelineEngine(store)

    assert engine.reconstruct("X", H, H + HOUR_MS, SPAN) is None

    first = engine.reconstruct("X", H, H + 2 * HOUR_MS, SPAN, QueryMode.LATEST)
    second = engine.reconstruct("X", H, H + 2 * HOUR_MS, SPAN, QueryMode.LATEST)
    assert first == second
    assert [bucket.to_payload() for bucket in first] == [
        bucket.to_payload() for bucket in second
    ]
    # `to` 시점 이벤트도 포함되도록 stop은 to + 1
    assert store.calls[-1] == ("events", "X", H, H + 2 * HOUR_MS + 1)
    assert first[-1].status_code == "60"
    assert len(first) == 2 * 6 + 1


def test_latest_per_identifier_places_each_row_in_its_bucket():
    store = FakeStore(
        latest=[
            _event(H + 12 * MINUTE_MS, "70", awb="100"),
            _event(H + 45 * MINUTE_MS, "50", awb="200"),
        ]
    )
    engine = TimelineEngine(store)

    rows = engine.latest_per_identifier(H, H + HOUR_MS, SPAN)

    assert [(row.index, row.awb_no, row.q, row.status_code) for row in rows] == [
        (0, "100", 1, "70"),
        (1, "200", 4, "50"),
    ]
    assert store.calls == [("latest", H, H + HOUR_MS)]


def test_build_latest_rows_empty():
    assert build_latest_rows([], SPAN) == []


def test_timeline_labels_default_spans_one_hour():
    labels = build_timeline_labels(0, 3_600_000, 10)

    assert len(labels) == 6
    assert [label.index for label in labels] == list(range(6))
    assert labels[0].time_ms == 0
    assert labels[-1].time_ms == 50 * MINUTE_MS
    assert labels[0].to_payload() == {"time": "1970-01-01T00:00:00Z", "index": 0}


def test_timeline_labels_latest_aligns_to_span():
    labels = build_timeline_labels(H + 3 * MINUTE_MS, H + 21 * MINUTE_MS, 10, latest=True)

    assert [label.time_ms for label in labels] == [H, H + 10 * MINUTE_MS, H + 20 * MINUTE_MS]

