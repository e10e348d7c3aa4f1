from datetime import datetime, timezone

import pandas as pd
from influxdb_client.rest import ApiException

from workers.status_store import StatusQueryStore


def _ms(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp() * 1000)


class FakeRecord:
    def __init__(self, time: datetime, values: dict, value=False):
        self._time = time
        self.values = values
        self._value = value

    def get_time(self):
        return self._time

    def get_value(self):
        return self._value


class FakeTable:
    def __init__(self, records):
        self.records = records


class FakeQueryAPI:
    def __init__(self, tables_by_bucket=None, frames_by_bucket=None, errors=None):
        self.tables_by_bucket = tables_by_bucket or {}
        self.frames_by_bucket = frames_by_bucket or {}
        self.errors = errors or {}
        self.calls = []

    def _bucket_of(self, query):
        return query.split('bucket: "', 1)[1].split('"', 1)[0]

    def query(self, query, params=None):
        bucket = self._bucket_of(query)
        self.calls.append((bucket, params))
        if bucket in self.errors:
            raise self.errors[bucket]
        return self.tables_by_bucket.get(bucket, [])

    def query_data_frame(self, query, params=None):
        bucket = self._bucket_of(query)
        self.calls.append((bucket, params))
        if bucket in self.errors:
            raise self.errors[bucket]
        return self.frames_by_bucket.get(bucket, pd.DataFrame())


def test_query_events_walks_day_buckets_and_decodes_records():
    day1 = datetime(2026, 2, 9, 23, 50, tzinfo=timezone.utc)
    day2 = datetime(2026, 2, 10, 0, 10, tzinfo=timezone.utc)
    query_api = FakeQueryAPI(
        tables_by_bucket={
            "sts_index_20260209": [
                FakeTable(
                    [
                        FakeRecord(
                            day1,
                            {
                                "awb_no": "100-2",
                                "sts_code": "50",
                                "last_updated_user": "Tanaka",
                                "igs_status": "1",
                            },
                        )
                    ]
                )
            ],
            "sts_index_20260210": [
                FakeTable(
                    [FakeRecord(day2, {"awb_no": "100-2", "sts_code": "70"}, True)]
                )
            ],
        }
    )
    store = StatusQueryStore(query_api)

    events = store.query_events("100-2", _ms(2026, 2, 9, 23, 0), _ms(2026, 2, 10, 1, 0))

    assert [event.status_code for event in events] == ["50", "70"]
    assert events[0].awb_no == "100-2"
    assert events[0].user_name == "Tanaka"
    assert events[0].cross_ref_status == "1"
    assert events[1].cross_ref_status == "-1"
    assert events[1].is_stocked is True
    assert events[1].timestamp_ms == int(day2.timestamp() * 1000)

    buckets = [bucket for bucket, _ in query_api.calls]
    assert buckets == ["sts_index_20260209", "sts_index_20260210"]
    first_params = query_api.calls[0][1]
    assert first_params["awb"] == "100-2"
    assert first_params["stop"] == datetime(2026, 2, 10, tzinfo=timezone.utc)


def test_query_events_skips_missing_bucket_and_failed_day():
    query_api = FakeQueryAPI(
        errors={
            "sts_index_20260209": ApiException(status=404, reason="Not Found"),
            "sts_index_20260210": RuntimeError("timeout"),
        }
    )
    store = StatusQueryStore(query_api)

    events = store.query_events("100", _ms(2026, 2, 9, 12, 0), _ms(2026, 2, 10, 12, 0))

    assert events == []
    assert len(query_api.calls) == 2


def test_query_events_returns_empty_for_empty_range():
    query_api = FakeQueryAPI()
    store = StatusQueryStore(query_api)

    assert store.query_events("100", 10, 10) == []
    assert query_api.calls == []


def test_query_events_limits_number_of_scanned_days():
    query_api = FakeQueryAPI()
    store = StatusQueryStore(query_api, max_query_days=2)

    store.query_events("100", _ms(2026, 1, 1, 0, 0), _ms(2026, 2, 10, 12, 0))

    assert [bucket for bucket, _ in query_api.calls] == [
        "sts_index_20260209",
        "sts_index_20260210",
    ]


def test_query_latest_per_awb_keeps_most_recent_row_across_days():
    day1 = pd.DataFrame(
        {
            "_time": [
                pd.Timestamp("2026-02-09T23:55:00Z"),
                pd.Timestamp("2026-02-09T23:40:00Z"),
            ],
            "_value": [False, False],
            "awb_no": ["200", "100"],
            "sts_code": ["60", "50"],
            "last_updated_user": ["Sato", "Tanaka"],
        }
    )
    day2 = pd.DataFrame(
        {
            "_time": [pd.Timestamp("2026-02-10T00:05:00Z")],
            "_value": [False],
            "awb_no": ["100"],
            "sts_code": ["70"],
            "last_updated_user": ["Suzuki"],
        }
    )
    query_api = FakeQueryAPI(
        frames_by_bucket={
            "sts_index_20260209": day1,
            "sts_index_20260210": [day2],
        }
    )
    store = StatusQueryStore(query_api)

    events = store.query_latest_per_awb(
        _ms(2026, 2, 9, 23, 30), _ms(2026, 2, 10, 0, 10)
    )

    assert [(event.awb_no, event.status_code, event.user_name) for event in events] == [
        ("100", "70", "Suzuki"),
        ("200", "60", "Sato"),
    ]
    assert events[0].timestamp_ms == _ms(2026, 2, 10, 0, 5)
    # 없는 tag 컬럼은 빈 문자열
    assert events[0].company_name == ""


def test_query_latest_per_awb_returns_empty_without_rows():
    store = StatusQueryStore(FakeQueryAPI())

    assert store.query_latest_per_awb(_ms(2026, 2, 10, 0, 0), _ms(2026, 2, 10, 1, 0)) == []
