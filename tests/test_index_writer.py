from datetime import date, datetime, timezone

import pytest
from influxdb_client import WritePrecision
from influxdb_client.client.write.dataframe_serializer import data_frame_to_list_of_points
from influxdb_client.client.write_api import PointSettings
from influxdb_client.rest import ApiException

import workers.index_writer as index_writer
from utils.pipeline_contracts import STATUS_TAG_KEYS, SchemaRejectedError, StatusEvent
from workers.index_writer import IndexWriter, events_to_frame, status_index_name

NOW = datetime(2026, 2, 10, 10, 30, tzinfo=timezone.utc)


class FakeBucket:
    def __init__(self, name):
        self.name = name


class FakeBucketsAPI:
    def __init__(self, existing=(), create_error=None):
        self.buckets = {name: FakeBucket(name) for name in existing}
        self.created = []
        self.deleted = []
        self.create_error = create_error

    def find_bucket_by_name(self, name):
        return self.buckets.get(name)

    def create_bucket(self, bucket_name=None, org=None):
        if self.create_error is not None:
            raise self.create_error
        self.created.append((bucket_name, org))
        self.buckets[bucket_name] = FakeBucket(bucket_name)
        return self.buckets[bucket_name]

    def delete_bucket(self, bucket):
        self.deleted.append(bucket.name)
        self.buckets.pop(bucket.name, None)


class FakeWriteAPI:
    def __init__(self, fail_batches=(), error=None):
        self.calls = []
        self.fail_batches = set(fail_batches)
        self.error = error

    def write(self, **kwargs):
        batch_no = len(self.calls)
        self.calls.append(kwargs)
        if batch_no in self.fail_batches:
            raise self.error or RuntimeError(f"batch {batch_no} failed")


def _events(count: int) -> list[StatusEvent]:
    ts = int(NOW.timestamp() * 1000)
    return [
        StatusEvent(
            identifier=f"{1000 + i}",
            branch_seq="0" if i % 2 == 0 else "1",
            timestamp_ms=ts,
            status_code="70",
            user_name="Tanaka",
        )
        for i in range(count)
    ]


@pytest.fixture(autouse=True)
def _silence_alerts(monkeypatch):
    sent = []
    monkeypatch.setattr(index_writer, "send_alert", lambda message: sent.append(message))
    return sent


def test_status_index_name_uses_compact_date():
    assert status_index_name(date(2026, 2, 3)) == "sts_index_20260203"


def test_prepare_prunes_past_days_and_creates_today():
    buckets = FakeBucketsAPI(
        existing=[
            "sts_index_20260209",
            "sts_index_20260207",
            "sts_index_20260206",
        ]
    )
    writer = IndexWriter(buckets_api=buckets, write_api=FakeWriteAPI(), org="org")

    name = writer.prepare(NOW, retention_days=3)

    assert name == "sts_index_20260210"
    assert buckets.deleted == ["sts_index_20260209", "sts_index_20260207"]
    assert "sts_index_20260206" in buckets.buckets
    assert buckets.created == [("sts_index_20260210", "org")]


def test_ensure_index_is_cached_after_first_check():
    buckets = FakeBucketsAPI()
    writer = IndexWriter(buckets_api=buckets, write_api=FakeWriteAPI(), org="org")

    writer.ensure_index(date(2026, 2, 10))
    writer.ensure_index(date(2026, 2, 10))

    assert len(buckets.created) == 1


def test_ensure_index_raises_schema_error_on_400():
    buckets = FakeBucketsAPI(create_error=ApiException(status=400, reason="Bad Request"))
    writer = IndexWriter(buckets_api=buckets, write_api=FakeWriteAPI(), org="org")

    with pytest.raises(SchemaRejectedError):
        writer.ensure_index(date(2026, 2, 10))


def test_write_splits_into_batches_of_ten():
    write_api = FakeWriteAPI()
    writer = IndexWriter(buckets_api=FakeBucketsAPI(), write_api=write_api, org="org")

    report = writer.write(_events(23), NOW)

    assert report.ok
    assert report.written == 23
    assert [len(call["record"]) for call in write_api.calls] == [10, 10, 3]
    first = write_api.calls[0]
    assert first["bucket"] == "sts_index_20260210"
    assert first["data_frame_measurement_name"] == "sts"
    assert "awb_no" in first["data_frame_tag_columns"]
    assert "is_stocked" not in first["data_frame_tag_columns"]


def test_write_keeps_going_after_failed_batch(_silence_alerts):
    write_api = FakeWriteAPI(fail_batches={1})
    writer = IndexWriter(buckets_api=FakeBucketsAPI(), write_api=write_api, org="org")

    report = writer.write(_events(25), NOW)

    assert len(write_api.calls) == 3
    assert report.failed_batches == [1]
    assert report.written == 15
    assert not report.ok
    assert len(_silence_alerts) == 1


def test_write_raises_schema_error_on_400():
    write_api = FakeWriteAPI(
        fail_batches={0}, error=ApiException(status=400, reason="Bad Request")
    )
    writer = IndexWriter(buckets_api=FakeBucketsAPI(), write_api=write_api, org="org")

    with pytest.raises(SchemaRejectedError):
        writer.write(_events(3), NOW)


def test_events_to_frame_uses_branch_suffixed_awb_and_utc_index():
    df = events_to_frame(_events(2))

    assert df["awb_no"].tolist() == ["1000", "1001-1"]
    assert df["is_stocked"].tolist() == [False, False]
    assert str(df.index.tz) == "UTC"
    assert df.index[0] == NOW


def test_events_to_frame_omits_blank_tags_in_line_protocol():
    ts = int(NOW.timestamp() * 1000)
    events = [
        StatusEvent(identifier="100", branch_seq="2", timestamp_ms=ts, status_code="50"),
        StatusEvent(
            identifier="200",
            branch_seq="0",
            timestamp_ms=ts,
            status_code="70",
            user_name="Tanaka",
            company_code="C001",
        ),
    ]

    lines = data_frame_to_list_of_points(
        events_to_frame(events),
        PointSettings(),
        precision=WritePrecision.MS,
        data_frame_measurement_name="sts",
        data_frame_tag_columns=list(STATUS_TAG_KEYS),
    )

    assert len(lines) == 2
    assert all("nan" not in line for line in lines)
    blank, filled = lines
    assert blank.startswith("sts,awb_no=100-2,")
    assert "igs_status=-1" in blank
    assert "last_updated_user=" not in blank
    assert "company_code=" not in blank
    assert "last_updated_user=Tanaka" in filled
    assert "company_code=C001" in filled
    assert filled.endswith(f" {ts}")
