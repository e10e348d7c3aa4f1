"""
Daily status index writer (InfluxDB).

Why this module exists:
- status 문서는 UTC 날짜별 bucket(`sts_index_YYYYMMDD`)에 나눠 저장해서
  보존 기간 정리를 "bucket 삭제" 한 번으로 끝낸다.
- store는 schemaless이므로 measurement/tag/field 구성을 여기서 고정한다.
- bulk 요청 크기를 고정(batch)해 한 cycle이 큰 요청 하나로 실패하지 않게 한다.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Sequence

import pandas as pd
from influxdb_client import WritePrecision
from influxdb_client.rest import ApiException

from utils.alerts import send_alert
from utils.logger import get_logger
from utils.pipeline_contracts import (
    FIELD_IS_STOCKED,
    STATUS_MEASUREMENT,
    STATUS_TAG_KEYS,
    TAG_AWB_NO,
    TAG_COMPANY_CODE,
    TAG_COMPANY_NAME,
    TAG_CROSS_REF_STATUS,
    TAG_SECTION_CODE,
    TAG_STATUS_CODE,
    TAG_USER_ID,
    TAG_USER_NAME,
    SchemaRejectedError,
    StatusEvent,
)

logger = get_logger(__name__)

STATUS_INDEX_PREFIX = "sts_index_"
DEFAULT_BATCH_SIZE = 10


def status_index_name(day: date) -> str:
    return f"{STATUS_INDEX_PREFIX}{day.strftime('%Y%m%d')}"


def _utc_date(now: datetime) -> date:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).date()


def _is_schema_rejection(exc: Exception) -> bool:
    return isinstance(exc, ApiException) and exc.status == 400


def events_to_frame(events: Sequence[StatusEvent]) -> pd.DataFrame:
    """
    write_api DataFrame 입력 형태로 변환한다(index=UTC timestamp).
    """
    # 빈 문자열 tag는 None으로 넘겨야 serializer가 tag를 생략한다("nan" 문자열 방지).
    rows = [
        {
            "timestamp": event.timestamp_ms,
            TAG_AWB_NO: event.awb_no,
            TAG_STATUS_CODE: event.status_code or None,
            TAG_USER_NAME: event.user_name or None,
            TAG_USER_ID: event.user_id or None,
            TAG_COMPANY_NAME: event.company_name or None,
            TAG_COMPANY_CODE: event.company_code or None,
            TAG_SECTION_CODE: event.section_code or None,
            TAG_CROSS_REF_STATUS: event.cross_ref_status or None,
            FIELD_IS_STOCKED: bool(event.is_stocked),
        }
        for event in events
    ]
    df = pd.DataFrame(rows, columns=["timestamp", *STATUS_TAG_KEYS, FIELD_IS_STOCKED])
    df["timestamp"] = pd.to_datetime(df["timestamp"], unit="ms").dt.tz_localize("UTC")
    df.set_index("timestamp", inplace=True)
    return df


@dataclass
class WriteReport:
    index_name: str
    written: int = 0
    failed_batches: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed_batches


class IndexWriter:
    def __init__(
        self,
        *,
        buckets_api,
        write_api,
        org: str,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive.")
        self._buckets_api = buckets_api
        self._write_api = write_api
        self._org = org
        self._batch_size = batch_size
        self._known_indices: set[str] = set()

    def ensure_index(self, day: date) -> str:
        """
        해당 날짜 bucket이 없으면 만든다. 한 번 확인한 이름은 캐시한다.

        Raises:
        - SchemaRejectedError: store가 생성 요청을 400으로 거절
        """
        name = status_index_name(day)
        if name in self._known_indices:
            return name

        try:
            if self._buckets_api.find_bucket_by_name(name) is None:
                self._buckets_api.create_bucket(bucket_name=name, org=self._org)
                logger.info(f"[Index] created {name}")
        except ApiException as e:
            if e.status == 400:
                raise SchemaRejectedError(f"index creation rejected: {name} ({e})") from e
            # 다른 worker가 먼저 만든 경우
            if e.status != 422:
                raise
        self._known_indices.add(name)
        return name

    def prune_expired(self, now: datetime, retention_days: int) -> list[str]:
        """
        1..retention_days 일 전 bucket을 삭제한다(eager pruning).

        Called from:
        - `prepare` (프로세스 시작 시)
        """
        today = _utc_date(now)
        removed: list[str] = []
        for days_ago in range(1, retention_days + 1):
            name = status_index_name(today - timedelta(days=days_ago))
            try:
                bucket = self._buckets_api.find_bucket_by_name(name)
                if bucket is None:
                    continue
                self._buckets_api.delete_bucket(bucket)
            except ApiException as e:
                logger.error(f"[Index] failed to delete {name}: {e}")
                continue
            self._known_indices.discard(name)
            removed.append(name)
            logger.info(f"[Index] deleted expired {name}")
        return removed

    def prepare(self, now: datetime, retention_days: int) -> str:
        self.prune_expired(now, retention_days)
        return self.ensure_index(_utc_date(now))

    def write(self, events: Sequence[StatusEvent], now: datetime) -> WriteReport:
        """
        cycle 레코드를 batch 단위 bulk write로 저장한다.

        Called from:
        - `workers.ingest.run_status_cycle`

        Rules:
        - 실패한 batch는 로그/알림 후 건너뛰고 나머지 batch는 계속 보낸다.
        - 이미 성공한 batch는 되돌리지 않는다(부분 저장 허용).
        - 400 응답은 SchemaRejectedError로 즉시 중단한다.
        """
        index_name = self.ensure_index(_utc_date(now))
        report = WriteReport(index_name=index_name)
        if not events:
            return report

        for batch_no, offset in enumerate(range(0, len(events), self._batch_size)):
            batch = events[offset : offset + self._batch_size]
            try:
                self._write_api.write(
                    bucket=index_name,
                    org=self._org,
                    record=events_to_frame(batch),
                    data_frame_measurement_name=STATUS_MEASUREMENT,
                    data_frame_tag_columns=list(STATUS_TAG_KEYS),
                    write_precision=WritePrecision.MS,
                )
            except Exception as e:
                if _is_schema_rejection(e):
                    raise SchemaRejectedError(
                        f"bulk write rejected by {index_name}: {e}"
                    ) from e
                message = (
                    f"[Index] bulk batch {batch_no} failed "
                    f"({len(batch)} record(s)) on {index_name}: {e}"
                )
                logger.error(message)
                send_alert(message)
                report.failed_batches.append(batch_no)
                report.errors.append(str(e))
                continue
            report.written += len(batch)

        logger.info(
            f"[Index] {index_name}: wrote {report.written}/{len(events)} "
            f"(failed batches={len(report.failed_batches)})"
        )
        return report
