"""
Read side of the daily status indices.

Why this module exists:
- timeline/metrics/API가 Flux 문자열과 FluxRecord 구조를 직접 다루지 않도록,
  store 경계에서 한 번 StatusEvent로 디코딩한다.
- 날짜별 bucket 구조를 숨기고 `[start, stop)` ms 구간 조회만 노출한다.
- bucket이 없는 날(보존 기간 밖/아직 데이터 없음)은 조용히 건너뛴다.
"""

from __future__ import annotations

from datetime import datetime, timezone

import pandas as pd
from influxdb_client.rest import ApiException

from utils.logger import get_logger
from utils.pipeline_contracts import (
    BASE_BRANCH_SEQ,
    CROSS_REF_UNCHECKED,
    FIELD_IS_STOCKED,
    STATUS_MEASUREMENT,
    TAG_AWB_NO,
    TAG_COMPANY_CODE,
    TAG_COMPANY_NAME,
    TAG_CROSS_REF_STATUS,
    TAG_SECTION_CODE,
    TAG_STATUS_CODE,
    TAG_USER_ID,
    TAG_USER_NAME,
    StatusEvent,
)
from utils.time_alignment import DAY_MS, utc_days_between
from workers.index_writer import status_index_name

logger = get_logger(__name__)

# 잘못된 from/to로 수백 개 bucket을 훑지 않도록 최근 N일만 조회한다.
MAX_QUERY_DAYS = 31


def _ms_to_datetime(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)


def _datetime_to_ms(value) -> int:
    if isinstance(value, pd.Timestamp):
        return int(value.value // 1_000_000)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and pd.isna(value):
        return ""
    return str(value)


def _event_from_values(values: dict, ts_ms: int, is_stocked) -> StatusEvent:
    # store의 awb_no는 이미 branch가 붙어 있으므로 branch는 "0"으로 둔다.
    return StatusEvent(
        identifier=_text(values.get(TAG_AWB_NO)),
        branch_seq=BASE_BRANCH_SEQ,
        timestamp_ms=ts_ms,
        status_code=_text(values.get(TAG_STATUS_CODE)),
        section_code=_text(values.get(TAG_SECTION_CODE)),
        company_code=_text(values.get(TAG_COMPANY_CODE)),
        company_name=_text(values.get(TAG_COMPANY_NAME)),
        user_name=_text(values.get(TAG_USER_NAME)),
        user_id=_text(values.get(TAG_USER_ID)),
        is_stocked=bool(is_stocked) if not pd.isna(is_stocked) else False,
        cross_ref_status=_text(values.get(TAG_CROSS_REF_STATUS)) or CROSS_REF_UNCHECKED,
    )


class StatusQueryStore:
    def __init__(self, query_api, *, max_query_days: int = MAX_QUERY_DAYS):
        self._query_api = query_api
        self._max_query_days = max_query_days

    def _day_windows(self, start_ms: int, stop_ms: int) -> list[tuple[str, int, int]]:
        """
        `[start, stop)`를 UTC 날짜별 (bucket, day_start, day_stop) 구간으로 자른다.
        """
        if stop_ms <= start_ms:
            return []
        days = utc_days_between(start_ms, stop_ms - 1)
        if len(days) > self._max_query_days:
            days = days[-self._max_query_days :]

        windows: list[tuple[str, int, int]] = []
        for day in days:
            day_start = int(
                datetime(day.year, day.month, day.day, tzinfo=timezone.utc).timestamp()
                * 1000
            )
            windows.append(
                (
                    status_index_name(day),
                    max(start_ms, day_start),
                    min(stop_ms, day_start + DAY_MS),
                )
            )
        return windows

    def _base_query(self, bucket: str) -> str:
        return f"""
        from(bucket: "{bucket}")
          |> range(start: params.start, stop: params.stop)
          |> filter(fn: (r) => r["_measurement"] == "{STATUS_MEASUREMENT}")
          |> filter(fn: (r) => r["_field"] == "{FIELD_IS_STOCKED}")
        """

    def _log_query_error(self, bucket: str, e: Exception) -> None:
        if isinstance(e, ApiException) and e.status == 404:
            logger.debug(f"[Store] {bucket} not found. skipped.")
            return
        logger.error(f"[Store] query failed on {bucket}: {e}")

    def query_events(self, awb_no: str, start_ms: int, stop_ms: int) -> list[StatusEvent]:
        """
        한 AWB의 `[start, stop)` 이벤트를 시간 오름차순으로 반환한다.

        Called from:
        - `workers.timeline.TimelineEngine.reconstruct`
        - `workers.metrics.MetricsAccumulator`

        조회 오류가 난 날짜는 로그 후 건너뛴다(부분 결과).
        """
        events: list[StatusEvent] = []
        for bucket, window_start, window_stop in self._day_windows(start_ms, stop_ms):
            query = (
                self._base_query(bucket)
                + f"""
          |> filter(fn: (r) => r["{TAG_AWB_NO}"] == params.awb)
          |> group()
          |> sort(columns: ["_time"])
        """
            )
            try:
                tables = self._query_api.query(
                    query,
                    params={
                        "start": _ms_to_datetime(window_start),
                        "stop": _ms_to_datetime(window_stop),
                        "awb": awb_no,
                    },
                )
            except Exception as e:
                self._log_query_error(bucket, e)
                continue

            for table in tables:
                for record in table.records:
                    events.append(
                        _event_from_values(
                            record.values,
                            _datetime_to_ms(record.get_time()),
                            record.get_value(),
                        )
                    )

        events.sort(key=lambda event: event.timestamp_ms)
        return events

    def query_latest_per_awb(self, start_ms: int, stop_ms: int) -> list[StatusEvent]:
        """
        `[start, stop)` 안에서 AWB별 가장 최근 이벤트 1건씩 (awb 오름차순).

        Called from:
        - `workers.timeline.TimelineEngine.latest_per_identifier`
        - `api.main.get_awb_list` (isupdate 필터)
        """
        frames: list[pd.DataFrame] = []
        for bucket, window_start, window_stop in self._day_windows(start_ms, stop_ms):
            query = (
                self._base_query(bucket)
                + f"""
          |> group(columns: ["{TAG_AWB_NO}"])
          |> sort(columns: ["_time"])
          |> last()
          |> group()
        """
            )
            try:
                result = self._query_api.query_data_frame(
                    query,
                    params={
                        "start": _ms_to_datetime(window_start),
                        "stop": _ms_to_datetime(window_stop),
                    },
                )
            except Exception as e:
                self._log_query_error(bucket, e)
                continue

            chunks = result if isinstance(result, list) else [result]
            for chunk in chunks:
                if chunk is not None and not chunk.empty:
                    frames.append(chunk)

        if not frames:
            return []

        df = pd.concat(frames, ignore_index=True)
        if TAG_AWB_NO not in df.columns or "_time" not in df.columns:
            return []
        df = df.dropna(subset=[TAG_AWB_NO])
        df["_time"] = pd.to_datetime(df["_time"], utc=True)
        df = df.sort_values("_time", kind="stable").groupby(TAG_AWB_NO).tail(1)
        df = df.sort_values(TAG_AWB_NO, kind="stable")

        return [
            _event_from_values(
                row,
                _datetime_to_ms(row["_time"]),
                row.get("_value"),
            )
            for row in df.to_dict("records")
        ]
