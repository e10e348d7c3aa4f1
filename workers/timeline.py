"""
Dense timeline reconstruction.

Why this module exists:
- store에는 "상태가 바뀐 시점"만 띄엄띄엄 저장된다. 화면은 hour grid 위의
  빈틈 없는 bucket 열을 기대하므로, 조회 시점에 carry-forward로 채운다.
- 계산(build_*)은 순수 함수로 두고, store 조회는 `TimelineEngine`만 한다.

Rules:
- bucket은 그 bucket 안 마지막 이벤트의 상태를 갖는다(last value per bucket).
- 실제 bucket 다음에는 다음 이벤트 bucket 직전까지 NA filler가 온다.
- 이벤트가 0건이면 빈 목록이 아니라 None(no data)을 반환한다.
"""

from __future__ import annotations

from typing import Sequence

from utils.logger import get_logger
from utils.pipeline_contracts import (
    QueryMode,
    StatusEvent,
    TimelineBucket,
    TimelineLabel,
)
from utils.time_alignment import (
    BucketCoordinate,
    align_label_range,
    align_range_end,
    align_range_start,
    bucket_of,
    buckets_between,
    quarters_per_hour,
    span_to_ms,
)

logger = get_logger(__name__)


class _BucketSink:
    """index를 매기며 bucket을 쌓는다."""

    def __init__(self, awb_no: str, span_minutes: int, quarters: int):
        self.awb_no = awb_no
        self.span_minutes = span_minutes
        self.quarters = quarters
        self.buckets: list[TimelineBucket] = []

    def fill(self, start: BucketCoordinate, count: int) -> None:
        coord = start
        for _ in range(max(count, 0)):
            self.buckets.append(
                TimelineBucket.filler(
                    index=len(self.buckets),
                    awb_no=self.awb_no,
                    base_time_ms=coord.hour_start_ms,
                    q=coord.q,
                    span_minutes=self.span_minutes,
                )
            )
            coord = coord.next(self.quarters)

    def fill_until(self, start: BucketCoordinate, end: BucketCoordinate) -> None:
        self.fill(start, buckets_between(start, end, self.quarters))

    def real(self, event: StatusEvent, coord: BucketCoordinate) -> None:
        self.buckets.append(
            TimelineBucket.from_event(
                event,
                index=len(self.buckets),
                awb_no=self.awb_no,
                base_time_ms=coord.hour_start_ms,
                q=coord.q,
                span_minutes=self.span_minutes,
            )
        )


def build_timeline(
    awb_no: str,
    events: Sequence[StatusEvent],
    from_ms: int,
    to_ms: int,
    span_minutes: int,
    mode: QueryMode = QueryMode.DEFAULT,
) -> list[TimelineBucket] | None:
    """
    시간 오름차순 이벤트를 hour grid 위의 연속 bucket 열로 만든다.

    Args:
      - events: `[from, to]` 안의 이벤트(오름차순)
      - mode: 시작/끝 경계 정렬 방식만 바꾼다. step 규칙은 동일하다.
    """
    if not events:
        return None

    span_ms = span_to_ms(span_minutes)
    quarters = quarters_per_hour(span_ms)
    range_start = align_range_start(from_ms, span_ms, mode)
    range_end = align_range_end(to_ms, span_ms, mode)

    sink = _BucketSink(awb_no, span_minutes, quarters)

    previous = events[0]
    previous_coord = bucket_of(previous.timestamp_ms, span_ms)
    sink.fill_until(range_start, previous_coord)

    for event in events[1:]:
        coord = bucket_of(event.timestamp_ms, span_ms)
        if coord != previous_coord:
            # 다음 bucket 이벤트가 와야 이전 bucket 값이 확정된다.
            sink.real(previous, previous_coord)
            sink.fill_until(previous_coord.next(quarters), coord)
            previous_coord = coord
        previous = event

    sink.real(previous, previous_coord)
    sink.fill_until(previous_coord.next(quarters), range_end)
    return sink.buckets


def build_latest_rows(
    events: Sequence[StatusEvent], span_minutes: int
) -> list[TimelineBucket]:
    """AWB별 최신 이벤트 1건씩을 자기 bucket 좌표에 놓는다(filler 없음)."""
    span_ms = span_to_ms(span_minutes)
    rows: list[TimelineBucket] = []
    for index, event in enumerate(events):
        coord = bucket_of(event.timestamp_ms, span_ms)
        rows.append(
            TimelineBucket.from_event(
                event,
                index=index,
                awb_no=event.awb_no,
                base_time_ms=coord.hour_start_ms,
                q=coord.q,
                span_minutes=span_minutes,
            )
        )
    return rows


def build_timeline_labels(
    from_ms: int, to_ms: int, span_minutes: int, *, latest: bool = False
) -> list[TimelineLabel]:
    """
    상태 없이 bucket 경계만 나열한 축 달력.

    - default: hour 경계로 내림/올림
    - latest: span 경계로 내림/올림
    """
    span_ms = span_to_ms(span_minutes)
    quarters = quarters_per_hour(span_ms)
    start, end = align_label_range(from_ms, to_ms, span_ms, latest=latest)

    labels: list[TimelineLabel] = []
    coord = start
    for index in range(max(buckets_between(start, end, quarters), 0)):
        labels.append(TimelineLabel(index=index, time_ms=coord.start_ms(span_ms)))
        coord = coord.next(quarters)
    return labels


class TimelineEngine:
    def __init__(self, store):
        """
        Args:
          - store: `workers.status_store.StatusQueryStore` 호환 객체
            (`query_events`, `query_latest_per_awb`)
        """
        self._store = store

    def reconstruct(
        self,
        awb_no: str,
        from_ms: int,
        to_ms: int,
        span_minutes: int,
        mode: QueryMode = QueryMode.DEFAULT,
    ) -> list[TimelineBucket] | None:
        """
        Called from:
        - `api.main.get_status` (`/api/status`)
        """
        # store 구간은 stop exclusive라서 `to`를 포함하도록 1ms 늘린다.
        events = self._store.query_events(awb_no, from_ms, to_ms + 1)
        if not events:
            logger.debug(f"[Timeline] no events for {awb_no} in [{from_ms}, {to_ms}]")
            return None
        return build_timeline(awb_no, events, from_ms, to_ms, span_minutes, mode)

    def latest_per_identifier(
        self, from_ms: int, to_ms: int, span_minutes: int
    ) -> list[TimelineBucket]:
        """
        `[from, to)` 안에서 AWB별 최신 이벤트 1행씩.

        Called from:
        - `api.main.get_awb_list` (isupdate)
        """
        events = self._store.query_latest_per_awb(from_ms, to_ms)
        return build_latest_rows(events, span_minutes)
