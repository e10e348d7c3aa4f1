"""
Hour-aligned bucket grid used by timeline reconstruction and the axis calendar.

Time is split into hours (fixed 3,600,000 ms) and every hour into
`quarters = ceil(hour / span)` buckets of `span` width. A bucket is identified by
`(hour_start, q)`; stepping past the last quarter rolls into the next hour, so
bucket boundaries restart at every hour even when the span does not divide it.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from utils.pipeline_contracts import QueryMode

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


def _to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def span_to_ms(span_minutes: int) -> int:
    if span_minutes < 1:
        raise ValueError("Timespan must be at least one minute.")
    return span_minutes * MINUTE_MS


def quarters_per_hour(span_ms: int) -> int:
    # ceil(HOUR_MS / span_ms)
    return (HOUR_MS - 1) // span_ms + 1


def floor_hour(ts_ms: int) -> int:
    return (ts_ms // HOUR_MS) * HOUR_MS


def ceil_hour(ts_ms: int) -> int:
    return ((ts_ms + HOUR_MS - 1) // HOUR_MS) * HOUR_MS


@dataclass(frozen=True, order=True)
class BucketCoordinate:
    hour_start_ms: int
    q: int

    def start_ms(self, span_ms: int) -> int:
        return self.hour_start_ms + self.q * span_ms

    def next(self, quarters: int) -> "BucketCoordinate":
        if self.q + 1 < quarters:
            return BucketCoordinate(self.hour_start_ms, self.q + 1)
        return BucketCoordinate(self.hour_start_ms + HOUR_MS, 0)


def bucket_of(ts_ms: int, span_ms: int) -> BucketCoordinate:
    hour_start = floor_hour(ts_ms)
    return BucketCoordinate(hour_start, (ts_ms - hour_start) // span_ms)


def buckets_between(
    start: BucketCoordinate, end: BucketCoordinate, quarters: int
) -> int:
    """
    `start`에서 `end`에 도달하기까지의 step 수 (= start 포함, end 제외 bucket 수).
    end가 start보다 앞이면 0 이하를 반환한다.
    """
    hour_delta = (end.hour_start_ms - start.hour_start_ms) // HOUR_MS
    return quarters * hour_delta + end.q - start.q


def align_range_start(
    from_ms: int, span_ms: int, mode: QueryMode
) -> BucketCoordinate:
    """
    조회 구간의 첫 bucket.

    - default/update: `from`이 속한 hour의 첫 bucket
    - latest: `from`이 속한 bucket
    """
    if mode == QueryMode.LATEST:
        return bucket_of(from_ms, span_ms)
    return BucketCoordinate(floor_hour(from_ms), 0)


def align_range_end(
    to_ms: int, span_ms: int, mode: QueryMode
) -> BucketCoordinate:
    """
    조회 구간의 끝 bucket (exclusive).

    - default: `to`를 hour 단위로 올림한 경계
    - latest/update: `to`가 속한 bucket까지 포함
    """
    if mode == QueryMode.DEFAULT:
        return BucketCoordinate(ceil_hour(to_ms), 0)
    quarters = quarters_per_hour(span_ms)
    return bucket_of(to_ms, span_ms).next(quarters)


def align_label_range(
    from_ms: int, to_ms: int, span_ms: int, *, latest: bool
) -> tuple[BucketCoordinate, BucketCoordinate]:
    """
    axis calendar용 [start, end) bucket 범위.

    - default: hour 내림/올림
    - latest: span 내림/올림 (hour grid 기준)
    """
    if not latest:
        return (
            BucketCoordinate(floor_hour(from_ms), 0),
            BucketCoordinate(ceil_hour(to_ms), 0),
        )

    quarters = quarters_per_hour(span_ms)
    start = bucket_of(from_ms, span_ms)
    end = bucket_of(to_ms, span_ms)
    if end.start_ms(span_ms) != to_ms:
        end = end.next(quarters)
    return start, end


def utc_day_start_ms(now: datetime) -> int:
    now_utc = _to_utc(now)
    midnight = now_utc.replace(hour=0, minute=0, second=0, microsecond=0)
    return int(midnight.timestamp() * 1000)


def utc_date_of_ms(ts_ms: int) -> date:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).date()


def utc_days_between(from_ms: int, to_ms: int) -> list[date]:
    """[from, to] 구간이 걸치는 UTC 날짜 목록(오름차순)."""
    if to_ms < from_ms:
        return []
    first = utc_date_of_ms(from_ms)
    last = utc_date_of_ms(to_ms)
    days: list[date] = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days
