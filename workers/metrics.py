"""
Threshold-crossing duration metrics.

Why this module exists:
- 작업 단계(status 50대 -> 70, 70 -> 72)에 걸린 시간을 프로세스 수명 동안
  누적해 `/api/metrics`로 노출한다.
- status code는 두 자리 문자열이므로 비교는 모두 문자열(lexicographic) 비교다.

Rules:
- AWB 하나는 pair마다 최대 한 번만 집계된다(seen set은 커지기만 한다).
- 오늘(UTC) 안에서 crossing을 증명하지 못하면 0분으로 보고 누적하지 않지만
  seen에는 넣어 다시 조회하지 않는다.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Sequence

from utils.logger import get_logger
from utils.pipeline_contracts import MetricsSnapshot, StatusEvent, to_epoch_ms
from utils.time_alignment import MINUTE_MS, utc_day_start_ms

logger = get_logger(__name__)


@dataclass(frozen=True)
class ThresholdPair:
    name: str
    lower: str
    upper: str


PAIR_A = ThresholdPair(name="saku", lower="50", upper="70")
PAIR_B = ThresholdPair(name="shin", lower="70", upper="72")
DEFAULT_THRESHOLD_PAIRS = (PAIR_A, PAIR_B)


def measure_crossing_minutes(
    events: Sequence[StatusEvent], lower: str, upper: str
) -> float:
    """
    오름차순 이벤트에서 lower -> upper 도달 시간(분)을 구한다.

    1) 처음으로 `< lower`인 이벤트 (오늘 crossing이 일어났다는 증거)
    2) 그 뒤 처음으로 `>= lower`인 이벤트 = 시작
    3) 그 뒤 처음으로 `>= upper`인 이벤트 = 끝

    어느 단계든 찾지 못하면 0.0.
    """
    cursor = 0
    total = len(events)

    while cursor < total and not events[cursor].status_code < lower:
        cursor += 1
    if cursor >= total:
        return 0.0
    cursor += 1

    while cursor < total and not events[cursor].status_code >= lower:
        cursor += 1
    if cursor >= total:
        return 0.0
    start = events[cursor]
    cursor += 1

    while cursor < total and not events[cursor].status_code >= upper:
        cursor += 1
    if cursor >= total:
        return 0.0
    end = events[cursor]

    return (end.timestamp_ms - start.timestamp_ms) / MINUTE_MS


class MetricsAccumulator:
    def __init__(self, store, pairs: Sequence[ThresholdPair] = DEFAULT_THRESHOLD_PAIRS):
        """
        Args:
          - store: `query_events(awb_no, start_ms, stop_ms)`를 제공하는 객체
          - pairs: (A, B) 순서의 threshold pair
        """
        if len(pairs) != 2:
            raise ValueError("MetricsAccumulator expects exactly two threshold pairs.")
        self._store = store
        self._pairs = tuple(pairs)
        self._seen: dict[str, set[str]] = {pair.name: set() for pair in self._pairs}
        self._counts: dict[str, int] = {pair.name: 0 for pair in self._pairs}
        self._totals: dict[str, float] = {pair.name: 0.0 for pair in self._pairs}
        self._snapshot = MetricsSnapshot()

    def seen(self, pair_name: str) -> frozenset[str]:
        return frozenset(self._seen[pair_name])

    def _candidates(
        self, records: Iterable[StatusEvent], pair: ThresholdPair
    ) -> list[str]:
        seen = self._seen[pair.name]
        picked: set[str] = set()
        candidates: list[str] = []
        for record in records:
            awb_no = record.awb_no
            if awb_no in seen or awb_no in picked:
                continue
            if record.status_code >= pair.upper:
                picked.add(awb_no)
                candidates.append(awb_no)
        return candidates

    def _measure(self, awb_no: str, pair: ThresholdPair, day_start_ms: int, now_ms: int) -> float:
        try:
            events = self._store.query_events(awb_no, day_start_ms, now_ms)
        except Exception as e:
            logger.error(f"[Metrics] event query failed for {awb_no}: {e}")
            return 0.0
        return measure_crossing_minutes(events, pair.lower, pair.upper)

    def process(self, records: Sequence[StatusEvent], now: datetime | None = None) -> MetricsSnapshot:
        """
        cycle 레코드에서 새로 upper에 도달한 AWB의 duration을 누적한다.

        Called from:
        - `workers.presentation.PresentationState.apply_result` (cache 재구성 직후)
        """
        now = now or datetime.now(timezone.utc)
        now_ms = to_epoch_ms(now)
        day_start_ms = utc_day_start_ms(now)

        for pair in self._pairs:
            candidates = self._candidates(records, pair)
            for awb_no in candidates:
                minutes = self._measure(awb_no, pair, day_start_ms, now_ms)
                if minutes != 0:
                    self._counts[pair.name] += 1
                    self._totals[pair.name] += minutes
            self._seen[pair.name].update(candidates)
            if candidates:
                logger.debug(
                    f"[Metrics] {pair.name}: checked={len(candidates)} "
                    f"count={self._counts[pair.name]}"
                )

        pair_a, pair_b = self._pairs
        self._snapshot = MetricsSnapshot(
            count_a=self._counts[pair_a.name],
            total_minutes_a=self._totals[pair_a.name],
            count_b=self._counts[pair_b.name],
            total_minutes_b=self._totals[pair_b.name],
        )
        return self._snapshot

    def snapshot(self) -> MetricsSnapshot:
        return self._snapshot
