"""
Result consumer: the single writer of the read-side state.

Why this module exists:
- ingest 스레드와 HTTP 스레드가 같은 dict를 직접 만지지 않도록,
  cache/metrics/health 갱신은 이 consumer 하나만 한다.
- HTTP handler는 `PresentationState`의 snapshot 메서드만 호출한다.
"""

from __future__ import annotations

import queue
import threading
from datetime import datetime, timezone
from typing import Callable, Mapping

from utils.health import HealthMonitor
from utils.logger import get_logger
from utils.pipeline_contracts import (
    CycleResult,
    FeedKind,
    HealthState,
    MetricsSnapshot,
    StatusEvent,
)
from utils.status_cache import StatusCache
from workers.metrics import MetricsAccumulator

logger = get_logger(__name__)

RESULT_POLL_SECONDS = 1.0


class PresentationState:
    def __init__(
        self,
        *,
        cache: StatusCache,
        metrics: MetricsAccumulator,
        health: HealthMonitor,
    ):
        self.cache = cache
        self.metrics = metrics
        self.health = health

    def apply_result(self, result: CycleResult, now: datetime | None = None) -> None:
        """
        cycle 결과 하나를 반영한다.

        - error만 있는 결과: 로그만 남기고 상태는 그대로
        - records가 있는 결과: status 시각 갱신 -> cache 재구성 -> metrics
        - records/error 모두 없는 결과: 교차 확인 feed의 liveness 신호
        """
        now = now or datetime.now(timezone.utc)

        if result.error is not None:
            logger.error(f"[Consumer] {result.feed.value} cycle failed: {result.error}")

        if result.carries_records:
            records = result.records or []
            self.health.mark_status_update(now)
            size = self.cache.rebuild(records)
            self.metrics.process(records, now)
            logger.debug(f"[Consumer] cache rebuilt: {size} awb(s)")
            return

        if result.error is None and result.feed == FeedKind.CROSS_REFERENCE:
            self.health.mark_cross_ref_update(now)

    def latest_statuses(self) -> Mapping[str, StatusEvent]:
        return self.cache.snapshot()

    def metrics_snapshot(self) -> MetricsSnapshot:
        return self.metrics.snapshot()

    def health_state(self, now: datetime | None = None) -> HealthState:
        return self.health.evaluate(now)


def consume_results(
    results: "queue.Queue[CycleResult]",
    state: PresentationState,
    stop_event: threading.Event,
    *,
    poll_seconds: float = RESULT_POLL_SECONDS,
    clock: Callable[[], datetime] | None = None,
) -> int:
    """
    stop_event가 설정될 때까지 result channel을 비우며 반영한다.

    Called from:
    - `scripts.pipeline_worker.start_runtime` (consumer 스레드)

    Returns:
    - 처리한 결과 수
    """
    clock = clock or (lambda: datetime.now(timezone.utc))
    handled = 0
    while not stop_event.is_set():
        try:
            result = results.get(timeout=poll_seconds)
        except queue.Empty:
            continue
        try:
            state.apply_result(result, clock())
        except Exception as e:
            logger.exception(f"[Consumer] failed to apply {result.feed.value} result: {e}")
        finally:
            results.task_done()
        handled += 1
    return handled
