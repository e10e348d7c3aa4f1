"""
Ticker scheduling logic.

Why this module exists:
- pipeline_worker.py에서 timer due 계산을 분리해
  오케스트레이션 코드의 인지 부하를 줄인다.
- 이 함수들은 순수 계산 함수로 외부 의존이 없다.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum


class TimerSignal(str, Enum):
    STATUS = "status"
    CROSS_REFERENCE = "cross_reference"
    WATCHDOG = "watchdog"


# 같은 시각에 due면 watchdog -> status -> cross-reference 순으로 처리한다.
SIGNAL_PRIORITY = {
    TimerSignal.WATCHDOG: 0,
    TimerSignal.STATUS: 1,
    TimerSignal.CROSS_REFERENCE: 2,
}


def initialize_timer_group(
    now: datetime,
    *,
    status_interval: timedelta,
    cross_ref_interval: timedelta,
    watchdog_interval: timedelta,
    status_initial_delay: timedelta,
) -> dict[TimerSignal, datetime]:
    """
    timer group 시작 시각 기준 첫 due 시각.

    Called from:
    - `IngestionScheduler.run_timer_group` (시작/watchdog 재시작마다)

    - cross-reference: now + T2
    - status: now + 초기 지연 + T1
    - watchdog: now + Tw
    """
    return {
        TimerSignal.WATCHDOG: now + watchdog_interval,
        TimerSignal.STATUS: now + status_initial_delay + status_interval,
        TimerSignal.CROSS_REFERENCE: now + cross_ref_interval,
    }


def resolve_next_signal(
    now: datetime, next_due: dict[TimerSignal, datetime]
) -> tuple[TimerSignal | None, datetime]:
    """
    가장 먼저 due인 signal과 그 due 시각을 반환한다.

    아직 아무것도 due가 아니면 (None, 가장 가까운 due 시각).
    """
    signal, due_at = min(
        next_due.items(), key=lambda item: (item[1], SIGNAL_PRIORITY[item[0]])
    )
    if now < due_at:
        return None, due_at
    return signal, due_at


def advance_ticker(
    due_at: datetime, interval: timedelta, now: datetime
) -> tuple[datetime, int]:
    """
    실행한 tick 이후의 다음 due 시각과 놓친 tick 수를 계산한다.

    cycle이 길어져 여러 tick을 지나쳤으면 한 번만 실행하고 나머지는 건너뛴다
    (ticker semantics). 몇 개를 건너뛰었는지 세어 로그로 남긴다.
    """
    if interval <= timedelta(0):
        raise ValueError("interval must be positive.")

    next_due = due_at + interval
    missed = 0
    while next_due <= now:
        next_due += interval
        missed += 1
    return next_due, missed
