from datetime import datetime, timedelta, timezone

from utils.pipeline_contracts import HealthState, LivenessStatus, to_epoch_ms

DEFAULT_DEAD_AFTER = timedelta(minutes=10)


def classify_liveness(
    last_status_update_ms: float,
    last_cross_ref_update_ms: float,
    now_ms: float,
    dead_after: timedelta = DEFAULT_DEAD_AFTER,
) -> LivenessStatus:
    """두 feed 중 하나라도 dead_after보다 오래 조용하면 Dead."""
    if dead_after <= timedelta(0):
        raise ValueError("dead_after must be positive.")

    limit_ms = dead_after.total_seconds() * 1000
    oldest_age = max(now_ms - last_status_update_ms, now_ms - last_cross_ref_update_ms)
    if oldest_age > limit_ms:
        return LivenessStatus.DEAD
    return LivenessStatus.FINE


class HealthMonitor:
    """
    feed별 마지막 성공 시각을 들고 liveness를 판정한다.

    writer는 result consumer 스레드 하나뿐이고, reader(API)는 float 두 개를 읽기만 한다.
    """

    def __init__(
        self,
        started_at: datetime | None = None,
        dead_after: timedelta = DEFAULT_DEAD_AFTER,
    ):
        started_ms = float(to_epoch_ms(started_at or datetime.now(timezone.utc)))
        self._last_status_update_ms = started_ms
        self._last_cross_ref_update_ms = started_ms
        self._dead_after = dead_after

    def mark_status_update(self, now: datetime) -> None:
        self._last_status_update_ms = float(to_epoch_ms(now))

    def mark_cross_ref_update(self, now: datetime) -> None:
        self._last_cross_ref_update_ms = float(to_epoch_ms(now))

    def evaluate(self, now: datetime | None = None) -> HealthState:
        now_ms = float(to_epoch_ms(now or datetime.now(timezone.utc)))
        last_status = self._last_status_update_ms
        last_cross_ref = self._last_cross_ref_update_ms
        return HealthState(
            last_status_update_ms=last_status,
            last_cross_ref_update_ms=last_cross_ref,
            status=classify_liveness(
                last_status, last_cross_ref, now_ms, self._dead_after
            ),
        )
