"""
Cooperative file lock shared with the external exporter.

Why this module exists:
- 외부 mainframe export 프로세스와 같은 파일을 주고받기 때문에, 읽기/쓰기 전에
  `os.link(target, lock)`의 원자성(이미 있으면 실패)을 lock으로 사용한다.
- exporter가 lock을 잡은 채 죽으면 파이프라인이 영구 정지하므로,
  일정 횟수 실패 후 lock 파일을 강제 삭제한다(liveness 우선 정책).
"""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

from utils.alerts import send_alert
from utils.logger import get_logger
from utils.pipeline_contracts import LockAcquisitionError, LockState

logger = get_logger(__name__)

DEFAULT_RETRY_INTERVAL_SECONDS = 1.0
DEFAULT_MAX_FAILED_ATTEMPTS = 30
DEFAULT_MAX_FORCED_BREAKS = 3


@dataclass(frozen=True)
class LockHandle:
    lock_path: Path
    target_path: Path
    acquired_at: datetime
    attempts: int
    forced_breaks: int


class LockedFileExchange:
    def __init__(
        self,
        *,
        retry_interval_seconds: float = DEFAULT_RETRY_INTERVAL_SECONDS,
        max_failed_attempts: int = DEFAULT_MAX_FAILED_ATTEMPTS,
        max_forced_breaks: int = DEFAULT_MAX_FORCED_BREAKS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
          - retry_interval_seconds: 실패 후 재시도 간격
          - max_failed_attempts: 이 횟수를 초과해 연속 실패하면 lock 파일을 강제 삭제
          - max_forced_breaks: 강제 삭제 후에도 계속 실패할 때의 상한.
            넘으면 LockAcquisitionError (다음 cycle에서 재시도)
        """
        self._retry_interval_seconds = retry_interval_seconds
        self._max_failed_attempts = max_failed_attempts
        self._max_forced_breaks = max_forced_breaks
        self._sleep = sleep
        self.state = LockState.IDLE

    def _try_link(self, lock_path: Path, target_path: Path) -> bool:
        try:
            os.link(target_path, lock_path)
        except OSError as e:
            logger.debug(f"[Lock] link failed: {lock_path} ({e})")
            return False
        return True

    def _force_break(self, lock_path: Path) -> None:
        message = (
            f"[Lock] lock not released after {self._max_failed_attempts} retries. "
            f"forcing removal: {lock_path}"
        )
        logger.warning(message)
        send_alert(message)
        try:
            os.remove(lock_path)
        except FileNotFoundError:
            pass

    def _acquire(self, lock_path: Path, target_path: Path) -> LockHandle:
        """
        상태 전이: IDLE -> ACQUIRING -> (ACQUIRED | RETRYING) -> FORCED_BREAK -> ACQUIRING
        """
        failed_attempts = 0
        total_attempts = 0
        forced_breaks = 0

        while True:
            self.state = LockState.ACQUIRING
            total_attempts += 1
            if self._try_link(lock_path, target_path):
                self.state = LockState.ACQUIRED
                return LockHandle(
                    lock_path=lock_path,
                    target_path=target_path,
                    acquired_at=datetime.now(timezone.utc),
                    attempts=total_attempts,
                    forced_breaks=forced_breaks,
                )

            failed_attempts += 1
            if failed_attempts <= self._max_failed_attempts:
                self.state = LockState.RETRYING
                self._sleep(self._retry_interval_seconds)
                continue

            if forced_breaks >= self._max_forced_breaks:
                self.state = LockState.IDLE
                raise LockAcquisitionError(
                    f"Could not acquire {lock_path} after "
                    f"{forced_breaks} forced break(s)."
                )

            self.state = LockState.FORCED_BREAK
            self._force_break(lock_path)
            forced_breaks += 1
            failed_attempts = 0

    def _release(self, handle: LockHandle) -> None:
        try:
            os.remove(handle.lock_path)
        except FileNotFoundError:
            # 상대 프로세스가 이미 강제 해제한 경우
            logger.warning(f"[Lock] lock already removed: {handle.lock_path}")
        finally:
            self.state = LockState.IDLE

    @contextmanager
    def acquire(
        self, lock_path: str | Path, target_path: str | Path
    ) -> Iterator[LockHandle]:
        """
        lock을 얻고 본문 실행 후 반드시 해제한다(본문 예외 포함).

        Called from:
        - `workers.ingest.run_status_cycle`
        - `workers.ingest.run_cross_reference_cycle`
        - `workers.worklist.export_worklist`
        """
        handle = self._acquire(Path(lock_path), Path(target_path))
        if handle.forced_breaks:
            logger.info(
                f"[Lock] acquired after forced break: {handle.lock_path} "
                f"attempts={handle.attempts}"
            )
        try:
            yield handle
        finally:
            self._release(handle)
