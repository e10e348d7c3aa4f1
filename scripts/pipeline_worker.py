"""
Pipeline worker orchestrator.

Why this file exists:
- Runtime orchestration(timer group, watchdog 재시작, result channel, fatal 처리)을 한곳에서 제어한다.
- 실제 cycle 본문(ingest/timeline/metrics)은 workers/*로 분리해 변경 폭을 줄인다.

즉, 이 파일은 "비즈니스 계산"보다 "운영 제어면(control-plane)"에 집중한다.
"""

import os
import queue
import signal
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from influxdb_client import InfluxDBClient
from influxdb_client.client.write_api import SYNCHRONOUS

from scripts.gateway_page import publish_gateway_page
from scripts.worker_config import (
    BULK_BATCH_SIZE,
    CROSS_REF_INTERVAL_SECONDS,
    GATEWAY_ADDRESSES,
    HEALTH_DEAD_AFTER_MINUTES,
    HTTP_PORT,
    INFLUXDB_ORG,
    INFLUXDB_TIMEOUT_MS,
    INFLUXDB_TOKEN,
    INFLUXDB_URL,
    LOCK_MAX_FAILED_ATTEMPTS,
    LOCK_MAX_FORCED_BREAKS,
    LOCK_RETRY_INTERVAL_SECONDS,
    RESULT_PUT_TIMEOUT_SECONDS,
    STATUS_INITIAL_DELAY_SECONDS,
    STATUS_INTERVAL_SECONDS,
    WATCHDOG_INTERVAL_SECONDS,
)
from scripts.worker_scheduling import (
    TimerSignal,
    advance_ticker,
    initialize_timer_group,
    resolve_next_signal,
)
from utils.alerts import send_alert
from utils.config import FeedSettings
from utils.cross_reference import CrossReferenceStore
from utils.file_lock import LockedFileExchange
from utils.health import HealthMonitor
from utils.logger import get_logger
from utils.pipeline_contracts import CycleResult, FeedKind, SchemaRejectedError
from utils.status_cache import StatusCache
from workers.index_writer import IndexWriter
from workers.ingest import IngestContext, run_cross_reference_cycle, run_status_cycle
from workers.metrics import MetricsAccumulator
from workers.presentation import PresentationState, consume_results
from workers.status_store import StatusQueryStore
from workers.timeline import TimelineEngine

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _terminate_process(exc: BaseException) -> None:
    """
    복구 불가 오류(schema 거절)에서 프로세스를 내린다.

    uvicorn이 SIGTERM을 받아 lifespan shutdown을 정상 수행하게 한다.
    """
    logger.critical(f"[Scheduler] fatal error. terminating process: {exc}")
    os.kill(os.getpid(), signal.SIGTERM)


class IngestionScheduler:
    """
    status / cross-reference / watchdog 세 timer를 하나의 루프에서 dispatch한다.

    - cycle 본문은 루프 스레드에서 동기 실행한다(한 순간에 cycle 하나).
    - 모든 결과는 result channel에 blocking put 한다(backpressure).
    - watchdog이 울리면 timer group 전체를 새로 만든다.
    """

    def __init__(
        self,
        *,
        ingest_ctx: IngestContext,
        results: "queue.Queue[CycleResult]",
        stop_event: threading.Event,
        status_interval: timedelta = timedelta(seconds=STATUS_INTERVAL_SECONDS),
        cross_ref_interval: timedelta = timedelta(seconds=CROSS_REF_INTERVAL_SECONDS),
        watchdog_interval: timedelta = timedelta(seconds=WATCHDOG_INTERVAL_SECONDS),
        status_initial_delay: timedelta = timedelta(seconds=STATUS_INITIAL_DELAY_SECONDS),
        clock: Callable[[], datetime] = _utc_now,
        wait: Callable[[float], bool] | None = None,
        on_fatal: Callable[[BaseException], None] = _terminate_process,
        status_cycle: Callable[[IngestContext], CycleResult] = run_status_cycle,
        cross_ref_cycle: Callable[[IngestContext], CycleResult] = run_cross_reference_cycle,
        put_timeout_seconds: float = RESULT_PUT_TIMEOUT_SECONDS,
    ):
        self.ingest_ctx = ingest_ctx
        self.results = results
        self.stop_event = stop_event
        self.intervals = {
            TimerSignal.STATUS: status_interval,
            TimerSignal.CROSS_REFERENCE: cross_ref_interval,
            TimerSignal.WATCHDOG: watchdog_interval,
        }
        self.status_initial_delay = status_initial_delay
        self.clock = clock
        self.wait = wait or stop_event.wait
        self.on_fatal = on_fatal
        self.cycles = {
            TimerSignal.STATUS: status_cycle,
            TimerSignal.CROSS_REFERENCE: cross_ref_cycle,
        }
        self.put_timeout_seconds = put_timeout_seconds
        self.group_restarts = 0

    def publish(self, result: CycleResult) -> bool:
        """
        consumer가 받아갈 때까지 기다린다. stop 신호가 오면 포기하고 False.
        """
        while not self.stop_event.is_set():
            try:
                self.results.put(result, timeout=self.put_timeout_seconds)
                return True
            except queue.Full:
                continue
        return False

    def run_cycle(self, timer: TimerSignal) -> CycleResult | None:
        """
        cycle 하나를 실행하고 결과를 publish한다. fatal이면 None.
        """
        feed = (
            FeedKind.STATUS if timer == TimerSignal.STATUS else FeedKind.CROSS_REFERENCE
        )
        try:
            result = self.cycles[timer](self.ingest_ctx)
        except SchemaRejectedError as e:
            message = f"[Scheduler] schema rejected by store: {e}"
            logger.critical(message)
            send_alert(message)
            self.stop_event.set()
            self.on_fatal(e)
            return None
        except Exception as e:
            logger.error(
                f"[Scheduler] {feed.value} cycle crashed:\n{traceback.format_exc()}"
            )
            result = CycleResult(feed=feed, error=str(e))

        self.publish(result)
        return result

    def run_timer_group(self) -> bool:
        """
        timer group 하나를 watchdog이 울릴 때까지 돌린다.

        Returns:
        - True: watchdog 재시작 필요
        - False: stop/fatal로 종료
        """
        next_due = initialize_timer_group(
            self.clock(),
            status_interval=self.intervals[TimerSignal.STATUS],
            cross_ref_interval=self.intervals[TimerSignal.CROSS_REFERENCE],
            watchdog_interval=self.intervals[TimerSignal.WATCHDOG],
            status_initial_delay=self.status_initial_delay,
        )

        while not self.stop_event.is_set():
            now = self.clock()
            timer, due_at = resolve_next_signal(now, next_due)
            if timer is None:
                if self.wait(max((due_at - now).total_seconds(), 0.0)):
                    return False
                continue

            if timer == TimerSignal.WATCHDOG:
                logger.info("[Scheduler] watchdog fired. restarting timer group.")
                return True

            if self.run_cycle(timer) is None:
                return False

            next_due[timer], missed = advance_ticker(
                due_at, self.intervals[timer], self.clock()
            )
            if missed:
                logger.warning(
                    f"[Scheduler] {timer.value} cycle overran. skipped {missed} tick(s)."
                )
        return False

    def run(self) -> None:
        logger.info(
            "[Scheduler] started. "
            f"status={self.intervals[TimerSignal.STATUS].total_seconds():.0f}s "
            f"cross_ref={self.intervals[TimerSignal.CROSS_REFERENCE].total_seconds():.0f}s "
            f"watchdog={self.intervals[TimerSignal.WATCHDOG].total_seconds():.0f}s"
        )
        while self.run_timer_group():
            self.group_restarts += 1
        logger.info("[Scheduler] stopped.")


@dataclass
class WorkerRuntime:
    scheduler: IngestionScheduler
    presentation: PresentationState
    timeline_engine: TimelineEngine
    results: "queue.Queue[CycleResult]"
    stop_event: threading.Event
    threads: list[threading.Thread] = field(default_factory=list)


def create_influx_client() -> InfluxDBClient:
    return InfluxDBClient(
        url=INFLUXDB_URL,
        token=INFLUXDB_TOKEN,
        org=INFLUXDB_ORG,
        timeout=INFLUXDB_TIMEOUT_MS,
    )


def build_runtime(
    settings: FeedSettings,
    client: InfluxDBClient,
    *,
    now: datetime | None = None,
) -> WorkerRuntime:
    """
    store/cache/scheduler 객체 그래프를 조립하고 오늘 index를 준비한다.

    Called from:
    - `api.main.lifespan` (서비스 시작 시 1회)

    Raises:
    - SchemaRejectedError: index 생성이 거절됨 (서비스 시작 실패)
    """
    now = now or _utc_now()
    writer = IndexWriter(
        buckets_api=client.buckets_api(),
        write_api=client.write_api(write_options=SYNCHRONOUS),
        org=INFLUXDB_ORG,
        batch_size=BULK_BATCH_SIZE,
    )
    writer.prepare(now, settings.retention_days)

    store = StatusQueryStore(client.query_api())
    ingest_ctx = IngestContext(
        settings=settings,
        cross_ref_store=CrossReferenceStore(),
        writer=writer,
        exchange=LockedFileExchange(
            retry_interval_seconds=LOCK_RETRY_INTERVAL_SECONDS,
            max_failed_attempts=LOCK_MAX_FAILED_ATTEMPTS,
            max_forced_breaks=LOCK_MAX_FORCED_BREAKS,
        ),
    )
    presentation = PresentationState(
        cache=StatusCache(),
        metrics=MetricsAccumulator(store),
        health=HealthMonitor(
            started_at=now, dead_after=timedelta(minutes=HEALTH_DEAD_AFTER_MINUTES)
        ),
    )

    # unbuffered 채널 대신 크기 1 queue + blocking put
    results: "queue.Queue[CycleResult]" = queue.Queue(maxsize=1)
    stop_event = threading.Event()
    scheduler = IngestionScheduler(
        ingest_ctx=ingest_ctx, results=results, stop_event=stop_event
    )
    return WorkerRuntime(
        scheduler=scheduler,
        presentation=presentation,
        timeline_engine=TimelineEngine(store),
        results=results,
        stop_event=stop_event,
    )


def start_runtime(runtime: WorkerRuntime) -> None:
    consumer = threading.Thread(
        target=consume_results,
        args=(runtime.results, runtime.presentation, runtime.stop_event),
        name="result-consumer",
        daemon=True,
    )
    ingestion = threading.Thread(
        target=runtime.scheduler.run, name="ingestion-scheduler", daemon=True
    )
    consumer.start()
    ingestion.start()
    runtime.threads.extend([consumer, ingestion])
    send_alert("Worker Started.")


def stop_runtime(runtime: WorkerRuntime, timeout: float = 5.0) -> None:
    runtime.stop_event.set()
    for thread in runtime.threads:
        thread.join(timeout=timeout)
        if thread.is_alive():
            # lock 재시도/store 요청 중이면 늦게 끝난다. daemon이라 프로세스와 함께 종료된다.
            logger.warning(f"[Scheduler] {thread.name} did not stop within {timeout}s")


def write_gateway_page(settings: FeedSettings) -> None:
    try:
        publish_gateway_page(
            settings.gateway_dir,
            settings.gateway_filename,
            port=HTTP_PORT,
            addresses=GATEWAY_ADDRESSES,
        )
    except OSError as e:
        logger.error(f"[Gateway] failed to write page: {e}")
