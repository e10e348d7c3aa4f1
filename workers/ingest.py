"""
Ingest cycle bodies.

Why this module exists:
- `scripts.pipeline_worker`는 timer/채널 orchestration에 집중하고,
  실제 한 cycle(lock -> 읽기 -> 저장 -> 해제)의 순서와 오류 판정은 여기로 모은다.
- cycle 결과는 항상 `CycleResult` 하나로 돌려준다. fatal(`SchemaRejectedError`)만 예외로 올린다.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from utils.config import FeedSettings
from utils.cross_reference import CrossReferenceStore
from utils.file_lock import LockedFileExchange
from utils.logger import get_logger
from utils.pipeline_contracts import (
    CycleResult,
    FeedFormatError,
    FeedKind,
    LockAcquisitionError,
    to_epoch_ms,
)
from workers.feed_parser import FEED_ENCODING, enrich_records, parse_status_file
from workers.index_writer import IndexWriter
from workers.worklist import export_worklist

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IngestContext:
    settings: FeedSettings
    cross_ref_store: CrossReferenceStore
    writer: IndexWriter
    exchange: LockedFileExchange = field(default_factory=LockedFileExchange)
    clock: Callable[[], datetime] = _utc_now


def find_prefixed_files(folder: str | Path, prefix: str) -> list[Path]:
    """
    folder 아래(하위 폴더 포함)에서 이름이 prefix로 시작하는 파일을 이름순으로 찾는다.
    """
    root = Path(folder)
    if not root.is_dir():
        return []
    matched: list[Path] = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            if filename.startswith(prefix):
                matched.append(Path(dirpath) / filename)
    return sorted(matched, key=lambda path: (path.name, str(path)))


def read_feed_lines(paths: list[Path]) -> list[str]:
    """CRLF/LF 모두 허용. 빈 줄은 버리고 양끝 공백을 제거한다."""
    lines: list[str] = []
    for path in paths:
        text = path.read_bytes().decode(FEED_ENCODING, errors="replace")
        for line in text.splitlines():
            stripped = line.strip()
            if stripped:
                lines.append(stripped)
    return lines


def pair_by_position(
    identifiers: list[str], outcomes: list[str]
) -> list[tuple[str, str]]:
    """
    i번째 식별자와 i번째 결과를 짝짓는다. 남는 쪽은 버린다.
    """
    if len(identifiers) != len(outcomes):
        logger.warning(
            f"[IGS] line count mismatch: identifiers={len(identifiers)} "
            f"outcomes={len(outcomes)}. excess lines are dropped."
        )
    return list(zip(identifiers, outcomes))


def ingest_cross_reference_files(ctx: IngestContext) -> int | None:
    """
    교차 확인 파일 쌍을 읽어 store에 반영하고 소비한 파일을 지운다.

    Called from:
    - `run_cross_reference_cycle` (cross-reference lock 보유 중)

    Returns:
    - 반영한 쌍 수. 어느 한쪽 파일이 없으면 None(no-op, 파일 삭제 없음)
    """
    settings = ctx.settings
    identifier_files = find_prefixed_files(
        settings.cross_ref_folder, settings.cross_ref_identifier_prefix
    )
    if not identifier_files:
        logger.info("[IGS] no identifier file. skipped.")
        return None

    outcome_files = find_prefixed_files(
        settings.cross_ref_folder, settings.cross_ref_outcome_prefix
    )
    if not outcome_files:
        logger.info("[IGS] no outcome file. skipped.")
        return None

    pairs = pair_by_position(
        read_feed_lines(identifier_files), read_feed_lines(outcome_files)
    )
    applied = ctx.cross_ref_store.update(pairs)

    for path in [*identifier_files, *outcome_files]:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
    logger.info(
        f"[IGS] applied {applied} pair(s) from {len(identifier_files)}+"
        f"{len(outcome_files)} file(s). store size={len(ctx.cross_ref_store)}"
    )
    return applied


def run_cross_reference_cycle(ctx: IngestContext) -> CycleResult:
    """
    Called from:
    - `scripts.pipeline_worker.IngestionScheduler` (cross-reference tick)

    성공하면 records=None, error=None 결과(교차 확인 feed liveness 신호)를 돌려준다.
    """
    lock_path, link_target = ctx.settings.cross_ref_lock_paths
    try:
        with ctx.exchange.acquire(lock_path, link_target):
            ingest_cross_reference_files(ctx)
    except (LockAcquisitionError, OSError) as e:
        logger.error(f"[IGS] cycle failed: {e}")
        return CycleResult(feed=FeedKind.CROSS_REFERENCE, error=str(e))
    return CycleResult(feed=FeedKind.CROSS_REFERENCE)


def run_status_cycle(ctx: IngestContext) -> CycleResult:
    """
    status export 한 번을 처리한다.

    Called from:
    - `scripts.pipeline_worker.IngestionScheduler` (status tick)

    순서:
    1) status lock -> 파싱/병합 -> batch 저장 -> lock 해제
    2) worklist lock -> worklist 덮어쓰기 -> lock 해제

    Raises:
    - SchemaRejectedError: store가 쓰기를 malformed로 거절 (fatal)
    """
    settings = ctx.settings
    lock_path, link_target = settings.status_lock_paths

    try:
        with ctx.exchange.acquire(lock_path, link_target):
            records = parse_status_file(settings.status_file)
            # cycle timestamp는 lock 획득과 파일 읽기 이후 시각
            now = ctx.clock()
            events = enrich_records(records, ctx.cross_ref_store, to_epoch_ms(now))
            report = ctx.writer.write(events, now)
    except (LockAcquisitionError, FeedFormatError, OSError) as e:
        logger.error(f"[STS] cycle failed: {e}")
        return CycleResult(feed=FeedKind.STATUS, error=str(e))

    errors: list[str] = []
    if not report.ok:
        errors.append(
            f"{len(report.failed_batches)} bulk batch(es) failed on {report.index_name}"
        )

    try:
        export_worklist(
            events,
            settings.worklist_file,
            exchange=ctx.exchange,
            lock_paths=settings.worklist_lock_paths,
        )
    except Exception as e:
        logger.error(f"[STS75] worklist export failed: {e}")
        errors.append(f"worklist export failed: {e}")

    logger.info(f"[STS] cycle done: {len(events)} record(s), written={report.written}")
    return CycleResult(
        feed=FeedKind.STATUS,
        records=events,
        error="; ".join(errors) if errors else None,
    )
