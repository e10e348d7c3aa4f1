"""
Cross-reference worklist export.

Why this module exists:
- 교차 확인이 필요한 AWB(status "75", 아직 확인 전이거나 불일치 "0")를
  외부 조회 도구가 읽는 xlsx 첫 시트 A열에 매 status cycle마다 덮어쓴다.
- 외부 도구와 파일을 공유하므로 status export와 별도의 lock 아래에서 쓴다.
"""

from __future__ import annotations

import io
from pathlib import Path
from typing import Iterable

import openpyxl

from utils.file_io import atomic_write_bytes
from utils.file_lock import LockedFileExchange
from utils.logger import get_logger
from utils.pipeline_contracts import CROSS_REF_UNCHECKED, StatusEvent

logger = get_logger(__name__)

WORKLIST_STATUS_CODE = "75"
WORKLIST_CROSS_REF_STATES = frozenset({"0", CROSS_REF_UNCHECKED})
DEFAULT_SHEET_TITLE = "Sheet1"


def select_worklist_identifiers(events: Iterable[StatusEvent]) -> list[str]:
    """
    worklist 대상 식별자(branch 없는 bare identifier, 중복 제거, 오름차순).
    """
    selected = {
        event.identifier
        for event in events
        if event.status_code == WORKLIST_STATUS_CODE
        and event.cross_ref_status in WORKLIST_CROSS_REF_STATES
    }
    return sorted(selected)


def render_worklist(path: str | Path, identifiers: list[str]) -> bytes:
    """
    기존 파일이 있으면 첫 시트 이름/나머지 시트를 유지한 채 첫 시트만 새로 만든다.
    """
    file_path = Path(path)
    if file_path.exists():
        workbook = openpyxl.load_workbook(str(file_path))
        first = workbook.worksheets[0]
        title = first.title
        workbook.remove(first)
        sheet = workbook.create_sheet(title=title, index=0)
        workbook.active = 0
    else:
        workbook = openpyxl.Workbook()
        sheet = workbook.active
        sheet.title = DEFAULT_SHEET_TITLE

    for row, identifier in enumerate(identifiers, start=1):
        sheet.cell(row=row, column=1, value=identifier)

    buffer = io.BytesIO()
    workbook.save(buffer)
    workbook.close()
    return buffer.getvalue()


def export_worklist(
    events: Iterable[StatusEvent],
    path: str | Path,
    *,
    exchange: LockedFileExchange,
    lock_paths: tuple[Path, Path],
) -> int:
    """
    Called from:
    - `workers.ingest.run_status_cycle` (status lock 해제 후)

    Returns:
    - 기록한 식별자 수
    """
    identifiers = select_worklist_identifiers(events)
    lock_path, link_target = lock_paths
    with exchange.acquire(lock_path, link_target):
        atomic_write_bytes(path, render_worklist(path, identifiers))
    logger.info(f"[STS75] worklist written: {len(identifiers)} awb(s) -> {path}")
    return len(identifiers)
