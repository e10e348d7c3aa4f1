"""
Status export parser.

Why this module exists:
- 외부 exporter가 쓰는 Shift-JIS CSV는 헤더/EOF sentinel/중복 행을 그대로 포함한다.
- 이 모듈이 "파일 -> 중복 제거된 StatusEvent 목록"까지 책임지고,
  store 저장/lock은 `workers.ingest`가 맡는다.
"""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

from utils.cross_reference import CrossReferenceStore
from utils.logger import get_logger
from utils.pipeline_contracts import FeedFormatError, StatusEvent

logger = get_logger(__name__)

FEED_ENCODING = "cp932"
EOF_SENTINEL = "\x1a"

# exporter 컬럼 위치 (0-based)
COL_SECTION_CODE = 1
COL_IDENTIFIER = 2
COL_BRANCH_SEQ = 3
COL_COMPANY_CODE = 5
COL_COMPANY_NAME = 6
COL_STATUS_CODE = 7
COL_USER_ID = 11
COL_USER_NAME = 12
MIN_COLUMNS = COL_USER_NAME + 1


@dataclass(frozen=True)
class FeedRecord:
    """timestamp/교차 확인 병합 전의 CSV 한 행."""

    identifier: str
    branch_seq: str
    status_code: str
    section_code: str
    company_code: str
    company_name: str
    user_id: str
    user_name: str

    @property
    def composite_key(self) -> tuple[str, str]:
        return (self.identifier, self.branch_seq)


def _is_blank_row(row: list[str]) -> bool:
    if not row:
        return True
    if row[0].startswith(EOF_SENTINEL):
        return True
    return all(not cell.strip() for cell in row)


def _row_to_record(row: list[str], line_no: int) -> FeedRecord:
    if len(row) < MIN_COLUMNS:
        raise FeedFormatError(
            f"line {line_no}: expected at least {MIN_COLUMNS} columns, got {len(row)}"
        )
    return FeedRecord(
        identifier=row[COL_IDENTIFIER].strip(),
        branch_seq=row[COL_BRANCH_SEQ].strip(),
        status_code=row[COL_STATUS_CODE].strip(),
        section_code=row[COL_SECTION_CODE].strip(),
        company_code=row[COL_COMPANY_CODE].strip(),
        company_name=row[COL_COMPANY_NAME].strip(),
        user_id=row[COL_USER_ID].strip(),
        user_name=row[COL_USER_NAME].strip(),
    )


def iter_feed_rows(text: str) -> Iterator[FeedRecord]:
    """
    디코딩된 CSV 텍스트에서 헤더/빈 줄/EOF sentinel을 건너뛰고 행을 낸다.
    """
    reader = csv.reader(io.StringIO(text, newline=""))
    for line_no, row in enumerate(reader, start=1):
        if line_no == 1:
            continue
        if _is_blank_row(row):
            continue
        yield _row_to_record(row, line_no)


def collapse_consecutive(records: Iterable[FeedRecord]) -> list[FeedRecord]:
    """
    연속된 같은 (identifier, branch) 행을 마지막 행 하나로 접는다.

    키가 바뀔 때 직전 레코드를 내보내고, 스트림 끝에서 한 번 더 flush한다.
    떨어져 있는 같은 키는 접지 않는다(exporter가 키 순으로 정렬해서 준다).
    """
    collapsed: list[FeedRecord] = []
    previous: FeedRecord | None = None
    for record in records:
        if previous is not None and previous.composite_key != record.composite_key:
            collapsed.append(previous)
        previous = record
    if previous is not None:
        collapsed.append(previous)
    return collapsed


def parse_status_text(text: str) -> list[FeedRecord]:
    return collapse_consecutive(iter_feed_rows(text))


def parse_status_file(path: str | Path) -> list[FeedRecord]:
    """
    status export 파일을 읽어 중복 제거된 행 목록을 반환한다.

    Called from:
    - `workers.ingest.run_status_cycle` (status lock 보유 중)

    Raises:
    - FileNotFoundError: export 파일이 없다.
    - FeedFormatError: 컬럼 수가 모자란 행이 있다.
    """
    raw = Path(path).read_bytes()
    text = raw.decode(FEED_ENCODING, errors="replace")
    records = parse_status_text(text)
    logger.debug(f"[STS] parsed {len(records)} record(s) from {path}")
    return records


def enrich_records(
    records: Iterable[FeedRecord],
    cross_ref_store: CrossReferenceStore,
    ingested_at_ms: int,
) -> list[StatusEvent]:
    """
    교차 확인 상태와 cycle timestamp를 붙여 StatusEvent로 만든다.

    - 교차 확인 조회 키는 branch를 붙이지 않은 identifier
    - 한 cycle의 모든 레코드는 같은 timestamp를 공유한다
    """
    return [
        StatusEvent(
            identifier=record.identifier,
            branch_seq=record.branch_seq,
            timestamp_ms=ingested_at_ms,
            status_code=record.status_code,
            section_code=record.section_code,
            company_code=record.company_code,
            company_name=record.company_name,
            user_name=record.user_name,
            user_id=record.user_id,
            cross_ref_status=cross_ref_store.status_for(record.identifier),
        )
        for record in records
    ]
