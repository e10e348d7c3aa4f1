"""
Pipeline runtime contracts (DTO + Enum + error taxonomy).

Why this module exists:
- ingest/presentation/timeline 사이를 오가는 레코드를 dict 대신 명시적인 타입으로 고정해
  필드 오타와 분기 누락을 줄인다.
- store 문서 스키마(tag/field 이름)를 writer와 reader가 같은 상수로 공유한다.
- 오류를 복구 가능/설정/스키마 계열로 나눠 호출부가 fatal 여부를 타입으로 판단하게 한다.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TypedDict

UTC_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# 교차 확인 결과가 아직 없는 식별자. "0"(확인했지만 일치 없음)과 구분된다.
CROSS_REF_UNCHECKED = "-1"
# 이벤트가 없는 timeline bucket의 상태 코드.
NO_DATA_STATUS = "NA"
# branch sequence "0"은 식별자에 붙이지 않는다.
BASE_BRANCH_SEQ = "0"

# ── Store document schema ──
STATUS_MEASUREMENT = "sts"
TAG_AWB_NO = "awb_no"
TAG_STATUS_CODE = "sts_code"
TAG_USER_NAME = "last_updated_user"
TAG_USER_ID = "last_updated_user_id"
TAG_COMPANY_NAME = "company_name"
TAG_COMPANY_CODE = "company_code"
TAG_SECTION_CODE = "section_code"
TAG_CROSS_REF_STATUS = "igs_status"
FIELD_IS_STOCKED = "is_stocked"
STATUS_TAG_KEYS = (
    TAG_AWB_NO,
    TAG_STATUS_CODE,
    TAG_USER_NAME,
    TAG_USER_ID,
    TAG_COMPANY_NAME,
    TAG_COMPANY_CODE,
    TAG_SECTION_CODE,
    TAG_CROSS_REF_STATUS,
)


def format_utc_datetime(value: datetime | None) -> str | None:
    """
    datetime을 프로젝트 표준 UTC 문자열로 직렬화한다.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        normalized = value.replace(tzinfo=timezone.utc)
    else:
        normalized = value.astimezone(timezone.utc)
    return normalized.strftime(UTC_DATETIME_FORMAT)


def format_epoch_ms(value_ms: int) -> str:
    """epoch milliseconds를 프로젝트 표준 UTC 문자열로 직렬화한다."""
    return format_utc_datetime(
        datetime.fromtimestamp(value_ms / 1000, tz=timezone.utc)
    ) or ""


def to_epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def compose_awb_no(identifier: str, branch_seq: str) -> str:
    """
    외부에 노출되는 AWB 번호를 만든다.

    - branch "0" -> "12345678"
    - branch "2" -> "12345678-2"
    """
    if branch_seq == BASE_BRANCH_SEQ:
        return identifier
    return f"{identifier}-{branch_seq}"


class FeedKind(str, Enum):
    """
    result channel에 올라오는 cycle 종류.
    """

    STATUS = "status"
    CROSS_REFERENCE = "cross_reference"


class QueryMode(str, Enum):
    """
    timeline 조회 시 시작/끝 경계 정렬 방식.
    """

    DEFAULT = "default"
    LATEST = "latest"
    UPDATE = "update"


class LockState(str, Enum):
    """
    공유 파일 lock 획득 상태.
    """

    IDLE = "idle"
    ACQUIRING = "acquiring"
    RETRYING = "retrying"
    FORCED_BREAK = "forced_break"
    ACQUIRED = "acquired"


class LivenessStatus(str, Enum):
    FINE = "Fine"
    DEAD = "Dead"


class PipelineError(Exception):
    """ingest pipeline 오류의 공통 부모."""


class LockAcquisitionError(PipelineError):
    """강제 해제 한도를 넘어서도 lock을 얻지 못했다. 다음 cycle에서 재시도한다."""


class FeedFormatError(PipelineError):
    """status export의 행 구조가 기대한 컬럼 수보다 짧다."""


class SchemaRejectedError(PipelineError):
    """store가 bucket 생성/쓰기를 malformed(400)로 거절했다. 복구 불가."""


class SettingsError(PipelineError, ValueError):
    """필수 설정이 비어 있다. 서비스 시작 전에 종료한다."""


@dataclass(frozen=True)
class StatusEvent:
    """
    status export 한 행(중복 제거/교차 확인 병합 후)이자 store의 한 문서.

    store에서 읽어 온 이벤트는 이미 branch가 붙은 `awb_no`를 identifier로 갖고
    branch_seq는 "0"이다.
    """

    identifier: str
    branch_seq: str
    timestamp_ms: int
    status_code: str
    section_code: str = ""
    company_code: str = ""
    company_name: str = ""
    user_name: str = ""
    user_id: str = ""
    is_stocked: bool = False
    cross_ref_status: str = CROSS_REF_UNCHECKED

    @property
    def awb_no(self) -> str:
        return compose_awb_no(self.identifier, self.branch_seq)

    @property
    def composite_key(self) -> str:
        return f"{self.identifier}-{self.branch_seq}"

    def to_payload(self) -> "LatestStatusPayload":
        return {
            "awbno": self.awb_no,
            "update_time": format_epoch_ms(self.timestamp_ms),
            "status_code": self.status_code,
            "section_code": self.section_code,
            "company_code": self.company_code,
            "company_name": self.company_name,
            "last_updated_user": self.user_name,
            "last_updated_id": self.user_id,
            "is_stocked": self.is_stocked,
            "igs_status": self.cross_ref_status,
        }


class LatestStatusPayload(TypedDict):
    awbno: str
    update_time: str
    status_code: str
    section_code: str
    company_code: str
    company_name: str
    last_updated_user: str
    last_updated_id: str
    is_stocked: bool
    igs_status: str


class TimelineBucketPayload(TypedDict):
    index: int
    awbno: str
    base_time: str
    time_span: int
    q: int
    status_code: str
    section_code: str
    company_code: str
    company_name: str
    last_updated_user: str
    last_updated_id: str
    is_stocked: bool
    igs_status: str


@dataclass(frozen=True)
class TimelineBucket:
    index: int
    awb_no: str
    base_time_ms: int
    span_minutes: int
    q: int
    status_code: str
    section_code: str = ""
    company_code: str = ""
    company_name: str = ""
    user_name: str = ""
    user_id: str = ""
    is_stocked: bool = False
    cross_ref_status: str = ""

    @property
    def start_ms(self) -> int:
        return self.base_time_ms + self.q * self.span_minutes * 60 * 1000

    @classmethod
    def filler(
        cls, *, index: int, awb_no: str, base_time_ms: int, q: int, span_minutes: int
    ) -> "TimelineBucket":
        return cls(
            index=index,
            awb_no=awb_no,
            base_time_ms=base_time_ms,
            span_minutes=span_minutes,
            q=q,
            status_code=NO_DATA_STATUS,
        )

    @classmethod
    def from_event(
        cls,
        event: StatusEvent,
        *,
        index: int,
        awb_no: str,
        base_time_ms: int,
        q: int,
        span_minutes: int,
    ) -> "TimelineBucket":
        return cls(
            index=index,
            awb_no=awb_no,
            base_time_ms=base_time_ms,
            span_minutes=span_minutes,
            q=q,
            status_code=event.status_code,
            section_code=event.section_code,
            company_code=event.company_code,
            company_name=event.company_name,
            user_name=event.user_name,
            user_id=event.user_id,
            is_stocked=event.is_stocked,
            cross_ref_status=event.cross_ref_status,
        )

    def to_payload(self) -> TimelineBucketPayload:
        return {
            "index": self.index,
            "awbno": self.awb_no,
            "base_time": format_epoch_ms(self.base_time_ms),
            "time_span": self.span_minutes,
            "q": self.q,
            "status_code": self.status_code,
            "section_code": self.section_code,
            "company_code": self.company_code,
            "company_name": self.company_name,
            "last_updated_user": self.user_name,
            "last_updated_id": self.user_id,
            "is_stocked": self.is_stocked,
            "igs_status": self.cross_ref_status,
        }


@dataclass(frozen=True)
class TimelineLabel:
    index: int
    time_ms: int

    def to_payload(self) -> dict:
        return {"time": format_epoch_ms(self.time_ms), "index": self.index}


class MetricsPayload(TypedDict):
    sakuttl: float
    sakucnt: int
    shinttl: float
    shincnt: int


@dataclass(frozen=True)
class MetricsSnapshot:
    """
    프로세스 수명 동안 단조 증가하는 duration 누적값.

    A: status 50대 -> 70 도달, B: 70 -> 72 도달.
    """

    count_a: int = 0
    total_minutes_a: float = 0.0
    count_b: int = 0
    total_minutes_b: float = 0.0

    def to_payload(self) -> MetricsPayload:
        return {
            "sakuttl": self.total_minutes_a,
            "sakucnt": self.count_a,
            "shinttl": self.total_minutes_b,
            "shincnt": self.count_b,
        }


class HealthPayload(TypedDict):
    laststsupdated: float
    lastigsupdated: float
    status: str


@dataclass(frozen=True)
class HealthState:
    last_status_update_ms: float
    last_cross_ref_update_ms: float
    status: LivenessStatus

    def to_payload(self) -> HealthPayload:
        return {
            "laststsupdated": self.last_status_update_ms,
            "lastigsupdated": self.last_cross_ref_update_ms,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class CycleResult:
    """
    ingest 루프 -> presentation 루프로 넘어가는 유일한 메시지.

    - records가 있으면 status cycle 성공
    - records/error 모두 None이면 cross-reference cycle 성공(liveness 신호)
    - error가 있으면 실패. status cycle은 부분 저장 실패를 records와 함께 실을 수 있다.
    """

    feed: FeedKind
    records: list[StatusEvent] | None = None
    error: str | None = None
    finished_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def carries_records(self) -> bool:
        return self.records is not None
