import re
from contextlib import asynccontextmanager
from typing import Mapping, Optional

import pandas as pd
from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from scripts.pipeline_worker import (
    build_runtime,
    create_influx_client,
    start_runtime,
    stop_runtime,
    write_gateway_page,
)
from scripts.worker_config import (
    PUBLIC_DIR,
    SERVE_STATIC,
    STATUS_TIMESPAN_MINUTES,
    UPDATE_LOOKBACK_MINUTES,
)
from utils.config import load_feed_settings
from utils.logger import get_logger
from utils.pipeline_contracts import QueryMode, StatusEvent
from utils.time_alignment import DAY_MS, MINUTE_MS
from workers.status_store import MAX_QUERY_DAYS
from workers.timeline import build_timeline_labels

logger = get_logger(__name__)

_INT_PATTERN = re.compile(r"-?\d+")

# 정렬 키 -> 캐시 컬럼
AWB_SORT_COLUMNS = {
    "awbno": "awbno",
    "update_user_id": "user_id",
    "update_user_name": "user_name",
    "last_updated": "timestamp_ms",
    "status": "status_code",
    "company_name": "company_name",
    "company_code": "company_code",
    "section_code": "section_code",
}
_AWB_FRAME_COLUMNS = list(dict.fromkeys(AWB_SORT_COLUMNS.values()))

client = None
runtime = None
presentation = None
timeline_engine = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global client, runtime, presentation, timeline_engine
    # 필수 설정이 없으면 여기서 SettingsError로 기동 실패
    settings = load_feed_settings()
    logger.info("Connecting to InfluxDB...")
    client = create_influx_client()
    runtime = build_runtime(settings, client)
    presentation = runtime.presentation
    timeline_engine = runtime.timeline_engine
    write_gateway_page(settings)
    start_runtime(runtime)
    yield

    logger.info("Stopping ingestion runtime...")
    stop_runtime(runtime)
    logger.info("Closing InfluxDB connection...")
    client.close()


app = FastAPI(title="AWB Status API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _parse_int(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    text = raw.strip()
    if not _INT_PATTERN.fullmatch(text):
        return None
    return int(text)


def _bad_request(content=None) -> JSONResponse:
    return JSONResponse(status_code=400, content=content)


def _exceeds_query_window(from_ms: int, to_ms: int) -> bool:
    # store는 최근 MAX_QUERY_DAYS일만 읽으므로 그보다 넓은 bucket 격자는 만들지 않는다.
    return to_ms - from_ms > MAX_QUERY_DAYS * DAY_MS


def _require_presentation():
    if presentation is None:
        raise HTTPException(status_code=503, detail="Not initialized yet.")
    return presentation


def _require_timeline_engine():
    if timeline_engine is None:
        raise HTTPException(status_code=503, detail="Not initialized yet.")
    return timeline_engine


def sorted_awb_numbers(
    statuses: Mapping[str, StatusEvent],
    *,
    sort: Optional[str] = None,
    isdesc: bool = False,
    user: Optional[str] = None,
    sts: Optional[str] = None,
) -> list[str]:
    """
    캐시 snapshot을 awb 오름차순으로 깐 뒤 정렬 키로 stable sort하고 user/sts로 거른다.
    같은 값끼리는 awb 오름차순이 유지된다.
    """
    rows = [
        {
            "awbno": awb_no,
            "user_id": event.user_id,
            "user_name": event.user_name,
            "timestamp_ms": event.timestamp_ms,
            "status_code": event.status_code,
            "company_name": event.company_name,
            "company_code": event.company_code,
            "section_code": event.section_code,
        }
        for awb_no, event in statuses.items()
    ]
    df = pd.DataFrame(rows, columns=_AWB_FRAME_COLUMNS)
    if df.empty:
        return []

    df = df.sort_values("awbno", kind="stable")
    column = AWB_SORT_COLUMNS.get(sort or "")
    if column is not None:
        df = df.sort_values(column, ascending=not isdesc, kind="stable")

    if user:
        df = df[df["user_name"] == user]
    if sts:
        df = df[df["status_code"] == sts]
    return df["awbno"].tolist()


def recently_updated_awbs(
    latest_rows, *, user: Optional[str] = None, sts: Optional[str] = None
) -> set[str]:
    """
    최근 구간에 이미 이벤트가 있는 AWB 중, 현재 user/sts 필터에 맞는 것.
    필터가 없으면 전부.
    """
    excluded: set[str] = set()
    for row in latest_rows:
        if user and row.user_name != user:
            continue
        if sts and row.status_code != sts:
            continue
        excluded.add(row.awb_no)
    return excluded


def paginate(awbnos: list[str], page: int, par: int) -> Optional[list[str]]:
    """범위를 벗어나면 None. 전체가 비어 있으면 빈 목록."""
    if not awbnos:
        return []
    start = page * par
    if start > len(awbnos) - 1:
        return None
    return awbnos[start : min((page + 1) * par, len(awbnos))]


@app.get("/api/status")
def get_status(
    key: Optional[str] = None,
    from_: Optional[str] = Query(None, alias="from"),
    to: Optional[str] = None,
    islatest: Optional[str] = None,
    isupdate: Optional[str] = None,
):
    """한 AWB의 dense timeline. 이벤트가 없으면 status=null."""
    from_ms = _parse_int(from_)
    to_ms = _parse_int(to)
    if from_ms is None or to_ms is None or not key:
        return _bad_request()
    if _exceeds_query_window(from_ms, to_ms):
        return _bad_request()

    mode = QueryMode.DEFAULT
    if islatest == "true":
        mode = QueryMode.LATEST
    elif isupdate == "true":
        mode = QueryMode.UPDATE

    engine = _require_timeline_engine()
    try:
        buckets = engine.reconstruct(key, from_ms, to_ms, STATUS_TIMESPAN_MINUTES, mode)
    except Exception as e:
        logger.error(f"[API] status query failed for {key}: {e}")
        buckets = None

    if buckets is None:
        return {"status": None}
    return {"status": [bucket.to_payload() for bucket in buckets]}


@app.get("/api/awb")
def get_awb_list(
    sort: Optional[str] = None,
    isdesc: Optional[str] = None,
    user: Optional[str] = None,
    sts: Optional[str] = None,
    isupdate: Optional[str] = None,
    lastupdated: Optional[str] = None,
    page: Optional[str] = None,
    par: Optional[str] = None,
):
    state = _require_presentation()
    awbnos = sorted_awb_numbers(
        state.latest_statuses(),
        sort=sort,
        isdesc=isdesc == "true",
        user=user,
        sts=sts,
    )

    if isupdate == "true":
        last_ms = _parse_int(lastupdated)
        latest_rows = []
        if last_ms is not None:
            window_ms = UPDATE_LOOKBACK_MINUTES * MINUTE_MS
            since_ms = (last_ms - window_ms) // window_ms * window_ms
            try:
                latest_rows = _require_timeline_engine().latest_per_identifier(
                    since_ms, last_ms, UPDATE_LOOKBACK_MINUTES
                )
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"[API] latest awb query failed: {e}")
        excluded = recently_updated_awbs(latest_rows, user=user, sts=sts)
        awbnos = [awb_no for awb_no in awbnos if awb_no not in excluded]

    total = len(awbnos)
    if page is not None and par is not None:
        page_no = _parse_int(page)
        per_page = _parse_int(par)
        if page_no is None or per_page is None or page_no < 0 or per_page < 0:
            return _bad_request({"ttl": 0, "awbnos": None})
        paged = paginate(awbnos, page_no, per_page)
        if paged is None:
            return _bad_request({"ttl": 0, "awbnos": None})
        awbnos = paged

    return {"ttl": total, "awbnos": awbnos}


@app.get("/api/user")
def get_users(status: Optional[str] = None):
    state = _require_presentation()
    users = {
        event.user_name
        for event in state.latest_statuses().values()
        if event.user_name and (not status or event.status_code == status)
    }
    return {"users": sorted(users)}


@app.get("/api/stslist")
def get_status_codes():
    state = _require_presentation()
    codes = {event.status_code for event in state.latest_statuses().values()}
    return {"statuscodes": sorted(codes)}


@app.get("/api/timeline")
def get_timeline(
    from_: Optional[str] = Query(None, alias="from"),
    to: Optional[str] = None,
    timespan: Optional[str] = None,
    islatest: Optional[str] = None,
):
    span = _parse_int(timespan)
    if span is None or span < 1:
        return _bad_request()
    from_ms = _parse_int(from_)
    to_ms = _parse_int(to)
    if from_ms is None or to_ms is None:
        return _bad_request()
    if _exceeds_query_window(from_ms, to_ms):
        return _bad_request()

    labels = build_timeline_labels(from_ms, to_ms, span, latest=islatest == "true")
    return {"timeline": [label.to_payload() for label in labels]}


@app.get("/api/metrics")
def get_metrics():
    return _require_presentation().metrics_snapshot().to_payload()


@app.get("/api/deadoralive")
def get_dead_or_alive():
    return _require_presentation().health_state().to_payload()


if SERVE_STATIC and PUBLIC_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(PUBLIC_DIR), html=True), name="public")
