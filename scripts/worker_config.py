"""
Worker configuration constants.

Why this module exists:
- pipeline_worker.py / api.main의 상수와 설정값을 분리해 오케스트레이션 코드의 인지 부하를 줄인다.
- 상수 변경 시 영향 범위를 이 파일로 한정한다.

Note:
- 파일 교환 경로(lock/feed/worklist/gateway)는 `utils.config.load_feed_settings`가
  시작 시점에 검증한다. 여기는 기본값이 있는 운영 파라미터만 둔다.
"""

import os
from pathlib import Path

from utils.config import _parse_bool_env, _parse_csv_env, _parse_positive_int_env

# ── InfluxDB ──
INFLUXDB_URL = os.getenv("INFLUXDB_URL", "http://localhost:8086")
INFLUXDB_TOKEN = os.getenv("INFLUXDB_TOKEN")
INFLUXDB_ORG = os.getenv("INFLUXDB_ORG")
INFLUXDB_TIMEOUT_MS = _parse_positive_int_env("INFLUXDB_TIMEOUT_MS", 10_000)

# ── Paths ──
BASE_DIR = Path(__file__).resolve().parent.parent
PUBLIC_DIR = Path(os.getenv("PUBLIC_DIR", str(BASE_DIR / "public")))
SERVE_STATIC = _parse_bool_env(os.getenv("SERVE_STATIC"), default=True)

# ── HTTP ──
HTTP_HOST = os.getenv("HTTP_HOST", "0.0.0.0")
HTTP_PORT = _parse_positive_int_env("HTTP_PORT", 8080)
# 주소 탐지가 틀리는 호스트에서 gateway 링크 주소를 직접 지정한다(쉼표 구분).
GATEWAY_ADDRESSES = _parse_csv_env("GATEWAY_ADDRESSES")

# ── Scheduler ──
STATUS_INTERVAL_SECONDS = _parse_positive_int_env("STATUS_INTERVAL_SECONDS", 90)
CROSS_REF_INTERVAL_SECONDS = _parse_positive_int_env("CROSS_REF_INTERVAL_SECONDS", 30)
WATCHDOG_INTERVAL_SECONDS = _parse_positive_int_env("WATCHDOG_INTERVAL_SECONDS", 30 * 60)
STATUS_INITIAL_DELAY_SECONDS = _parse_positive_int_env("STATUS_INITIAL_DELAY_SECONDS", 5)
RESULT_PUT_TIMEOUT_SECONDS = 1.0

# ── Lock retry policy ──
LOCK_RETRY_INTERVAL_SECONDS = 1.0
LOCK_MAX_FAILED_ATTEMPTS = _parse_positive_int_env("LOCK_MAX_FAILED_ATTEMPTS", 30)
LOCK_MAX_FORCED_BREAKS = _parse_positive_int_env("LOCK_MAX_FORCED_BREAKS", 3)

# ── Index writer ──
BULK_BATCH_SIZE = _parse_positive_int_env("BULK_BATCH_SIZE", 10)

# ── Read side ──
STATUS_TIMESPAN_MINUTES = 10
UPDATE_LOOKBACK_MINUTES = 10
HEALTH_DEAD_AFTER_MINUTES = _parse_positive_int_env("HEALTH_DEAD_AFTER_MINUTES", 10)
