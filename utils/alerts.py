import os

import requests

from utils.logger import get_logger

logger = get_logger(__name__)

DISCORD_WEBHOOK_URL = os.getenv("DISCORD_WEBHOOK_URL", "")


def send_alert(message: str) -> None:
    """
    디스코드 webhook으로 운영 알림을 보낸다.

    Called from:
    - 강제 lock 해제, bulk batch 실패, fatal schema 오류, worker 시작

    webhook이 없으면 로그만 남긴다. 알림 실패가 ingest cycle을 멈추지 않도록
    전송 오류는 로그로 흡수한다.
    """
    if not DISCORD_WEBHOOK_URL:
        logger.warning(f"[Alert Ignored] {message}")
        return

    try:
        payload = {"content": f"**AWB Status Worker Alert**\n```{message}```"}
        response = requests.post(DISCORD_WEBHOOK_URL, json=payload, timeout=5)
        response.raise_for_status()
    except Exception as e:
        logger.error(f"Failed to send alert: {e}")
