import logging
import os
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _resolve_level(raw: str | None) -> int:
    if not raw:
        return logging.INFO
    level = logging.getLevelName(raw.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def get_logger(name: str) -> logging.Logger:
    """
    모듈 단위 logger를 반환한다.

    - handler는 logger당 1회만 붙여 uvicorn reload/재import 시 중복 출력을 막는다.
    - 레벨은 LOG_LEVEL 환경 변수(기본 INFO)를 따른다.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(_resolve_level(os.getenv("LOG_LEVEL")))
        logger.propagate = False
    return logger
