"""
Gateway discovery page.

사내 공유 폴더에 이 호스트의 사설 IPv4 주소 링크를 담은 HTML을 써 두면,
사용자가 서버 주소를 몰라도 그 파일을 열어 대시보드로 들어갈 수 있다.
"""

from __future__ import annotations

import ipaddress
import socket
from pathlib import Path
from typing import Iterable

from utils.file_io import atomic_write_text
from utils.logger import get_logger

logger = get_logger(__name__)

GATEWAY_LINK_LABEL = "ここをクリック！"
# 실제로 패킷을 보내지 않는다. UDP connect로 라우팅 테이블이 고른 로컬 주소만 얻는다.
ROUTE_LOOKUP_TARGET = ("10.255.255.255", 1)


def _route_local_address() -> str | None:
    """기본 경로로 나갈 때 쓰이는 로컬 IPv4 주소. 경로가 없으면 None."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(ROUTE_LOOKUP_TARGET)
        return sock.getsockname()[0]
    except OSError as e:
        logger.debug(f"[Gateway] route address lookup failed: {e}")
        return None
    finally:
        sock.close()


def discover_private_ipv4(candidates: Iterable[str] | None = None) -> list[str]:
    """
    loopback이 아닌 사설 IPv4 주소 목록(중복 제거, 발견 순서 유지).
    """
    if candidates is None:
        try:
            infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
        except socket.gaierror as e:
            logger.warning(f"[Gateway] host address lookup failed: {e}")
            infos = []
        candidates = [info[4][0] for info in infos]
        # hostname이 127.0.1.1로만 풀리는 호스트가 있어 경로 주소를 함께 본다.
        routed = _route_local_address()
        if routed:
            candidates.append(routed)

    addresses: list[str] = []
    for raw in candidates:
        try:
            ip = ipaddress.ip_address(raw)
        except ValueError:
            continue
        if ip.version != 4 or ip.is_loopback or not ip.is_private:
            continue
        if raw not in addresses:
            addresses.append(raw)
    return addresses


def render_gateway_html(addresses: Iterable[str], port: int) -> str:
    lines = ["<HTML>", "<BODY>"]
    for address in addresses:
        url = f"http://{address}:{port}/"
        lines.append(f'<A href = "{url}">{GATEWAY_LINK_LABEL}</A><BR>')
    lines.extend(["</BODY>", "</HTML>"])
    return "\n".join(lines) + "\n"


def publish_gateway_page(
    gateway_dir: str | Path,
    filename: str,
    *,
    port: int,
    addresses: Iterable[str] | None = None,
) -> Path | None:
    """
    Called from:
    - `scripts.pipeline_worker.write_gateway_page` (서비스 시작 시)

    대상 폴더가 없으면 로그만 남기고 None.
    """
    directory = Path(gateway_dir)
    if not directory.is_dir():
        logger.warning(f"[Gateway] directory does not exist or is not accessible: {directory}")
        return None

    resolved = discover_private_ipv4(addresses)
    target = directory / filename
    atomic_write_text(target, render_gateway_html(resolved, port))
    logger.info(f"[Gateway] wrote {len(resolved)} link(s) -> {target}")
    return target
