import os
import tempfile
from pathlib import Path


def atomic_write_bytes(path: str | Path, payload: bytes) -> None:
    """
    파일을 쓰다가 죽어도 기존 파일이 깨지지 않게 만듦(안전 장치)
    worklist(xlsx)/gateway(html)처럼 외부 프로세스가 읽는 산출물에 사용
    """
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=str(file_path.parent), prefix=f".{file_path.name}."
    )
    try:
        with os.fdopen(fd, "wb") as temp_file:
            temp_file.write(payload)
            temp_file.flush()
            os.fsync(temp_file.fileno())
        os.replace(temp_path, file_path)
        os.chmod(file_path, 0o644)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)


def atomic_write_text(
    path: str | Path, text: str, encoding: str = "utf-8"
) -> None:
    atomic_write_bytes(path, text.encode(encoding))
