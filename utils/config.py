import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from utils.pipeline_contracts import SettingsError

DEFAULT_RETENTION_DAYS = 3
DEFAULT_SETTINGS_FILE = "path.ini"

# env 이름 -> 기존 path.ini 키. 둘 중 하나만 있어도 된다(env 우선).
REQUIRED_FEED_SETTINGS = {
    "LOCK_FOLDER_PATH": "LockFolderPath",
    "STS_FILE_PATH": "STSFilePath",
    "STS75_FILE_PATH": "STS75FilePath",
    "IGS_FOLDER_PATH": "IGSFolderPath",
    "STS_LINK_FILE_NAME": "STSLinkFileName",
    "STS_LOCK_FILE_NAME": "STSLockFileName",
    "STS75_LIST_LINK_FILE_NAME": "75ListLinkFileName",
    "STS75_LIST_LOCK_FILE_NAME": "75ListLockFileName",
    "IGS_LINK_FILE_NAME": "IGSLinkFileName",
    "IGS_LOCK_FILE_NAME": "IGSLockFileName",
    "IGS_FILE_NAME": "IGSFileName",
    "IGS_BLNO_FILE_NAME": "IGSBLNOFilename",
    "GATEWAY_PATH": "GatewayPath",
    "GATEWAY_FILENAME": "GatewayFilename",
    "DELETE_INDICES_FROM": "DeleteIndiciesfrom",
}


def _parse_positive_int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default

    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _parse_bool_env(raw: str | None, default: bool = False) -> bool:
    if raw is None:
        return default

    normalized = raw.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_csv_env(name: str) -> list[str] | None:
    # 비어 있으면 None(자동 탐지), 값이 있으면 쉼표로 나눈 목록.
    raw = os.getenv(name)
    if raw is None:
        return None
    values = [part.strip() for part in raw.split(",") if part.strip()]
    return values or None


def _read_settings_file(path: str | Path | None) -> dict[str, str]:
    """
    `key=value` 형식 설정 파일을 읽는다.

    - `=`가 없는 줄은 무시한다.
    - 값 안의 `=`는 보존한다(경로에 포함될 수 있음).
    - 파일이 없으면 빈 dict (env만으로 설정하는 배포 지원).
    """
    if path is None:
        return {}
    settings_path = Path(path)
    if not settings_path.exists():
        return {}

    settings: dict[str, str] = {}
    for line in settings_path.read_text(encoding="utf-8-sig").splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key:
            continue
        settings[key] = value.strip()
    return settings


def _parse_retention_days(raw: str) -> int:
    # 숫자가 아니면 기존 운영값(3일)로 되돌린다.
    try:
        value = int(raw)
    except ValueError:
        return DEFAULT_RETENTION_DAYS
    return value if value > 0 else DEFAULT_RETENTION_DAYS


@dataclass(frozen=True)
class FeedSettings:
    lock_folder: Path
    status_file: Path
    worklist_file: Path
    cross_ref_folder: Path
    status_link_name: str
    status_lock_name: str
    worklist_link_name: str
    worklist_lock_name: str
    cross_ref_link_name: str
    cross_ref_lock_name: str
    cross_ref_outcome_prefix: str
    cross_ref_identifier_prefix: str
    gateway_dir: Path
    gateway_filename: str
    retention_days: int

    @property
    def status_lock_paths(self) -> tuple[Path, Path]:
        """(lock, link target) 쌍."""
        return (
            self.lock_folder / self.status_lock_name,
            self.lock_folder / self.status_link_name,
        )

    @property
    def worklist_lock_paths(self) -> tuple[Path, Path]:
        return (
            self.lock_folder / self.worklist_lock_name,
            self.lock_folder / self.worklist_link_name,
        )

    @property
    def cross_ref_lock_paths(self) -> tuple[Path, Path]:
        return (
            self.lock_folder / self.cross_ref_lock_name,
            self.lock_folder / self.cross_ref_link_name,
        )


def load_feed_settings(
    environ: Mapping[str, str] | None = None,
    settings_file: str | Path | None = None,
) -> FeedSettings:
    """
    파일 교환 경로 설정을 읽어 검증한다.

    Called from:
    - `api.main.lifespan` (서비스 시작 시 1회)

    Rules:
    - env > settings file 순으로 값을 찾는다.
    - 비어 있는 필수 키는 모두 모아서 한 번에 SettingsError로 알린다.
    """
    resolved_env = os.environ if environ is None else environ
    resolved_file = settings_file or resolved_env.get(
        "SETTINGS_FILE", DEFAULT_SETTINGS_FILE
    )
    file_values = _read_settings_file(resolved_file)

    values: dict[str, str] = {}
    missing: list[str] = []
    for env_name, file_key in REQUIRED_FEED_SETTINGS.items():
        raw = resolved_env.get(env_name) or file_values.get(file_key) or ""
        raw = raw.strip()
        if not raw:
            missing.append(env_name)
            continue
        values[env_name] = raw

    if missing:
        rendered = ", ".join(missing)
        raise SettingsError(f"Required settings are not configured: {rendered}")

    return FeedSettings(
        lock_folder=Path(values["LOCK_FOLDER_PATH"]),
        status_file=Path(values["STS_FILE_PATH"]),
        worklist_file=Path(values["STS75_FILE_PATH"]),
        cross_ref_folder=Path(values["IGS_FOLDER_PATH"]),
        status_link_name=values["STS_LINK_FILE_NAME"],
        status_lock_name=values["STS_LOCK_FILE_NAME"],
        worklist_link_name=values["STS75_LIST_LINK_FILE_NAME"],
        worklist_lock_name=values["STS75_LIST_LOCK_FILE_NAME"],
        cross_ref_link_name=values["IGS_LINK_FILE_NAME"],
        cross_ref_lock_name=values["IGS_LOCK_FILE_NAME"],
        cross_ref_outcome_prefix=values["IGS_FILE_NAME"],
        cross_ref_identifier_prefix=values["IGS_BLNO_FILE_NAME"],
        gateway_dir=Path(values["GATEWAY_PATH"]),
        gateway_filename=values["GATEWAY_FILENAME"],
        retention_days=_parse_retention_days(values["DELETE_INDICES_FROM"]),
    )
