"""
In-memory latest-status index.

Why this exists:
- HTTP 읽기 요청은 ingest 루프와 동시에 실행되므로, 재구성 중인 dict를 노출하면
  반쯤 채워진 상태를 읽을 수 있다.
- 새 dict를 완성한 뒤 참조만 교체(atomic swap)해 reader는 항상 이전 또는 새
  스냅샷 전체만 보게 한다. reader에게는 read-only view만 준다.
"""

from types import MappingProxyType
from typing import Iterable, Mapping

from utils.pipeline_contracts import StatusEvent


class StatusCache:
    def __init__(self):
        self._snapshot: Mapping[str, StatusEvent] = MappingProxyType({})

    def rebuild(self, records: Iterable[StatusEvent]) -> int:
        """
        cycle 레코드로 전체 index를 다시 만들고 교체한다.

        Called from:
        - `workers.presentation.PresentationState.apply_result`

        같은 awb_no가 여러 번 오면 마지막 레코드가 남는다(FeedParser 규칙과 동일).
        """
        rebuilt: dict[str, StatusEvent] = {}
        for record in records:
            rebuilt[record.awb_no] = record
        self._snapshot = MappingProxyType(rebuilt)
        return len(rebuilt)

    def snapshot(self) -> Mapping[str, StatusEvent]:
        return self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)
