"""
Cross-reference status store.

Why this exists:
- 교차 확인(IGS) 결과는 한 번 소비되면 원본 파일이 삭제되므로, 프로세스 수명 동안
  메모리에 누적해 두고 매 status cycle의 enrichment에 사용한다.
- 키는 재시작 전까지 삭제하지 않는다. 같은 식별자가 다시 오면 값만 덮어쓴다.
"""

from typing import Iterable, Mapping

from utils.pipeline_contracts import CROSS_REF_UNCHECKED


class CrossReferenceStore:
    def __init__(self, initial: Mapping[str, str] | None = None):
        self._entries: dict[str, str] = dict(initial or {})

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._entries

    def get(self, identifier: str) -> str | None:
        return self._entries.get(identifier)

    def status_for(self, identifier: str) -> str:
        """
        enrichment용 상태 코드.

        값이 없거나 빈 문자열이면 "-1"(미확인)을 돌려준다. "0"은 확인 완료/불일치.
        """
        value = self._entries.get(identifier)
        if not value:
            return CROSS_REF_UNCHECKED
        return value

    def update(self, pairs: Iterable[tuple[str, str]]) -> int:
        """
        (identifier, status) 쌍을 반영하고 반영 건수를 반환한다.

        Called from:
        - `workers.ingest.ingest_cross_reference_files`
        """
        applied = 0
        for identifier, status in pairs:
            self._entries[identifier] = status
            applied += 1
        return applied

    def snapshot(self) -> dict[str, str]:
        return dict(self._entries)
