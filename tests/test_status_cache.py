import pytest

from utils.cross_reference import CrossReferenceStore
from utils.pipeline_contracts import StatusEvent
from utils.status_cache import StatusCache


def _event(awb: str, branch: str, sts: str) -> StatusEvent:
    return StatusEvent(identifier=awb, branch_seq=branch, timestamp_ms=0, status_code=sts)


def test_rebuild_replaces_whole_snapshot_and_keeps_last_duplicate():
    cache = StatusCache()
    cache.rebuild([_event("100", "0", "50"), _event("200", "0", "60")])
    old_snapshot = cache.snapshot()

    size = cache.rebuild(
        [_event("100", "0", "70"), _event("100", "2", "72"), _event("100", "0", "75")]
    )

    assert size == 2
    snapshot = cache.snapshot()
    assert set(snapshot) == {"100", "100-2"}
    assert snapshot["100"].status_code == "75"
    # reader가 들고 있던 이전 snapshot은 바뀌지 않는다.
    assert set(old_snapshot) == {"100", "200"}


def test_snapshot_is_read_only():
    cache = StatusCache()
    cache.rebuild([_event("100", "0", "50")])

    with pytest.raises(TypeError):
        cache.snapshot()["200"] = _event("200", "0", "50")


def test_cross_reference_store_overwrites_and_never_forgets():
    store = CrossReferenceStore()

    assert store.update([("100", "0"), ("200", "1")]) == 2
    assert store.update([("100", "1")]) == 1

    assert store.status_for("100") == "1"
    assert store.status_for("200") == "1"
    assert store.status_for("300") == "-1"
    assert len(store) == 2
    assert store.snapshot() == {"100": "1", "200": "1"}


def test_cross_reference_store_treats_empty_value_as_unchecked():
    store = CrossReferenceStore({"100": ""})

    assert store.get("100") == ""
    assert store.status_for("100") == "-1"
    assert "100" in store
