# tests/test_persistence_jsonl.py
from __future__ import annotations

import json
from pathlib import Path

from process_engine.adapters.persistence import (
    append_jsonl,
    append_transition_history,
    iter_transition_history,
    read_jsonl,
)
from process_engine.contracts import TransitionAction, TransitionHistoryRecord


def _record(record_id: str, instance_id: str = "inst:1", to_state_id: str = "voting") -> TransitionHistoryRecord:
    return TransitionHistoryRecord(
        id=record_id,
        process_instance_id=instance_id,
        from_state_id="submission",
        to_state_id=to_state_id,
        transitioned_at="2026-02-11T12:00:00+00:00",
        transition_data={"trigger": "manual"},
        actions=[TransitionAction(type="notify", config={"channel": "members"})],
    )


def test_append_and_read_jsonl_roundtrip(tmp_path: Path) -> None:
    p = tmp_path / "events.jsonl"

    append_jsonl(p, {"kind": "x", "n": 1})
    append_jsonl(p, {"kind": "x", "n": 2})

    rows = [rec for _, rec in read_jsonl(p)]
    assert rows == [{"kind": "x", "n": 1}, {"kind": "x", "n": 2}]

    for ln in p.read_text(encoding="utf-8").splitlines():
        json.loads(ln)


def test_history_record_is_written_in_wire_shape_with_ref(tmp_path: Path) -> None:
    p = tmp_path / "history.jsonl"

    ref = append_transition_history(_record("th_a"), path=p)

    (meta, rec), = list(read_jsonl(p))
    assert ref == {"kind": "jsonl", "ref": "history.jsonl@1"}
    assert meta["lineno"] == 1
    assert set(TransitionHistoryRecord.required_payload_fields()) <= set(rec)
    assert rec["processInstanceId"] == "inst:1"
    assert rec["transitionData"] == {"trigger": "manual"}
    assert rec["actions"] == [{"type": "notify", "config": {"channel": "members"}}]


def test_appending_the_same_record_twice_is_idempotent(tmp_path: Path) -> None:
    p = tmp_path / "history.jsonl"

    first = append_transition_history(_record("th_a"), path=p)
    second = append_transition_history(_record("th_b", to_state_id="results"), path=p)
    again = append_transition_history(_record("th_a"), path=p)

    assert first == again == {"kind": "jsonl", "ref": "history.jsonl@1"}
    assert second["ref"] == "history.jsonl@2"
    assert len(p.read_text(encoding="utf-8").splitlines()) == 2


def test_history_rehydrates_in_order_and_skips_invalid_rows(tmp_path: Path) -> None:
    p = tmp_path / "history.jsonl"
    append_transition_history(_record("th_a"), path=p)
    append_jsonl(p, {"id": "broken"})
    append_transition_history(_record("th_c", instance_id="inst:2"), path=p)

    everything = [r.id for r in iter_transition_history(p)]
    only_second = [r.id for r in iter_transition_history(p, instance_id="inst:2")]

    assert everything == ["th_a", "th_c"]
    assert only_second == ["th_c"]


def test_missing_history_file_yields_nothing(tmp_path: Path) -> None:
    assert list(iter_transition_history(tmp_path / "absent.jsonl")) == []
