from __future__ import annotations

from process_engine.stable_ids import pipeline_fingerprint, proposal_key, transition_record_id

PIPELINE = {"blocks": [{"type": "limit", "count": 2}]}


def _record_id(**overrides: object) -> str:
    key = {"instance_id": "inst:1", "instance_version": 3, "from_state_id": "a", "to_state_id": "b"}
    key.update(overrides)
    return transition_record_id(**key)  # type: ignore[arg-type]


def test_transition_record_ids_are_deterministic() -> None:
    assert _record_id() == _record_id()
    assert _record_id().startswith("th_")


def test_transition_record_id_changes_with_version_or_edge() -> None:
    base = _record_id()

    assert _record_id(instance_version=4) != base
    assert _record_id(to_state_id="c") != base
    assert _record_id(instance_id="inst:2") != base


def test_proposal_key_prefers_id_and_hashes_anonymous_proposals() -> None:
    anonymous = {"title": "Bench", "voteData": {"likesCount": 2}}

    assert proposal_key({"id": "p1", "title": "x"}) == "p1"
    assert proposal_key(anonymous) == proposal_key(dict(reversed(list(anonymous.items()))))
    assert proposal_key(anonymous).startswith("anon_")
    assert len(proposal_key(anonymous)) == len("anon_") + 16


def test_pipeline_fingerprint_tracks_inputs() -> None:
    proposals = [{"id": "p1"}, {"id": "p2"}]
    base = pipeline_fingerprint(PIPELINE, proposals, {"n": 1})

    assert base.startswith("sp_")
    assert pipeline_fingerprint(PIPELINE, proposals, {"n": 1}) == base
    assert pipeline_fingerprint(PIPELINE, proposals[::-1], {"n": 1}) != base
    assert pipeline_fingerprint(PIPELINE, proposals, {"n": 2}) != base
