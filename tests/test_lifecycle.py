from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any

import pytest

from process_engine._compat import UTC, parse_iso
from process_engine.config import EngineSettings, VariablePrecedence
from process_engine.contracts import InstanceMetrics, ProcessInstance, ProcessStatus
from process_engine.errors import (
    ConfigurationError,
    InvalidStatusTransitionError,
    InvariantViolationError,
    TerminalInstanceError,
    UnknownPhaseError,
)
from process_engine.lifecycle import (
    advance_phase,
    cancel,
    complete,
    create_instance,
    is_action_allowed,
    launch,
    pause,
    resume,
)
from process_engine.templates import SIMPLE_VOTING

MakeProposals = Callable[[list[Any]], list[dict[str, Any]]]


def _at(iso: str) -> InstanceMetrics:
    return InstanceMetrics(now=parse_iso(iso))


def _launched(**field_values: Any) -> ProcessInstance:
    draft = create_instance(SIMPLE_VOTING, instance_id="inst:simple", field_values=field_values)
    return launch(draft, now=datetime(2025, 12, 1, tzinfo=UTC))


def _advance_to_voting(instance: ProcessInstance, settings: EngineSettings) -> ProcessInstance:
    for to, at in (("review", "2026-01-01T12:00:00Z"), ("voting", "2026-01-02T12:00:00Z")):
        outcome = advance_phase(instance, SIMPLE_VOTING, to, _at(at), settings=settings)
        assert outcome.advanced
        instance = outcome.instance
    return instance


def test_create_instance_starts_as_draft_on_initial_phase() -> None:
    draft = create_instance(SIMPLE_VOTING, instance_id="inst:new")

    assert draft.status == ProcessStatus.DRAFT
    assert draft.process_id == "simple"
    assert draft.version == 0
    assert draft.current_state_id == "submission"
    assert [(p.phase_id, p.end_date) for p in draft.instance_data.phases] == [
        ("submission", "2026-01-01"),
        ("review", "2026-01-02"),
        ("voting", "2026-01-03"),
        ("results", "2026-01-04"),
    ]


def test_launch_stamps_entry_time_on_current_phase() -> None:
    instance = _launched()

    assert instance.status == ProcessStatus.ACTIVE
    assert instance.version == 1
    assert instance.instance_data.state_data["submission"].entered_at == "2025-12-01T00:00:00+00:00"


def test_launch_needs_the_callers_clock() -> None:
    draft = create_instance(SIMPLE_VOTING, instance_id="inst:simple")

    with pytest.raises(TypeError):
        launch(draft)  # type: ignore[call-arg]


def test_status_machine_moves_and_rejections() -> None:
    active = _launched()

    paused = pause(active)
    resumed = resume(paused)
    completed = complete(resumed)

    assert [paused.status, resumed.status, completed.status] == [
        ProcessStatus.PAUSED,
        ProcessStatus.ACTIVE,
        ProcessStatus.COMPLETED,
    ]
    assert completed.version == active.version + 3
    assert cancel(paused).status == ProcessStatus.CANCELLED
    with pytest.raises(InvalidStatusTransitionError):
        launch(active, now=datetime(2026, 1, 1, tzinfo=UTC))
    with pytest.raises(InvalidStatusTransitionError):
        cancel(completed)
    with pytest.raises(InvalidStatusTransitionError):
        resume(active)


def test_blocked_advance_returns_failed_rules_and_unchanged_snapshot(settings: EngineSettings) -> None:
    instance = _launched()

    outcome = advance_phase(instance, SIMPLE_VOTING, "review", _at("2025-12-15T00:00:00Z"), settings=settings)

    assert outcome.advanced is False
    assert outcome.instance == instance
    assert outcome.history_record is None
    assert [(r.rule_id, r.error_message) for r in outcome.failed_rules] == [
        ("rule_0", "Time condition not met: greaterThan 2026-01-01")
    ]


def test_full_run_selects_top_proposals_into_results(make_proposals: MakeProposals, settings: EngineSettings) -> None:
    proposals = make_proposals([4, 9, 7, 9, 1])
    instance = _advance_to_voting(_launched(), settings)

    outcome = advance_phase(
        instance, SIMPLE_VOTING, "results", _at("2026-01-03T12:00:00Z"), proposals=proposals, settings=settings
    )

    assert outcome.advanced is True
    final = outcome.instance
    assert final.current_state_id == "results"
    assert final.version == instance.version + 1
    assert final.instance_data.state_data["results"].selected_proposal_ids == ["p2", "p4", "p3"]
    results = final.instance_data.results
    assert results is not None
    assert results.selected_proposal_ids == ["p2", "p4", "p3"]
    assert results.executed_at == "2026-01-03T12:00:00+00:00"
    assert results.pipeline_fingerprint is not None and results.pipeline_fingerprint.startswith("sp_")
    assert outcome.selected_proposals is not None
    assert [p["id"] for p in outcome.selected_proposals] == ["p2", "p4", "p3"]
    assert outcome.history_record is not None
    assert outcome.history_record.to_state_id == "results"


def test_phase_without_pipeline_leaves_selection_unset(settings: EngineSettings) -> None:
    instance = _advance_to_voting(_launched(), settings)

    assert instance.instance_data.state_data["voting"].selected_proposal_ids is None
    assert instance.instance_data.results is None


@pytest.mark.parametrize(
    ("precedence", "expected"),
    [(VariablePrecedence.INSTANCE_FIRST, ["p2"]), (VariablePrecedence.SETTINGS_FIRST, ["p2", "p4", "p3"])],
)
def test_variable_precedence_decides_pipeline_limit(
    make_proposals: MakeProposals, precedence: VariablePrecedence, expected: list[str]
) -> None:
    settings = EngineSettings(_env_file=None, variable_precedence=precedence)
    instance = _advance_to_voting(_launched(maxVotesPerMember=1), settings)

    outcome = advance_phase(
        instance,
        SIMPLE_VOTING,
        "results",
        _at("2026-01-03T12:00:00Z"),
        proposals=make_proposals([4, 9, 7, 9, 1]),
        settings=settings,
    )

    assert outcome.instance.instance_data.state_data["results"].selected_proposal_ids == expected


@pytest.mark.parametrize("finish", [complete, cancel])
def test_terminal_instance_rejects_advance_without_moving(
    finish: Callable[[ProcessInstance], ProcessInstance], settings: EngineSettings
) -> None:
    instance = finish(_launched())

    with pytest.raises(TerminalInstanceError):
        advance_phase(instance, SIMPLE_VOTING, "review", _at("2026-01-01T12:00:00Z"), settings=settings)
    assert instance.current_state_id == "submission"


def test_paused_instance_cannot_advance(settings: EngineSettings) -> None:
    with pytest.raises(InvalidStatusTransitionError):
        advance_phase(pause(_launched()), SIMPLE_VOTING, "review", _at("2026-01-01T12:00:00Z"), settings=settings)


def test_advance_rejects_unknown_targets_and_missing_edges(settings: EngineSettings) -> None:
    instance = _launched()

    with pytest.raises(UnknownPhaseError):
        advance_phase(instance, SIMPLE_VOTING, "archive", _at("2026-01-01T12:00:00Z"), settings=settings)
    with pytest.raises(InvariantViolationError, match="No transition"):
        advance_phase(instance, SIMPLE_VOTING, "results", _at("2026-01-01T12:00:00Z"), settings=settings)

    data = instance.instance_data
    lost = instance.model_copy(update={"instance_data": data.model_copy(update={"current_state_id": "ghost"})})
    with pytest.raises(UnknownPhaseError, match="ghost"):
        advance_phase(lost, SIMPLE_VOTING, "review", _at("2026-01-01T12:00:00Z"), settings=settings)


@pytest.mark.parametrize(
    ("phase_id", "action", "allowed"),
    [
        ("submission", "proposals.submit", True),
        ("submission", "voting.submit", False),
        ("review", "proposals.review", True),
        ("voting", "voting.submit", True),
        ("voting", "voting.edit", False),
        ("results", "proposals.submit", False),
    ],
)
def test_phase_action_gating(phase_id: str, action: str, allowed: bool) -> None:
    assert is_action_allowed(SIMPLE_VOTING, phase_id, action) is allowed


def test_phase_action_gating_rejects_unknown_inputs() -> None:
    with pytest.raises(UnknownPhaseError):
        is_action_allowed(SIMPLE_VOTING, "archive", "proposals.submit")
    with pytest.raises(ConfigurationError):
        is_action_allowed(SIMPLE_VOTING, "submission", "proposals.delete")
