# features/steps/decision_steps.py
from __future__ import annotations

from typing import Any

from decisionflow.bdd_compat import given, table_records, then, when
from decisionflow.step_state import get_decision_step_state, reset_decision_step_state

from process_engine._compat import parse_iso
from process_engine.contracts import InstanceMetrics
from process_engine.errors import TerminalInstanceError
from process_engine.lifecycle import advance_phase, complete, create_instance, launch
from process_engine.templates import get_template
from process_engine.transitions import check_transitions


def _metrics(at: str, proposal_count: int) -> InstanceMetrics:
    return InstanceMetrics(proposal_count=proposal_count, now=parse_iso(at))


@given('the "{template_id}" decision template')
def step_template(context: Any, template_id: str) -> None:
    reset_decision_step_state(context).schema = get_template(template_id)


@given('an active instance launched at "{at}"')
def step_active_instance(context: Any, at: str) -> None:
    state = get_decision_step_state(context)
    assert state.schema is not None
    draft = create_instance(state.schema, instance_id="bdd:instance")
    state.instance = launch(draft, now=parse_iso(at))


@given("the proposals:")
def step_proposals(context: Any) -> None:
    get_decision_step_state(context).proposals = table_records(context)


@given("the instance is completed")
def step_completed(context: Any) -> None:
    state = get_decision_step_state(context)
    assert state.instance is not None
    state.instance = complete(state.instance)


@when('I check transitions at "{at}" with {count:d} proposals')
def step_check(context: Any, at: str, count: int) -> None:
    state = get_decision_step_state(context)
    assert state.instance is not None and state.schema is not None
    state.last_check = check_transitions(state.instance, state.schema, _metrics(at, count))


@when('I advance to "{to_state_id}" at "{at}" with {count:d} proposals')
def step_advance(context: Any, to_state_id: str, at: str, count: int) -> None:
    state = get_decision_step_state(context)
    assert state.instance is not None and state.schema is not None
    result = advance_phase(
        state.instance, state.schema, to_state_id, _metrics(at, count), proposals=state.proposals
    )
    assert result.advanced, [rule.error_message for rule in result.failed_rules]
    state.last_advance = result
    state.instance = result.instance
    if result.selected_proposals is not None:
        state.last_selection = result.selected_proposals


@when('I try to advance to "{to_state_id}" at "{at}" with {count:d} proposals')
def step_try_advance(context: Any, to_state_id: str, at: str, count: int) -> None:
    state = get_decision_step_state(context)
    assert state.instance is not None and state.schema is not None
    try:
        advance_phase(state.instance, state.schema, to_state_id, _metrics(at, count), proposals=state.proposals)
    except TerminalInstanceError as exc:
        state.last_error = exc


@then("no transition can execute")
def step_none_executable(context: Any) -> None:
    check = get_decision_step_state(context).last_check
    assert check is not None
    assert check.can_transition is False


@then('the failed rule "{rule_id}" reads "{message}"')
def step_failed_rule(context: Any, rule_id: str, message: str) -> None:
    check = get_decision_step_state(context).last_check
    assert check is not None
    messages = {
        rule.rule_id: rule.error_message for item in check.available_transitions for rule in item.failed_rules
    }
    assert messages.get(rule_id) == message, messages


@then('the instance is in phase "{phase_id}"')
def step_in_phase(context: Any, phase_id: str) -> None:
    instance = get_decision_step_state(context).instance
    assert instance is not None
    assert instance.current_state_id == phase_id


@then('the selected proposals are "{ids}"')
def step_selected(context: Any, ids: str) -> None:
    state = get_decision_step_state(context)
    expected = [item.strip() for item in ids.split(",")]
    assert state.last_selection is not None
    assert [p["id"] for p in state.last_selection] == expected
    assert state.instance is not None and state.instance.instance_data.results is not None
    assert state.instance.instance_data.results.selected_proposal_ids == expected


@then("the advance is rejected as terminal")
def step_rejected_terminal(context: Any) -> None:
    assert isinstance(get_decision_step_state(context).last_error, TerminalInstanceError)
