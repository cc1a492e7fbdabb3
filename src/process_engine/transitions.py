# process_engine/transitions.py
"""
Transition evaluation and execution.

``check_transitions`` reports, for the instance's current phase, which outgoing
transitions can run right now and every condition that blocks the others.
Unmet conditions are data (``can_execute=False`` plus ``failed_rules``), never
exceptions. ``execute_transition`` re-runs the check against the snapshot it is
given and returns the next snapshot plus the history record to append.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from process_engine._compat import parse_iso, to_iso
from process_engine.config import EngineSettings, get_settings
from process_engine.contracts import (
    AdvancementMethod,
    AvailableTransition,
    Condition,
    ConditionOperator,
    ConditionType,
    DecisionSchemaDefinition,
    FailedRule,
    InstanceData,
    InstanceMetrics,
    ProcessInstance,
    StateEntry,
    Transition,
    TransitionAction,
    TransitionCheckResult,
    TransitionHistoryRecord,
    TransitionRules,
    TransitionType,
)
from process_engine.errors import (
    ConfigurationError,
    InvariantViolationError,
    TerminalInstanceError,
    TransitionRejectedError,
    UnknownPhaseError,
)
from process_engine.expressions import get_value_by_path
from process_engine.invariants import (
    InvariantId,
    default_check_context,
    first_stop,
    is_between_pair,
    run_checkers,
)
from process_engine.stable_ids import transition_record_id

logger = logging.getLogger(__name__)

ACTION_NOTIFY = "notify"
ACTION_UPDATE_FIELD = "updateField"
ACTION_CREATE_RECORD = "createRecord"
KNOWN_ACTIONS: frozenset[str] = frozenset({ACTION_NOTIFY, ACTION_UPDATE_FIELD, ACTION_CREATE_RECORD})


# ------------------------------------------------------------------------------
# Transition enumeration
# ------------------------------------------------------------------------------


def phase_end_date(schema: DecisionSchemaDefinition, phase_id: str, instance_data: Optional[InstanceData]) -> str | None:
    if instance_data is not None:
        progress = instance_data.phase_progress(phase_id)
        if progress is not None and progress.end_date:
            return progress.end_date
    phase = schema.phase(phase_id)
    if phase is not None and phase.rules.advancement is not None:
        return phase.rules.advancement.end_date
    return None


def derive_transitions(
    schema: DecisionSchemaDefinition,
    instance_data: Optional[InstanceData] = None,
) -> list[Transition]:
    """
    Explicit ``transitions`` when the schema declares any, otherwise linear
    ``phases[i] -> phases[i + 1]`` edges derived from phase advancement rules.
    """
    if schema.transitions:
        return list(schema.transitions)

    derived: list[Transition] = []
    for current, following in zip(schema.phases, schema.phases[1:]):
        rules = TransitionRules(type=TransitionType.MANUAL)
        if current.advancement_method == AdvancementMethod.DATE:
            end_date = phase_end_date(schema, current.id, instance_data)
            if end_date:
                rules = TransitionRules(
                    type=TransitionType.AUTOMATIC,
                    conditions=[
                        Condition(type=ConditionType.TIME, operator=ConditionOperator.GREATER_THAN, value=end_date)
                    ],
                )
        derived.append(
            Transition(
                id=f"{current.id}-to-{following.id}",
                name=f"Advance to {following.name}",
                from_=current.id,
                to=following.id,
                rules=rules,
            )
        )
    return derived


def outgoing_transitions(
    schema: DecisionSchemaDefinition,
    instance: ProcessInstance,
    to_state_id: Optional[str] = None,
) -> list[Transition]:
    current = instance.current_state_id
    candidates = [t for t in derive_transitions(schema, instance.instance_data) if t.applies_from(current)]
    if to_state_id is not None:
        candidates = [t for t in candidates if t.to == to_state_id]
    return candidates


# ------------------------------------------------------------------------------
# Condition evaluation
# ------------------------------------------------------------------------------


@dataclass(frozen=True)
class ConditionScope:
    instance: ProcessInstance
    metrics: InstanceMetrics
    settings: EngineSettings

    @property
    def now(self) -> datetime:
        return self.metrics.now

    def field_values(self) -> dict[str, Any]:
        return {**self.instance.instance_data.field_values, **self.metrics.field_values}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _compare(actual: float, operator: ConditionOperator, expected: Any, *, tolerance: float = 0.0) -> bool:
    if operator == ConditionOperator.BETWEEN:
        low, high = expected
        return low <= actual <= high
    if operator == ConditionOperator.EQUALS:
        if tolerance:
            return abs(actual - expected) < tolerance
        return actual == expected
    if operator == ConditionOperator.GREATER_THAN:
        return actual > expected
    if operator == ConditionOperator.LESS_THAN:
        return actual < expected
    raise ConfigurationError(f"Unsupported operator: {operator!r}")


def _numeric_operand(condition: Condition) -> Any:
    value = condition.value
    if condition.operator == ConditionOperator.BETWEEN:
        if not is_between_pair(value) or not all(_is_number(v) for v in value):
            raise ConfigurationError(f"'between' requires a numeric [min, max] pair, got {value!r}")
        return tuple(value)
    if not _is_number(value):
        raise ConfigurationError(f"{condition.type.value} condition requires a numeric value, got {value!r}")
    return value


def _instant_ms(value: str) -> float:
    try:
        return parse_iso(value).timestamp() * 1000
    except ValueError as exc:
        raise ConfigurationError(f"Invalid ISO-8601 instant: {value!r}") from exc


def _evaluate_time(condition: Condition, scope: ConditionScope) -> bool:
    value = condition.value
    if condition.operator == ConditionOperator.BETWEEN:
        if not is_between_pair(value):
            raise ConfigurationError(f"'between' requires a [min, max] pair, got {value!r}")
        elapsed = _is_number(value[0])
    elif _is_number(value):
        elapsed = True
    elif isinstance(value, str):
        elapsed = False
    else:
        raise ConfigurationError(f"time condition requires milliseconds or an ISO-8601 instant, got {value!r}")

    if elapsed:
        entry = scope.instance.instance_data.state_data.get(scope.instance.current_state_id)
        if entry is None or not entry.entered_at:
            return False
        actual = (scope.now - parse_iso(entry.entered_at)).total_seconds() * 1000
        expected: Any = tuple(value) if condition.operator == ConditionOperator.BETWEEN else value
    else:
        actual = scope.now.timestamp() * 1000
        if condition.operator == ConditionOperator.BETWEEN:
            expected = (_instant_ms(value[0]), _instant_ms(value[1]))
        else:
            expected = _instant_ms(value)

    return _compare(actual, condition.operator, expected, tolerance=scope.settings.time_equals_tolerance_ms)


def _evaluate_count(actual: int, condition: Condition) -> bool:
    return _compare(actual, condition.operator, _numeric_operand(condition))


def _evaluate_approval_rate(condition: Condition, scope: ConditionScope) -> bool:
    expected = _numeric_operand(condition)
    rate = scope.metrics.approval_rate
    if rate is None:
        return False
    return _compare(rate, condition.operator, expected, tolerance=scope.settings.approval_rate_equals_tolerance)


def _evaluate_custom_field(condition: Condition, scope: ConditionScope) -> bool:
    if not condition.field:
        raise ConfigurationError("customField condition requires 'field'")
    actual = get_value_by_path(scope.field_values(), condition.field)
    expected = condition.value

    if condition.operator == ConditionOperator.EQUALS:
        return actual == expected
    if condition.operator == ConditionOperator.BETWEEN:
        low_high = _numeric_operand(condition)
        return _is_number(actual) and _compare(actual, condition.operator, low_high)
    # Ordering only applies when both sides are numbers.
    if not (_is_number(actual) and _is_number(expected)):
        return False
    return _compare(actual, condition.operator, expected)


def evaluate_condition(
    condition: Condition,
    instance: ProcessInstance,
    metrics: InstanceMetrics,
    *,
    settings: Optional[EngineSettings] = None,
) -> bool:
    """
    True when ``condition`` holds for the snapshot. Raises ``ConfigurationError``
    for a malformed condition; the caller turns that into a failed rule.
    """
    scope = ConditionScope(instance=instance, metrics=metrics, settings=settings or get_settings())
    if condition.type == ConditionType.TIME:
        return _evaluate_time(condition, scope)
    if condition.type == ConditionType.PROPOSAL_COUNT:
        return _evaluate_count(metrics.proposal_count, condition)
    if condition.type == ConditionType.PARTICIPATION_COUNT:
        return _evaluate_count(metrics.participation_count, condition)
    if condition.type == ConditionType.APPROVAL_RATE:
        return _evaluate_approval_rate(condition, scope)
    if condition.type == ConditionType.CUSTOM_FIELD:
        return _evaluate_custom_field(condition, scope)
    raise ConfigurationError(f"Unknown condition type: {condition.type!r}")


def _format_value(value: Any, *, scale: float = 1, suffix: str = "") -> str:
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_format_value(v, scale=scale, suffix=suffix) for v in value) + "]"
    if _is_number(value):
        scaled = value * scale
        if isinstance(scaled, float) and scaled.is_integer():
            scaled = int(scaled)
        return f"{scaled}{suffix}"
    return str(value)


def condition_error_message(condition: Condition) -> str:
    op = condition.operator.value
    if condition.type == ConditionType.TIME:
        return f"Time condition not met: {op} {_format_value(condition.value, suffix='ms')}"
    if condition.type == ConditionType.PROPOSAL_COUNT:
        return f"Proposal count condition not met: {op} {_format_value(condition.value)}"
    if condition.type == ConditionType.PARTICIPATION_COUNT:
        return f"Participation count condition not met: {op} {_format_value(condition.value)}"
    if condition.type == ConditionType.APPROVAL_RATE:
        return f"Approval rate condition not met: {op} {_format_value(condition.value, scale=100, suffix='%')}"
    if condition.type == ConditionType.CUSTOM_FIELD:
        return f"Custom field condition not met: {condition.field} {op} {_format_value(condition.value)}"
    return "Unknown condition"


def evaluate_transition(
    transition: Transition,
    instance: ProcessInstance,
    metrics: InstanceMetrics,
    *,
    settings: Optional[EngineSettings] = None,
) -> AvailableTransition:
    """Evaluate every condition in order; the failed-rule list is never short-circuited."""
    cfg = settings or get_settings()
    rules = transition.rules
    conditions = rules.conditions if rules is not None else []
    require_all = rules.require_all if rules is not None else True

    failed: list[FailedRule] = []
    passed = 0
    for index, condition in enumerate(conditions):
        rule_id = f"rule_{index}"
        try:
            ok = evaluate_condition(condition, instance, metrics, settings=cfg)
        except ConfigurationError as exc:
            failed.append(FailedRule(rule_id=rule_id, error_message=f"Invalid condition: {exc}", code="invalid_condition"))
            logger.debug("transition %s %s invalid: %s", transition.id, rule_id, exc)
            continue
        except (TypeError, ValueError, ArithmeticError) as exc:
            failed.append(
                FailedRule(rule_id=rule_id, error_message=f"Error evaluating condition: {exc}", code="evaluation_error")
            )
            logger.debug("transition %s %s errored: %s", transition.id, rule_id, exc)
            continue
        logger.debug("transition %s %s (%s %s) -> %s", transition.id, rule_id, condition.type.value, condition.operator.value, ok)
        if ok:
            passed += 1
        else:
            failed.append(FailedRule(rule_id=rule_id, error_message=condition_error_message(condition)))

    if not conditions:
        can_execute = True
    elif require_all:
        can_execute = not failed
    else:
        can_execute = passed > 0

    return AvailableTransition(
        transition_id=transition.id,
        to_state_id=transition.to,
        transition_name=transition.name,
        can_execute=can_execute,
        failed_rules=failed,
    )


def check_transitions(
    instance: ProcessInstance,
    schema: DecisionSchemaDefinition,
    metrics: InstanceMetrics,
    to_state_id: Optional[str] = None,
    *,
    settings: Optional[EngineSettings] = None,
) -> TransitionCheckResult:
    cfg = settings or get_settings()
    available = [
        evaluate_transition(transition, instance, metrics, settings=cfg)
        for transition in outgoing_transitions(schema, instance, to_state_id)
    ]
    return TransitionCheckResult(
        can_transition=any(item.can_execute for item in available),
        available_transitions=available,
    )


# ------------------------------------------------------------------------------
# Execution
# ------------------------------------------------------------------------------


def ensure_open(instance: ProcessInstance, schema: Optional[DecisionSchemaDefinition] = None) -> None:
    """Raise when the instance is terminal or points at a phase the schema lacks."""
    ids = [InvariantId.INSTANCE_NOT_TERMINAL]
    if schema is not None:
        ids.append(InvariantId.INSTANCE_CURRENT_PHASE_KNOWN)
    stop = first_stop(run_checkers(ctx=default_check_context(schema=schema, instance=instance), invariant_ids=ids))
    if stop is None:
        return
    if stop.invariant_id == InvariantId.INSTANCE_NOT_TERMINAL:
        raise TerminalInstanceError(stop.reason, stop)
    raise UnknownPhaseError(stop.reason, stop)


def apply_actions(
    actions: Sequence[TransitionAction],
    instance_data: InstanceData,
) -> tuple[InstanceData, list[TransitionAction]]:
    """
    Apply ``updateField`` actions to a copy of ``instance_data``. ``notify`` and
    ``createRecord`` are returned for the caller to dispatch.
    """
    field_values = dict(instance_data.field_values)
    recorded: list[TransitionAction] = []
    for action in actions:
        if action.type not in KNOWN_ACTIONS:
            logger.warning("skipping unknown transition action %r", action.type)
            continue
        if action.type == ACTION_UPDATE_FIELD:
            name = action.config.get("field")
            if not isinstance(name, str) or not name:
                logger.warning("skipping updateField action without a field name")
                continue
            field_values[name] = action.config.get("value")
        recorded.append(action)
    if field_values == instance_data.field_values:
        return instance_data, recorded
    return instance_data.model_copy(update={"field_values": field_values}), recorded


def _advance_progress(instance_data: InstanceData, from_state_id: str, to_state_id: str, at: str) -> list[Any]:
    progress = []
    for entry in instance_data.phases:
        if entry.phase_id == from_state_id and not entry.end_date:
            entry = entry.model_copy(update={"end_date": at})
        elif entry.phase_id == to_state_id and not entry.start_date:
            entry = entry.model_copy(update={"start_date": at})
        progress.append(entry)
    return progress


def execute_transition(
    instance: ProcessInstance,
    schema: DecisionSchemaDefinition,
    to_state_id: str,
    metrics: InstanceMetrics,
    *,
    transition_data: Optional[Mapping[str, Any]] = None,
    settings: Optional[EngineSettings] = None,
) -> tuple[ProcessInstance, TransitionHistoryRecord]:
    """
    Re-check and commit one transition against ``instance``.

    Returns the next snapshot (version + 1) and the history record. The input
    snapshot is never modified; the caller persists both with a compare-and-swap
    on ``instance.version``.
    """
    ensure_open(instance, schema)
    if schema.phase(to_state_id) is None:
        raise UnknownPhaseError(f"Schema {schema.id} has no phase '{to_state_id}'")

    transitions = outgoing_transitions(schema, instance, to_state_id)
    if not transitions:
        raise InvariantViolationError(
            f"No transition from '{instance.current_state_id}' to '{to_state_id}' in schema {schema.id}"
        )

    check = check_transitions(instance, schema, metrics, to_state_id, settings=settings)
    target = check.for_target(to_state_id)
    if target is None or not target.can_execute:
        raise TransitionRejectedError(to_state_id, target)

    transition = next(t for t in transitions if t.id == target.transition_id)
    from_state_id = instance.current_state_id
    at = to_iso(metrics.now)
    payload = dict(transition_data or {})

    data = instance.instance_data
    data, recorded_actions = apply_actions(transition.actions, data)
    state_data = dict(data.state_data)
    state_data[to_state_id] = StateEntry(entered_at=at, metadata=payload)
    data = data.model_copy(
        update={
            "current_state_id": to_state_id,
            "state_data": state_data,
            "phases": _advance_progress(data, from_state_id, to_state_id, at),
        }
    )

    record = TransitionHistoryRecord(
        id=transition_record_id(
            instance_id=instance.id,
            instance_version=instance.version,
            from_state_id=from_state_id,
            to_state_id=to_state_id,
        ),
        process_instance_id=instance.id,
        from_state_id=from_state_id,
        to_state_id=to_state_id,
        transitioned_at=at,
        transition_data=payload,
        actions=recorded_actions,
    )
    updated = instance.model_copy(update={"instance_data": data, "version": instance.version + 1})
    return updated, record
