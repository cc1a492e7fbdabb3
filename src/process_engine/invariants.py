from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from process_engine.contracts import (
    ConditionOperator,
    DecisionSchemaDefinition,
    ProcessInstance,
    RubricTemplateSchema,
    Transition,
)


class InvariantId(str, Enum):
    SCHEMA_PHASES_NON_EMPTY = "schema.phases_non_empty.v1"
    SCHEMA_PHASE_IDS_UNIQUE = "schema.phase_ids_unique.v1"
    SCHEMA_TRANSITION_ENDPOINTS_KNOWN = "schema.transition_endpoints_known.v1"
    SCHEMA_CONDITION_VALUES_WELLFORMED = "schema.condition_values_wellformed.v1"
    RUBRIC_FIELD_ORDER_INTEGRITY = "rubric.field_order_integrity.v1"
    INSTANCE_NOT_TERMINAL = "instance.not_terminal.v1"
    INSTANCE_CURRENT_PHASE_KNOWN = "instance.current_phase_known.v1"


class Flow(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


class Validity(str, Enum):
    VALID = "valid"
    DEGRADED = "degraded"
    INVALID = "invalid"


@dataclass(frozen=True)
class InvariantOutcome:
    invariant_id: InvariantId
    passed: bool
    reason: str
    flow: Flow
    validity: Validity
    code: str
    evidence: Sequence[Mapping[str, Any]] = field(default_factory=tuple)
    details: Mapping[str, Any] = field(default_factory=dict)


class CheckContext(Protocol):
    now_iso: str
    schema: Optional[DecisionSchemaDefinition]
    instance: Optional[ProcessInstance]
    rubric: Optional[RubricTemplateSchema]


@dataclass(frozen=True)
class InvariantCheckContext:
    now_iso: str
    schema: Optional[DecisionSchemaDefinition] = None
    instance: Optional[ProcessInstance] = None
    rubric: Optional[RubricTemplateSchema] = None


Checker = Callable[[CheckContext], InvariantOutcome]


def _ok(invariant_id: InvariantId, code: str, details: Optional[Mapping[str, Any]] = None) -> InvariantOutcome:
    detail_map = dict(details or {})
    reason = str(detail_map.get("message") or code)
    return InvariantOutcome(
        invariant_id=invariant_id,
        passed=True,
        reason=reason,
        flow=Flow.CONTINUE,
        validity=Validity.VALID,
        code=code,
        details=detail_map,
    )


def _stop(
    invariant_id: InvariantId,
    code: str,
    reason: str,
    *,
    evidence: Sequence[Mapping[str, Any]] = (),
    details: Optional[Mapping[str, Any]] = None,
) -> InvariantOutcome:
    return InvariantOutcome(
        invariant_id=invariant_id,
        passed=False,
        reason=reason,
        flow=Flow.STOP,
        validity=Validity.INVALID,
        code=code,
        evidence=tuple(evidence),
        details={"message": reason, **dict(details or {})},
    )


# ------------------------------------------------------------------------------
# Schema invariants
# ------------------------------------------------------------------------------


def check_phases_non_empty(ctx: CheckContext) -> InvariantOutcome:
    schema = ctx.schema
    if schema is None:
        return _ok(InvariantId.SCHEMA_PHASES_NON_EMPTY, "schema_not_applicable")
    if not schema.phases:
        return _stop(
            InvariantId.SCHEMA_PHASES_NON_EMPTY,
            "no_phases",
            "A decision schema must declare at least one phase.",
            evidence=({"kind": "schema", "value": schema.id},),
        )
    return _ok(InvariantId.SCHEMA_PHASES_NON_EMPTY, "phases_present", {"count": len(schema.phases)})


def check_phase_ids_unique(ctx: CheckContext) -> InvariantOutcome:
    schema = ctx.schema
    if schema is None:
        return _ok(InvariantId.SCHEMA_PHASE_IDS_UNIQUE, "schema_not_applicable")
    counts = Counter(phase.id for phase in schema.phases)
    duplicates = sorted(pid for pid, n in counts.items() if n > 1)
    if duplicates:
        return _stop(
            InvariantId.SCHEMA_PHASE_IDS_UNIQUE,
            "duplicate_phase_ids",
            f"Phase ids must be unique; duplicated: {', '.join(duplicates)}.",
            evidence=tuple({"kind": "phase_id", "value": pid} for pid in duplicates),
            details={"duplicates": duplicates},
        )
    return _ok(InvariantId.SCHEMA_PHASE_IDS_UNIQUE, "phase_ids_unique")


def _explicit_transitions(schema: DecisionSchemaDefinition) -> Sequence[Transition]:
    return schema.transitions or ()


def check_transition_endpoints_known(ctx: CheckContext) -> InvariantOutcome:
    schema = ctx.schema
    if schema is None:
        return _ok(InvariantId.SCHEMA_TRANSITION_ENDPOINTS_KNOWN, "schema_not_applicable")
    known = {phase.id for phase in schema.phases}
    unknown: list[dict[str, str]] = []
    for transition in _explicit_transitions(schema):
        for source in transition.sources:
            if source not in known:
                unknown.append({"transition": transition.id, "endpoint": "from", "value": source})
        if transition.to not in known:
            unknown.append({"transition": transition.id, "endpoint": "to", "value": transition.to})
    if unknown:
        return _stop(
            InvariantId.SCHEMA_TRANSITION_ENDPOINTS_KNOWN,
            "unknown_transition_endpoint",
            "Transitions must connect phases declared by the schema.",
            evidence=tuple({"kind": "transition", "value": item["transition"]} for item in unknown),
            details={"unknown": unknown},
        )
    return _ok(InvariantId.SCHEMA_TRANSITION_ENDPOINTS_KNOWN, "transition_endpoints_known")


def is_between_pair(value: Any) -> bool:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return False
    low, high = value
    if isinstance(low, bool) or isinstance(high, bool):
        return False
    if isinstance(low, (int, float)) and isinstance(high, (int, float)):
        return True
    return isinstance(low, str) and isinstance(high, str)


def check_condition_values_wellformed(ctx: CheckContext) -> InvariantOutcome:
    schema = ctx.schema
    if schema is None:
        return _ok(InvariantId.SCHEMA_CONDITION_VALUES_WELLFORMED, "schema_not_applicable")
    malformed: list[dict[str, Any]] = []
    for transition in _explicit_transitions(schema):
        conditions = transition.rules.conditions if transition.rules else []
        for index, condition in enumerate(conditions):
            if condition.operator == ConditionOperator.BETWEEN and not is_between_pair(condition.value):
                malformed.append({"transition": transition.id, "rule_id": f"rule_{index}"})
    if malformed:
        return _stop(
            InvariantId.SCHEMA_CONDITION_VALUES_WELLFORMED,
            "between_requires_pair",
            "Conditions using 'between' must carry a [min, max] value.",
            evidence=tuple({"kind": "transition", "value": item["transition"]} for item in malformed),
            details={"malformed": malformed},
        )
    return _ok(InvariantId.SCHEMA_CONDITION_VALUES_WELLFORMED, "condition_values_wellformed")


# ------------------------------------------------------------------------------
# Rubric invariants
# ------------------------------------------------------------------------------


def check_rubric_field_order_integrity(ctx: CheckContext) -> InvariantOutcome:
    rubric = ctx.rubric
    if rubric is None:
        return _ok(InvariantId.RUBRIC_FIELD_ORDER_INTEGRITY, "rubric_not_applicable")

    order = list(rubric.x_field_order)
    counts = Counter(order)
    duplicates = sorted(cid for cid, n in counts.items() if n > 1)
    if duplicates:
        return _stop(
            InvariantId.RUBRIC_FIELD_ORDER_INTEGRITY,
            "duplicate_criterion_ids",
            f"x-field-order contains duplicate ids: {', '.join(duplicates)}.",
            evidence=tuple({"kind": "criterion_id", "value": cid} for cid in duplicates),
            details={"duplicates": duplicates},
        )

    missing = [cid for cid in order if cid not in rubric.properties]
    if missing:
        return _stop(
            InvariantId.RUBRIC_FIELD_ORDER_INTEGRITY,
            "criterion_schema_missing",
            f"x-field-order references criteria without a schema: {', '.join(missing)}.",
            evidence=tuple({"kind": "criterion_id", "value": cid} for cid in missing),
            details={"missing": missing},
        )
    return _ok(InvariantId.RUBRIC_FIELD_ORDER_INTEGRITY, "field_order_consistent", {"count": len(order)})


# ------------------------------------------------------------------------------
# Instance invariants
# ------------------------------------------------------------------------------


def check_instance_not_terminal(ctx: CheckContext) -> InvariantOutcome:
    instance = ctx.instance
    if instance is None:
        return _ok(InvariantId.INSTANCE_NOT_TERMINAL, "instance_not_applicable")
    if instance.is_terminal:
        return _stop(
            InvariantId.INSTANCE_NOT_TERMINAL,
            "instance_terminal",
            f"Instance {instance.id} is {instance.status.value} and accepts no further transitions.",
            evidence=({"kind": "instance", "value": instance.id}, {"kind": "status", "value": instance.status.value}),
        )
    return _ok(InvariantId.INSTANCE_NOT_TERMINAL, "instance_open", {"status": instance.status.value})


def check_instance_current_phase_known(ctx: CheckContext) -> InvariantOutcome:
    instance, schema = ctx.instance, ctx.schema
    if instance is None or schema is None:
        return _ok(InvariantId.INSTANCE_CURRENT_PHASE_KNOWN, "instance_not_applicable")
    current = instance.current_state_id
    if schema.phase(current) is None:
        return _stop(
            InvariantId.INSTANCE_CURRENT_PHASE_KNOWN,
            "current_phase_unknown",
            f"Instance {instance.id} points at phase '{current}' which schema {schema.id} does not declare.",
            evidence=({"kind": "instance", "value": instance.id}, {"kind": "phase_id", "value": current}),
        )
    return _ok(InvariantId.INSTANCE_CURRENT_PHASE_KNOWN, "current_phase_known", {"phase_id": current})


REGISTRY: dict[InvariantId, Checker] = {
    InvariantId.SCHEMA_PHASES_NON_EMPTY: check_phases_non_empty,
    InvariantId.SCHEMA_PHASE_IDS_UNIQUE: check_phase_ids_unique,
    InvariantId.SCHEMA_TRANSITION_ENDPOINTS_KNOWN: check_transition_endpoints_known,
    InvariantId.SCHEMA_CONDITION_VALUES_WELLFORMED: check_condition_values_wellformed,
    InvariantId.RUBRIC_FIELD_ORDER_INTEGRITY: check_rubric_field_order_integrity,
    InvariantId.INSTANCE_NOT_TERMINAL: check_instance_not_terminal,
    InvariantId.INSTANCE_CURRENT_PHASE_KNOWN: check_instance_current_phase_known,
}

SCHEMA_INVARIANTS: tuple[InvariantId, ...] = (
    InvariantId.SCHEMA_PHASES_NON_EMPTY,
    InvariantId.SCHEMA_PHASE_IDS_UNIQUE,
    InvariantId.SCHEMA_TRANSITION_ENDPOINTS_KNOWN,
    InvariantId.SCHEMA_CONDITION_VALUES_WELLFORMED,
)


def run_checkers(*, ctx: CheckContext, invariant_ids: Sequence[InvariantId]) -> list[InvariantOutcome]:
    """Run the selected checkers in the given order; never short-circuits."""
    return [REGISTRY[invariant_id](ctx) for invariant_id in invariant_ids]


def first_stop(outcomes: Sequence[InvariantOutcome]) -> Optional[InvariantOutcome]:
    for outcome in outcomes:
        if outcome.flow == Flow.STOP:
            return outcome
    return None


def default_check_context(
    *,
    schema: Optional[DecisionSchemaDefinition] = None,
    instance: Optional[ProcessInstance] = None,
    rubric: Optional[RubricTemplateSchema] = None,
    now: Optional[datetime] = None,
) -> InvariantCheckContext:
    return InvariantCheckContext(
        now_iso=(now or datetime.now(timezone.utc)).isoformat(),
        schema=schema,
        instance=instance,
        rubric=rubric,
    )
