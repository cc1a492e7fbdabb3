# process_engine/lifecycle.py
from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, Optional

from process_engine._compat import to_iso
from process_engine.config import EngineSettings, get_settings
from process_engine.contracts import (
    AdvanceResult,
    DecisionSchemaDefinition,
    InstanceData,
    InstanceMetrics,
    PhaseProgress,
    ProcessInstance,
    ProcessResults,
    ProcessStatus,
    Proposal,
    StateEntry,
)
from process_engine.errors import (
    ConfigurationError,
    InvalidStatusTransitionError,
    InvariantViolationError,
    UnknownPhaseError,
)
from process_engine.pipeline import resolve_phase_variables, run_pipeline
from process_engine.stable_ids import pipeline_fingerprint, proposal_key
from process_engine.transitions import check_transitions, ensure_open, execute_transition

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------------------
# Instance status machine
# ------------------------------------------------------------------------------

# action -> (allowed source statuses, target status)
STATUS_MOVES: dict[str, tuple[frozenset[ProcessStatus], ProcessStatus]] = {
    "launch": (frozenset({ProcessStatus.DRAFT}), ProcessStatus.ACTIVE),
    "pause": (frozenset({ProcessStatus.ACTIVE}), ProcessStatus.PAUSED),
    "resume": (frozenset({ProcessStatus.PAUSED}), ProcessStatus.ACTIVE),
    "complete": (frozenset({ProcessStatus.ACTIVE, ProcessStatus.PAUSED}), ProcessStatus.COMPLETED),
    "cancel": (
        frozenset({ProcessStatus.DRAFT, ProcessStatus.ACTIVE, ProcessStatus.PAUSED}),
        ProcessStatus.CANCELLED,
    ),
}


def _move_status(instance: ProcessInstance, action: str) -> ProcessInstance:
    allowed, target = STATUS_MOVES[action]
    if instance.status not in allowed:
        raise InvalidStatusTransitionError(
            f"Cannot {action} instance {instance.id} while it is {instance.status.value}"
        )
    logger.info("instance %s: %s -> %s", instance.id, instance.status.value, target.value)
    return instance.model_copy(update={"status": target, "version": instance.version + 1})


def launch(instance: ProcessInstance, *, now: datetime) -> ProcessInstance:
    """``draft -> active``; stamps ``enteredAt`` on the current phase if it has none."""
    launched = _move_status(instance, "launch")
    data = launched.instance_data
    current = data.current_state_id
    if current in data.state_data:
        return launched
    state_data = dict(data.state_data)
    state_data[current] = StateEntry(entered_at=to_iso(now))
    return launched.model_copy(update={"instance_data": data.model_copy(update={"state_data": state_data})})


def pause(instance: ProcessInstance) -> ProcessInstance:
    return _move_status(instance, "pause")


def resume(instance: ProcessInstance) -> ProcessInstance:
    return _move_status(instance, "resume")


def complete(instance: ProcessInstance) -> ProcessInstance:
    return _move_status(instance, "complete")


def cancel(instance: ProcessInstance) -> ProcessInstance:
    return _move_status(instance, "cancel")


def create_instance(
    schema: DecisionSchemaDefinition,
    *,
    instance_id: str,
    process_id: Optional[str] = None,
    field_values: Optional[Mapping[str, Any]] = None,
) -> ProcessInstance:
    """New ``draft`` instance positioned on the schema's initial phase."""
    phases = []
    for phase in schema.phases:
        end_date = phase.rules.advancement.end_date if phase.rules.advancement else None
        phases.append(PhaseProgress(phase_id=phase.id, end_date=end_date))
    return ProcessInstance(
        id=instance_id,
        process_id=process_id or schema.id,
        status=ProcessStatus.DRAFT,
        instance_data=InstanceData(
            current_state_id=schema.initial_phase.id,
            phases=phases,
            field_values=dict(field_values or {}),
        ),
    )


# ------------------------------------------------------------------------------
# Phase action gating
# ------------------------------------------------------------------------------

PHASE_ACTIONS: tuple[str, ...] = (
    "proposals.submit",
    "proposals.edit",
    "proposals.review",
    "voting.submit",
    "voting.edit",
)


def is_action_allowed(schema: DecisionSchemaDefinition, phase_id: str, action: str) -> bool:
    phase = schema.phase(phase_id)
    if phase is None:
        raise UnknownPhaseError(f"Schema {schema.id} has no phase '{phase_id}'")
    if action not in PHASE_ACTIONS:
        raise ConfigurationError(f"Unknown phase action {action!r}; expected one of {', '.join(PHASE_ACTIONS)}")
    group, flag = action.split(".", 1)
    return bool(getattr(getattr(phase.rules, group), flag))


# ------------------------------------------------------------------------------
# Phase advancement
# ------------------------------------------------------------------------------


def advance_phase(
    instance: ProcessInstance,
    schema: DecisionSchemaDefinition,
    to_state_id: str,
    metrics: InstanceMetrics,
    *,
    proposals: Sequence[Proposal] = (),
    transition_data: Optional[Mapping[str, Any]] = None,
    settings: Optional[EngineSettings] = None,
) -> AdvanceResult:
    """
    Move an active instance to ``to_state_id``.

    Unmet conditions come back as ``advanced=False`` with the exhaustive failed
    rules and the untouched input snapshot. On success the source phase's
    selection pipeline (if any) runs over ``proposals`` before anything is
    committed, so a configuration error leaves no partial state behind.
    """
    cfg = settings or get_settings()
    ensure_open(instance, schema)
    if instance.status != ProcessStatus.ACTIVE:
        raise InvalidStatusTransitionError(
            f"Instance {instance.id} is {instance.status.value}; phases only advance while active"
        )
    source = schema.phase(instance.current_state_id)
    if source is None:
        raise UnknownPhaseError(f"Schema {schema.id} has no phase '{instance.current_state_id}'")
    if schema.phase(to_state_id) is None:
        raise UnknownPhaseError(f"Schema {schema.id} has no phase '{to_state_id}'")

    check = check_transitions(instance, schema, metrics, to_state_id, settings=cfg)
    target = check.for_target(to_state_id)
    if target is None:
        raise InvariantViolationError(
            f"No transition from '{instance.current_state_id}' to '{to_state_id}' in schema {schema.id}"
        )
    if not target.can_execute:
        logger.info(
            "instance %s: advance %s -> %s blocked by %d rule(s)",
            instance.id,
            instance.current_state_id,
            to_state_id,
            len(target.failed_rules),
        )
        return AdvanceResult(advanced=False, instance=instance, check=check)

    selected: Optional[list[Proposal]] = None
    fingerprint: Optional[str] = None
    if source.selection_pipeline is not None:
        variables = resolve_phase_variables(source, instance, precedence=cfg.variable_precedence)
        selected = run_pipeline(source.selection_pipeline, proposals, variables)
        fingerprint = pipeline_fingerprint(source.selection_pipeline, proposals, variables)

    updated, record = execute_transition(
        instance, schema, to_state_id, metrics, transition_data=transition_data, settings=cfg
    )

    data = updated.instance_data
    source_entry = instance.instance_data.state_data.get(source.id)
    if selected is not None:
        selected_ids = [proposal_key(p) for p in selected]
    else:
        selected_ids = list(source_entry.selected_proposal_ids or []) if source_entry else []

    state_data = dict(data.state_data)
    if selected is not None:
        state_data[to_state_id] = state_data[to_state_id].model_copy(update={"selected_proposal_ids": selected_ids})
    update: dict[str, Any] = {"state_data": state_data}
    if to_state_id == schema.final_phase.id and data.results is None:
        update["results"] = ProcessResults(
            selected_proposal_ids=selected_ids,
            executed_at=record.transitioned_at,
            pipeline_fingerprint=fingerprint,
        )
    updated = updated.model_copy(update={"instance_data": data.model_copy(update=update)})

    logger.info(
        "instance %s: advanced %s -> %s (version %d)",
        instance.id,
        record.from_state_id,
        record.to_state_id,
        updated.version,
    )
    return AdvanceResult(
        advanced=True,
        instance=updated,
        check=check,
        history_record=record,
        selected_proposals=[dict(p) for p in selected] if selected is not None else None,
    )
