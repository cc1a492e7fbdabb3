# process_engine/monitor.py
"""
Date-driven advancement.

``expected_scheduled_transitions`` lists when each date-advanced phase hands
over to the next one; ``process_due_transitions`` is the batch job a scheduler
calls to move every active instance through the hand-overs that are due.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from process_engine._compat import parse_iso
from process_engine.adapters.metrics import MetricsProvider, ProposalStore
from process_engine.config import EngineSettings, get_settings
from process_engine.contracts import (
    AdvancementMethod,
    DecisionSchemaDefinition,
    ProcessInstance,
    ProcessStatus,
    TransitionHistoryRecord,
)
from process_engine.errors import ConfigurationError, ProcessEngineError
from process_engine.lifecycle import advance_phase
from process_engine.transitions import phase_end_date

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledTransition:
    from_state_id: str
    to_state_id: str
    scheduled_at: datetime


@dataclass(frozen=True)
class MonitorError:
    instance_id: str
    from_state_id: str
    to_state_id: str
    error: str


@dataclass
class MonitorResult:
    processed: int = 0
    failed: int = 0
    errors: list[MonitorError] = field(default_factory=list)
    instances: dict[str, ProcessInstance] = field(default_factory=dict)
    history: list[TransitionHistoryRecord] = field(default_factory=list)


def expected_scheduled_transitions(
    schema: DecisionSchemaDefinition,
    instance: ProcessInstance,
) -> list[ScheduledTransition]:
    """
    One entry per date-advanced phase, fired at the next phase's planned start
    or, failing that, at the phase's own end date.
    """
    data = instance.instance_data
    out: list[ScheduledTransition] = []
    for current, following in zip(schema.phases, schema.phases[1:]):
        if current.advancement_method != AdvancementMethod.DATE:
            continue
        progress = data.phase_progress(following.id)
        when = progress.planned_start_date if progress is not None else None
        when = when or phase_end_date(schema, current.id, data)
        if not when:
            raise ConfigurationError(
                f"Phase '{following.id}' needs a start date for date-based advancement from "
                f"'{current.id}' (instance: {instance.id})"
            )
        try:
            scheduled_at = parse_iso(when)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid schedule date {when!r} for phase '{current.id}'") from exc
        out.append(ScheduledTransition(from_state_id=current.id, to_state_id=following.id, scheduled_at=scheduled_at))
    return sorted(out, key=lambda item: item.scheduled_at)


def _next_due(
    schema: DecisionSchemaDefinition,
    instance: ProcessInstance,
    now: datetime,
) -> Optional[ScheduledTransition]:
    for item in expected_scheduled_transitions(schema, instance):
        if item.from_state_id == instance.current_state_id and item.scheduled_at <= now:
            return item
    return None


def process_due_transitions(
    instances: Iterable[ProcessInstance],
    *,
    schemas: Mapping[str, DecisionSchemaDefinition],
    metrics_provider: MetricsProvider,
    proposal_store: ProposalStore,
    now: datetime,
    settings: Optional[EngineSettings] = None,
) -> MonitorResult:
    """
    Advance each active instance through every due hand-over, in order.

    Every instance is evaluated against the same ``now``. A failure stops that
    instance only; it is counted, logged and reported, and the batch continues.
    """
    cfg = settings or get_settings()
    result = MonitorResult()

    for instance in instances:
        if instance.status != ProcessStatus.ACTIVE:
            continue
        current = instance
        schema = schemas.get(instance.process_id)
        if schema is None:
            result.failed += 1
            result.errors.append(
                MonitorError(instance.id, instance.current_state_id, "", f"Unknown process schema {instance.process_id}")
            )
            logger.error("instance %s: unknown process schema %s", instance.id, instance.process_id)
            continue

        while True:
            try:
                due = _next_due(schema, current, now)
            except ConfigurationError as exc:
                result.failed += 1
                result.errors.append(MonitorError(current.id, current.current_state_id, "", str(exc)))
                logger.error("instance %s: %s", current.id, exc)
                break
            if due is None:
                break

            try:
                metrics = metrics_provider.get_metrics(current.id).model_copy(update={"now": now})
                outcome = advance_phase(
                    current,
                    schema,
                    due.to_state_id,
                    metrics,
                    proposals=proposal_store.get_proposals(current.id),
                    transition_data={"trigger": "schedule", "scheduledAt": due.scheduled_at.isoformat()},
                    settings=cfg,
                )
            except (ProcessEngineError, KeyError) as exc:
                result.failed += 1
                result.errors.append(MonitorError(current.id, due.from_state_id, due.to_state_id, str(exc)))
                logger.error("instance %s: %s -> %s failed: %s", current.id, due.from_state_id, due.to_state_id, exc)
                break

            if not outcome.advanced:
                reasons = ", ".join(rule.error_message for rule in outcome.failed_rules) or "not executable"
                result.failed += 1
                result.errors.append(MonitorError(current.id, due.from_state_id, due.to_state_id, reasons))
                logger.error("instance %s: %s -> %s blocked: %s", current.id, due.from_state_id, due.to_state_id, reasons)
                break

            current = outcome.instance
            result.processed += 1
            if outcome.history_record is not None:
                result.history.append(outcome.history_record)

        if current is not instance:
            result.instances[current.id] = current

    return result
