from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from process_engine.contracts import (
    AdvanceResult,
    DecisionSchemaDefinition,
    ProcessInstance,
    TransitionCheckResult,
)


@dataclass
class DecisionStepState:
    schema: DecisionSchemaDefinition | None = None
    instance: ProcessInstance | None = None
    proposals: list[dict[str, Any]] = field(default_factory=list)
    last_check: TransitionCheckResult | None = None
    last_advance: AdvanceResult | None = None
    last_selection: list[dict[str, Any]] | None = None
    last_error: Exception | None = None


def get_decision_step_state(context: Any) -> DecisionStepState:
    state = getattr(context, "_decision_step_state", None)
    if not isinstance(state, DecisionStepState):
        state = DecisionStepState()
        setattr(context, "_decision_step_state", state)
    return state


def reset_decision_step_state(context: Any) -> DecisionStepState:
    state = DecisionStepState()
    setattr(context, "_decision_step_state", state)
    return state
