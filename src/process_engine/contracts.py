# process_engine/contracts.py
from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)
from pydantic.alias_generators import to_camel

from process_engine._compat import StrEnum

Proposal = Mapping[str, Any]


# ------------------------------------------------------------------------------
# Shared BaseModel config helpers
# ------------------------------------------------------------------------------

# Authored JSON documents: unknown keys are preserved so a round trip through the
# engine never drops fields owned by other collaborators (ui hints, templates).
_DOCUMENT_CONFIG = ConfigDict(
    extra="allow",
    frozen=True,
    populate_by_name=True,
    alias_generator=to_camel,
    use_enum_values=False,
)

_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    validate_assignment=True,
    populate_by_name=True,
    alias_generator=to_camel,
    use_enum_values=False,  # keep enums as enums in Python
)

_IMMUTABLE_CONTRACT_CONFIG = ConfigDict(
    extra="forbid",
    frozen=True,
    populate_by_name=True,
    alias_generator=to_camel,
    use_enum_values=False,
)


class WireModel(BaseModel):
    def to_wire(self) -> dict[str, Any]:
        """JSON shape exchanged with storage and editors (camelCase / ``x-`` keys)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ------------------------------------------------------------------------------
# Phase rules
# ------------------------------------------------------------------------------


class AdvancementMethod(StrEnum):
    DATE = "date"
    MANUAL = "manual"


class ProposalRules(WireModel):
    model_config = _DOCUMENT_CONFIG
    submit: bool | None = None
    edit: bool | None = None
    review: bool | None = None


class VotingRules(WireModel):
    model_config = _DOCUMENT_CONFIG
    submit: bool | None = None
    edit: bool | None = None


class AdvancementRules(WireModel):
    model_config = _DOCUMENT_CONFIG
    method: AdvancementMethod | None = None
    end_date: str | None = None


class PhaseRules(WireModel):
    model_config = _DOCUMENT_CONFIG
    proposals: ProposalRules = Field(default_factory=ProposalRules)
    voting: VotingRules = Field(default_factory=VotingRules)
    advancement: AdvancementRules | None = None


# ------------------------------------------------------------------------------
# Selection pipeline blocks
# ------------------------------------------------------------------------------


class SortOrder(StrEnum):
    ASC = "asc"
    DESC = "desc"


class VariableRef(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    variable: str = Field(min_length=1)

    @property
    def name(self) -> str:
        return self.variable[1:] if self.variable.startswith("$") else self.variable


class SortKey(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    field: str = Field(min_length=1)
    order: SortOrder = SortOrder.ASC
    nulls_first: bool = False


class _BlockBase(WireModel):
    model_config = _DOCUMENT_CONFIG
    id: str | None = None
    name: str | None = None
    description: str | None = None


class SortBlock(_BlockBase):
    type: Literal["sort"] = "sort"
    sort_by: list[SortKey] = Field(min_length=1)


class FilterBlock(_BlockBase):
    """Keeps proposals for which ``condition`` (an expression document) is truthy."""

    type: Literal["filter"] = "filter"
    condition: dict[str, Any]


class LimitBlock(_BlockBase):
    type: Literal["limit"] = "limit"
    count: Annotated[int, Field(ge=0)] | VariableRef
    offset: Annotated[int, Field(ge=0)] | VariableRef | None = None


Block = Annotated[Union[SortBlock, FilterBlock, LimitBlock], Field(discriminator="type")]

BLOCK_TYPES: tuple[str, ...] = ("sort", "filter", "limit")


class SelectionPipeline(WireModel):
    model_config = _DOCUMENT_CONFIG
    version: str = "1.0.0"
    blocks: list[Block] = Field(default_factory=list)
    variables: dict[str, Any] = Field(default_factory=dict)


# ------------------------------------------------------------------------------
# Transitions / conditions (authoritative condition semantics)
# ------------------------------------------------------------------------------


class TransitionType(StrEnum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class ConditionType(StrEnum):
    TIME = "time"
    PROPOSAL_COUNT = "proposalCount"
    PARTICIPATION_COUNT = "participationCount"
    APPROVAL_RATE = "approvalRate"
    CUSTOM_FIELD = "customField"


class ConditionOperator(StrEnum):
    EQUALS = "equals"
    GREATER_THAN = "greaterThan"
    LESS_THAN = "lessThan"
    BETWEEN = "between"


class Condition(WireModel):
    """
    A single gate on a transition. ``value`` is kept loosely typed: a malformed
    ``between`` pair must reach the evaluator as a failed rule, not a parse error.
    """

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    type: ConditionType
    operator: ConditionOperator
    value: Any = None
    field: str | None = None


class TransitionRules(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    type: TransitionType = TransitionType.MANUAL
    conditions: list[Condition] = Field(default_factory=list)
    require_all: bool = True


class TransitionAction(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    type: str = Field(min_length=1)
    config: dict[str, Any] = Field(default_factory=dict)


class Transition(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    id: str
    name: str
    from_: str | list[str] = Field(alias="from")
    to: str
    rules: TransitionRules | None = None
    actions: list[TransitionAction] = Field(default_factory=list)

    @property
    def sources(self) -> tuple[str, ...]:
        if isinstance(self.from_, str):
            return (self.from_,)
        return tuple(self.from_)

    def applies_from(self, state_id: str) -> bool:
        return state_id in self.sources


# ------------------------------------------------------------------------------
# Phases / decision schema
# ------------------------------------------------------------------------------


class Phase(WireModel):
    model_config = _DOCUMENT_CONFIG
    id: str = Field(min_length=1)
    name: str
    description: str | None = None
    rules: PhaseRules = Field(default_factory=PhaseRules)
    selection_pipeline: SelectionPipeline | None = None
    settings: dict[str, Any] | None = None

    def setting_defaults(self) -> dict[str, Any]:
        """``default`` values declared by the phase settings JSON Schema."""
        props = (self.settings or {}).get("properties")
        if not isinstance(props, Mapping):
            return {}
        out: dict[str, Any] = {}
        for name, prop in props.items():
            if isinstance(prop, Mapping) and "default" in prop:
                out[str(name)] = prop["default"]
        return out

    @property
    def advancement_method(self) -> AdvancementMethod | None:
        return self.rules.advancement.method if self.rules.advancement else None


class DecisionSchemaDefinition(WireModel):
    model_config = _DOCUMENT_CONFIG
    id: str
    version: str
    name: str
    description: str | None = None
    config: dict[str, Any] | None = None
    phases: list[Phase] = Field(min_length=1)
    transitions: list[Transition] | None = None

    def phase(self, phase_id: str) -> Phase | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    def phase_index(self, phase_id: str) -> int | None:
        for index, phase in enumerate(self.phases):
            if phase.id == phase_id:
                return index
        return None

    @property
    def initial_phase(self) -> Phase:
        return self.phases[0]

    @property
    def final_phase(self) -> Phase:
        return self.phases[-1]


# ------------------------------------------------------------------------------
# Rubric templates
# ------------------------------------------------------------------------------


class CriterionType(StrEnum):
    SCORED = "scored"
    YES_NO = "yes_no"
    DROPDOWN = "dropdown"
    LONG_TEXT = "long_text"


class RubricTemplateSchema(WireModel):
    """
    Generic JSON Schema document holding review criteria.

    ``properties`` stays as raw fragments: one corrupt criterion must not make the
    whole template unreadable. ``x-field-order`` is the only ordering source.
    """

    model_config = _DOCUMENT_CONFIG
    type: Literal["object"] = "object"
    properties: dict[str, dict[str, Any]] = Field(default_factory=dict)
    required: list[str] | None = None
    x_field_order: list[str] = Field(
        default_factory=list,
        alias="x-field-order",
        validation_alias=AliasChoices("x-field-order", "x_field_order"),
    )


class OptionEntry(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    const: int | str
    title: str | None = None


class _CriterionSchemaBase(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    title: str | None = None
    description: str | None = None


class ScoredCriterionSchema(_CriterionSchemaBase):
    type: Literal["integer"] = "integer"
    x_format: Literal["dropdown"] = Field(default="dropdown", alias="x-format")
    minimum: int = 1
    maximum: int
    one_of: list[OptionEntry] = Field(default_factory=list, alias="oneOf")


class YesNoCriterionSchema(_CriterionSchemaBase):
    type: Literal["string"] = "string"
    x_format: Literal["dropdown"] = Field(default="dropdown", alias="x-format")
    one_of: list[OptionEntry] = Field(
        default_factory=lambda: [OptionEntry(const="yes", title="Yes"), OptionEntry(const="no", title="No")],
        alias="oneOf",
    )


class DropdownCriterionSchema(_CriterionSchemaBase):
    type: Literal["string"] = "string"
    x_format: Literal["dropdown"] = Field(default="dropdown", alias="x-format")
    one_of: list[OptionEntry] = Field(default_factory=list, alias="oneOf")


class LongTextCriterionSchema(_CriterionSchemaBase):
    type: Literal["string"] = "string"
    x_format: Literal["long-text"] = Field(default="long-text", alias="x-format")


CriterionSchema = Union[
    ScoredCriterionSchema,
    YesNoCriterionSchema,
    DropdownCriterionSchema,
    LongTextCriterionSchema,
]


class CriterionOption(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    id: str
    value: str


class CriterionView(WireModel):
    """Decoded, editor-friendly projection of one criterion. Never persisted."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    id: str
    criterion_type: CriterionType
    label: str
    description: str | None = None
    required: bool = False
    max_points: int | None = None
    score_labels: list[str] = Field(default_factory=list)
    options: list[CriterionOption] = Field(default_factory=list)


# ------------------------------------------------------------------------------
# Process instances (consumed snapshots)
# ------------------------------------------------------------------------------


class ProcessStatus(StrEnum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[ProcessStatus] = frozenset({ProcessStatus.COMPLETED, ProcessStatus.CANCELLED})


class PhaseProgress(WireModel):
    model_config = _DOCUMENT_CONFIG
    phase_id: str
    start_date: str | None = None
    end_date: str | None = None
    planned_start_date: str | None = None


class StateEntry(WireModel):
    model_config = _DOCUMENT_CONFIG
    entered_at: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    selected_proposal_ids: list[str] | None = None


class ProcessResults(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    selected_proposal_ids: list[str] = Field(default_factory=list)
    executed_at: str
    pipeline_fingerprint: str | None = None
    error: str | None = None


class InstanceData(WireModel):
    model_config = _DOCUMENT_CONFIG
    current_state_id: str
    phases: list[PhaseProgress] = Field(default_factory=list)
    field_values: dict[str, Any] = Field(default_factory=dict)
    state_data: dict[str, StateEntry] = Field(default_factory=dict)
    results: ProcessResults | None = None

    def phase_progress(self, phase_id: str) -> PhaseProgress | None:
        for progress in self.phases:
            if progress.phase_id == phase_id:
                return progress
        return None


class ProcessInstance(WireModel):
    """
    Immutable snapshot of a running instance. ``version`` is the optimistic
    concurrency token the persistence layer compares before writing.
    """

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    id: str
    process_id: str
    status: ProcessStatus = ProcessStatus.DRAFT
    version: int = Field(default=0, ge=0)
    instance_data: InstanceData

    @property
    def current_state_id(self) -> str:
        return self.instance_data.current_state_id

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class TransitionHistoryRecord(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG

    REQUIRED_PAYLOAD_FIELDS: ClassVar[tuple[str, ...]] = (
        "id",
        "processInstanceId",
        "fromStateId",
        "toStateId",
        "transitionedAt",
        "transitionData",
    )

    id: str = Field(min_length=1)
    process_instance_id: str = Field(min_length=1)
    from_state_id: str
    to_state_id: str
    transitioned_at: str
    transition_data: dict[str, Any] = Field(default_factory=dict)
    actions: list[TransitionAction] = Field(default_factory=list)

    @classmethod
    def required_payload_fields(cls) -> tuple[str, ...]:
        return cls.REQUIRED_PAYLOAD_FIELDS


# ------------------------------------------------------------------------------
# Metrics / evaluation outputs
# ------------------------------------------------------------------------------


class InstanceMetrics(WireModel):
    """Live counters fetched by the caller; ``now`` is the evaluation clock."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    proposal_count: int = Field(default=0, ge=0)
    participation_count: int = Field(default=0, ge=0)
    approval_rate: float | None = None
    field_values: dict[str, Any] = Field(default_factory=dict)
    now: datetime

    @field_validator("now")
    @classmethod
    def _require_aware_now(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("metrics.now must be timezone-aware")
        return value


class FailedRule(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    rule_id: str
    error_message: str
    code: str = "condition_not_met"


class AvailableTransition(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    transition_id: str
    to_state_id: str
    transition_name: str
    can_execute: bool
    failed_rules: list[FailedRule] = Field(default_factory=list)


class TransitionCheckResult(WireModel):
    model_config = _IMMUTABLE_CONTRACT_CONFIG
    can_transition: bool
    available_transitions: list[AvailableTransition] = Field(default_factory=list)

    def for_target(self, to_state_id: str) -> AvailableTransition | None:
        for item in self.available_transitions:
            if item.to_state_id == to_state_id:
                return item
        return None


class AdvanceResult(WireModel):
    """Outcome of ``advance_phase``: either a new snapshot or the blocking report."""

    model_config = _IMMUTABLE_CONTRACT_CONFIG
    advanced: bool
    instance: ProcessInstance
    check: TransitionCheckResult
    history_record: TransitionHistoryRecord | None = None
    selected_proposals: list[dict[str, Any]] | None = None

    @property
    def failed_rules(self) -> list[FailedRule]:
        rules: list[FailedRule] = []
        for item in self.check.available_transitions:
            rules.extend(item.failed_rules)
        return rules
