# process_engine/rubric.py
"""
Rubric template codec.

Review criteria are stored as a generic JSON Schema object: one property per
criterion, a top-level ``x-field-order`` array for ordering and ``x-format`` on
each property as the widget hint. This module classifies those fragments into
the four criterion kinds, projects them into ``CriterionView`` objects for
editors, and offers pure mutators that always return a new template.

Reads are lenient (unknown or corrupt criteria are skipped); writes that would
break ordering integrity raise.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Mapping, Sequence
from typing import Any, Callable

from process_engine.config import EngineSettings, get_settings
from process_engine.contracts import (
    CriterionOption,
    CriterionSchema,
    CriterionType,
    CriterionView,
    DropdownCriterionSchema,
    LongTextCriterionSchema,
    OptionEntry,
    RubricTemplateSchema,
    ScoredCriterionSchema,
    YesNoCriterionSchema,
)
from process_engine.errors import (
    ConfigurationError,
    DuplicateCriterionError,
    InvariantViolationError,
)
from process_engine.invariants import (
    InvariantId,
    InvariantOutcome,
    default_check_context,
    first_stop,
    run_checkers,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_POINTS = 5

DEFAULT_SCORE_LABELS: dict[int, str] = {
    1: "Poor",
    2: "Below Average",
    3: "Average",
    4: "Good",
    5: "Excellent",
}

# Translation keys returned by get_criterion_errors.
ERROR_LABEL_REQUIRED = "Criterion label is required"
ERROR_TWO_OPTIONS_REQUIRED = "At least two options are required"
ERROR_EMPTY_OPTION = "Options cannot be empty"
ERROR_EMPTY_SCORE_LABEL = "Score labels cannot be empty"

TemplateLike = RubricTemplateSchema | Mapping[str, Any]


def default_score_label(score: int) -> str:
    return DEFAULT_SCORE_LABELS.get(score, str(score))


# ------------------------------------------------------------------------------
# Criterion type <-> JSON Schema fragment
# ------------------------------------------------------------------------------


def create_criterion_schema(
    criterion_type: CriterionType,
    *,
    title: str | None = None,
    description: str | None = None,
) -> CriterionSchema:
    """Fresh schema fragment for a criterion kind, with default type-specific fields."""
    if criterion_type == CriterionType.SCORED:
        return ScoredCriterionSchema(
            title=title,
            description=description,
            minimum=1,
            maximum=DEFAULT_MAX_POINTS,
            one_of=[
                OptionEntry(const=score, title=default_score_label(score))
                for score in range(1, DEFAULT_MAX_POINTS + 1)
            ],
        )
    if criterion_type == CriterionType.YES_NO:
        return YesNoCriterionSchema(title=title, description=description)
    if criterion_type == CriterionType.DROPDOWN:
        return DropdownCriterionSchema(
            title=title,
            description=description,
            one_of=[
                OptionEntry(const="Option 1", title="Option 1"),
                OptionEntry(const="Option 2", title="Option 2"),
            ],
        )
    if criterion_type == CriterionType.LONG_TEXT:
        return LongTextCriterionSchema(title=title, description=description)
    raise ConfigurationError(f"Unknown criterion type: {criterion_type!r}")


def encode_criterion_schema(schema: CriterionSchema) -> dict[str, Any]:
    return schema.model_dump(mode="json", by_alias=True, exclude_none=True)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _option_consts(one_of: Any) -> list[Any]:
    if not isinstance(one_of, list):
        return []
    return [entry["const"] for entry in one_of if isinstance(entry, Mapping) and "const" in entry]


def infer_criterion_type(schema: Mapping[str, Any]) -> CriterionType | None:
    """
    Classify a raw criterion fragment by shape.

    Returns ``None`` for anything unrecognised so callers can skip the entry.
    """
    if not isinstance(schema, Mapping):
        return None

    x_format = schema.get("x-format")
    if x_format == "long-text":
        return CriterionType.LONG_TEXT

    if x_format == "dropdown":
        if schema.get("type") == "integer" and _is_number(schema.get("maximum")):
            return CriterionType.SCORED

        if schema.get("type") == "string":
            consts = _option_consts(schema.get("oneOf"))
            if len(consts) == 2 and "yes" in consts and "no" in consts:
                return CriterionType.YES_NO
            return CriterionType.DROPDOWN

    return None


def encode_criterion(criterion: CriterionView) -> dict[str, Any]:
    """Inverse of the view projection: build the schema fragment for ``criterion``."""
    title = criterion.label
    description = criterion.description or None
    kind = criterion.criterion_type
    schema: CriterionSchema
    if kind == CriterionType.SCORED:
        maximum = criterion.max_points or len(criterion.score_labels) or DEFAULT_MAX_POINTS
        labels = list(criterion.score_labels)
        schema = ScoredCriterionSchema(
            title=title,
            description=description,
            maximum=maximum,
            one_of=[
                OptionEntry(const=score, title=labels[score - 1] if score - 1 < len(labels) else default_score_label(score))
                for score in range(1, maximum + 1)
            ],
        )
    elif kind == CriterionType.YES_NO:
        titles = [option.value for option in criterion.options] if len(criterion.options) == 2 else ["Yes", "No"]
        schema = YesNoCriterionSchema(
            title=title,
            description=description,
            one_of=[OptionEntry(const="yes", title=titles[0]), OptionEntry(const="no", title=titles[1])],
        )
    elif kind == CriterionType.DROPDOWN:
        schema = DropdownCriterionSchema(
            title=title,
            description=description,
            one_of=[OptionEntry(const=option.value, title=option.value) for option in criterion.options],
        )
    else:
        schema = LongTextCriterionSchema(title=title, description=description)
    return encode_criterion_schema(schema)


def build_rubric_template(criteria: Sequence[CriterionView]) -> RubricTemplateSchema:
    """Template holding ``criteria`` in the given order."""
    order = [criterion.id for criterion in criteria]
    duplicates = sorted(cid for cid, n in Counter(order).items() if n > 1)
    if duplicates:
        raise DuplicateCriterionError(f"Duplicate criterion ids: {', '.join(duplicates)}")
    required = [criterion.id for criterion in criteria if criterion.required]
    return RubricTemplateSchema.model_validate(
        {
            "type": "object",
            "properties": {criterion.id: encode_criterion(criterion) for criterion in criteria},
            "required": required or None,
            "x-field-order": order,
        }
    )


# ------------------------------------------------------------------------------
# Readers
# ------------------------------------------------------------------------------


def _coerce(template: TemplateLike) -> RubricTemplateSchema:
    if isinstance(template, RubricTemplateSchema):
        return template
    return RubricTemplateSchema.model_validate(template)


def _dump(template: RubricTemplateSchema) -> dict[str, Any]:
    return template.model_dump(mode="json", by_alias=True, exclude_none=True)


def get_criterion_order(template: TemplateLike) -> list[str]:
    return list(_coerce(template).x_field_order)


def get_criterion_schema(template: TemplateLike, criterion_id: str) -> dict[str, Any] | None:
    fragment = _coerce(template).properties.get(criterion_id)
    if isinstance(fragment, Mapping):
        return dict(fragment)
    return None


def get_criterion_type(template: TemplateLike, criterion_id: str) -> CriterionType | None:
    schema = get_criterion_schema(template, criterion_id)
    if schema is None:
        return None
    return infer_criterion_type(schema)


def is_criterion_required(template: TemplateLike, criterion_id: str) -> bool:
    return criterion_id in (_coerce(template).required or [])


def _score_labels(schema: Mapping[str, Any]) -> list[str]:
    one_of = schema.get("oneOf")
    if schema.get("type") != "integer" or not isinstance(one_of, list):
        return []
    entries = [
        entry
        for entry in one_of
        if isinstance(entry, Mapping) and _is_number(entry.get("const")) and isinstance(entry.get("title"), str)
    ]
    return [str(entry["title"]) for entry in sorted(entries, key=lambda e: e["const"])]


def _options(criterion_id: str, schema: Mapping[str, Any]) -> list[CriterionOption]:
    one_of = schema.get("oneOf")
    if schema.get("type") != "string" or not isinstance(one_of, list):
        return []
    entries = [
        entry
        for entry in one_of
        if isinstance(entry, Mapping) and isinstance(entry.get("const"), str) and "title" in entry
    ]
    return [
        CriterionOption(id=f"{criterion_id}-opt-{index}", value=str(entry.get("title") or ""))
        for index, entry in enumerate(entries)
    ]


def get_criterion_score_labels(template: TemplateLike, criterion_id: str) -> list[str]:
    schema = get_criterion_schema(template, criterion_id)
    return _score_labels(schema) if schema else []


def get_criterion(template: TemplateLike, criterion_id: str) -> CriterionView | None:
    tpl = _coerce(template)
    schema = get_criterion_schema(tpl, criterion_id)
    if schema is None:
        return None
    criterion_type = infer_criterion_type(schema)
    if criterion_type is None:
        return None

    title = schema.get("title")
    description = schema.get("description")
    maximum = schema.get("maximum")
    return CriterionView(
        id=criterion_id,
        criterion_type=criterion_type,
        label=title if isinstance(title, str) else "",
        description=description if isinstance(description, str) else None,
        required=is_criterion_required(tpl, criterion_id),
        max_points=int(maximum) if schema.get("type") == "integer" and _is_number(maximum) else None,
        score_labels=_score_labels(schema),
        options=_options(criterion_id, schema),
    )


def get_criteria(template: TemplateLike) -> list[CriterionView]:
    """Criteria in ``x-field-order``; missing, unclassifiable or repeated entries are skipped."""
    tpl = _coerce(template)
    criteria: list[CriterionView] = []
    seen: set[str] = set()
    for criterion_id in tpl.x_field_order:
        if criterion_id in seen:
            logger.warning("skipping rubric criterion %r: repeated in x-field-order", criterion_id)
            continue
        seen.add(criterion_id)
        criterion = get_criterion(tpl, criterion_id)
        if criterion is None:
            logger.warning("skipping rubric criterion %r: missing or unrecognised schema", criterion_id)
            continue
        criteria.append(criterion)
    return criteria


# ------------------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------------------


def get_criterion_errors(criterion: CriterionView) -> list[str]:
    """Advisory translation keys for an editor; not enforced by the codec."""
    errors: list[str] = []

    if not criterion.label.strip():
        errors.append(ERROR_LABEL_REQUIRED)

    if criterion.criterion_type == CriterionType.DROPDOWN:
        if len(criterion.options) < 2:
            errors.append(ERROR_TWO_OPTIONS_REQUIRED)
        if any(not option.value.strip() for option in criterion.options):
            errors.append(ERROR_EMPTY_OPTION)

    if criterion.criterion_type == CriterionType.SCORED:
        if any(not label.strip() for label in criterion.score_labels):
            errors.append(ERROR_EMPTY_SCORE_LABEL)

    return errors


def validate_rubric_template(template: TemplateLike) -> list[InvariantOutcome]:
    """Enforce ``x-field-order`` integrity (unique ids, each with a schema)."""
    tpl = _coerce(template)
    outcomes = run_checkers(
        ctx=default_check_context(rubric=tpl),
        invariant_ids=(InvariantId.RUBRIC_FIELD_ORDER_INTEGRITY,),
    )
    stop = first_stop(outcomes)
    if stop is None:
        return outcomes
    if stop.code == "duplicate_criterion_ids":
        raise DuplicateCriterionError(stop.reason, stop)
    raise ConfigurationError(stop.reason)


# ------------------------------------------------------------------------------
# Immutable mutators, each returns a new template
# ------------------------------------------------------------------------------


def _replace(template: RubricTemplateSchema, **changes: Any) -> RubricTemplateSchema:
    data = _dump(template)
    for key, value in changes.items():
        if value is None:
            data.pop(key, None)
        else:
            data[key] = value
    return RubricTemplateSchema.model_validate(data)


def _with_fragment(template: RubricTemplateSchema, criterion_id: str, fragment: dict[str, Any]) -> RubricTemplateSchema:
    properties = dict(_dump(template).get("properties") or {})
    properties[criterion_id] = fragment
    return _replace(template, properties=properties)


def _update_fragment(
    template: TemplateLike,
    criterion_id: str,
    update: Callable[[dict[str, Any]], dict[str, Any] | None],
) -> RubricTemplateSchema:
    tpl = _coerce(template)
    schema = get_criterion_schema(tpl, criterion_id)
    if schema is None:
        return tpl
    updated = update(schema)
    if updated is None:
        return tpl
    return _with_fragment(tpl, criterion_id, updated)


def create_empty_rubric_template() -> RubricTemplateSchema:
    return RubricTemplateSchema(type="object", properties={}, x_field_order=[])


def add_criterion(
    template: TemplateLike,
    criterion_id: str,
    criterion_type: CriterionType,
    label: str,
) -> RubricTemplateSchema:
    tpl = _coerce(template)
    if criterion_id in tpl.properties or criterion_id in tpl.x_field_order:
        raise DuplicateCriterionError(f"Criterion '{criterion_id}' already exists")
    fragment = encode_criterion_schema(create_criterion_schema(CriterionType(criterion_type), title=label))
    updated = _with_fragment(tpl, criterion_id, fragment)
    return _replace(updated, **{"x-field-order": [*tpl.x_field_order, criterion_id]})


def remove_criterion(template: TemplateLike, criterion_id: str) -> RubricTemplateSchema:
    tpl = _coerce(template)
    properties = {cid: schema for cid, schema in _dump(tpl).get("properties", {}).items() if cid != criterion_id}
    required = [cid for cid in tpl.required or [] if cid != criterion_id]
    return _replace(
        tpl,
        properties=properties,
        required=required or None,
        **{"x-field-order": [cid for cid in tpl.x_field_order if cid != criterion_id]},
    )


def reorder_criteria(template: TemplateLike, new_order: Sequence[str]) -> RubricTemplateSchema:
    """Replace the display order; the new order must be a permutation of the current one."""
    tpl = _coerce(template)
    order = list(new_order)
    duplicates = sorted(cid for cid, n in Counter(order).items() if n > 1)
    if duplicates:
        raise DuplicateCriterionError(f"Duplicate criterion ids in new order: {', '.join(duplicates)}")
    if set(order) != set(tpl.x_field_order):
        missing = sorted(set(tpl.x_field_order) - set(order))
        unknown = sorted(set(order) - set(tpl.x_field_order))
        raise InvariantViolationError(
            f"New order must contain exactly the existing criteria (missing: {missing}, unknown: {unknown})"
        )
    return _replace(tpl, **{"x-field-order": order})


def update_criterion_label(template: TemplateLike, criterion_id: str, label: str) -> RubricTemplateSchema:
    return _update_fragment(template, criterion_id, lambda schema: {**schema, "title": label})


def update_criterion_description(
    template: TemplateLike,
    criterion_id: str,
    description: str | None,
) -> RubricTemplateSchema:
    def _apply(schema: dict[str, Any]) -> dict[str, Any]:
        updated = dict(schema)
        if description:
            updated["description"] = description
        else:
            updated.pop("description", None)
        return updated

    return _update_fragment(template, criterion_id, _apply)


def set_criterion_required(template: TemplateLike, criterion_id: str, required: bool) -> RubricTemplateSchema:
    tpl = _coerce(template)
    remaining = [cid for cid in tpl.required or [] if cid != criterion_id]
    updated = [*remaining, criterion_id] if required else remaining
    return _replace(tpl, required=updated or None)


def change_criterion_type(
    template: TemplateLike,
    criterion_id: str,
    new_type: CriterionType,
) -> RubricTemplateSchema:
    """Rebuild the fragment for ``new_type``, keeping title and description only."""

    def _apply(schema: dict[str, Any]) -> dict[str, Any]:
        title = schema.get("title")
        description = schema.get("description")
        rebuilt = create_criterion_schema(
            CriterionType(new_type),
            title=title if isinstance(title, str) else None,
            description=description if isinstance(description, str) and description else None,
        )
        return encode_criterion_schema(rebuilt)

    return _update_fragment(template, criterion_id, _apply)


def update_scored_max_points(
    template: TemplateLike,
    criterion_id: str,
    new_max: int,
    *,
    settings: EngineSettings | None = None,
) -> RubricTemplateSchema:
    """
    Resize the score ladder of a scored criterion. ``new_max`` is clamped;
    existing labels are reused by position and new levels get default labels.
    """
    cfg = settings or get_settings()

    def _apply(schema: dict[str, Any]) -> dict[str, Any] | None:
        if schema.get("type") != "integer":
            return None
        clamped = max(cfg.min_score_points, min(int(new_max), cfg.max_score_points))
        existing = _score_labels(schema)
        one_of = [
            {"const": score, "title": existing[score - 1] if score - 1 < len(existing) else default_score_label(score)}
            for score in range(1, clamped + 1)
        ]
        return {**schema, "maximum": clamped, "oneOf": one_of}

    return _update_fragment(template, criterion_id, _apply)


def update_score_label(
    template: TemplateLike,
    criterion_id: str,
    score_index: int,
    label: str,
) -> RubricTemplateSchema:
    def _apply(schema: dict[str, Any]) -> dict[str, Any] | None:
        one_of = schema.get("oneOf")
        if schema.get("type") != "integer" or not isinstance(one_of, list):
            return None
        entries = [
            {**entry, "title": label} if index == score_index and isinstance(entry, Mapping) else entry
            for index, entry in enumerate(one_of)
        ]
        return {**schema, "oneOf": entries}

    return _update_fragment(template, criterion_id, _apply)


def update_criterion_options(
    template: TemplateLike,
    criterion_id: str,
    values: Sequence[str],
) -> RubricTemplateSchema:
    """Replace the option list of a dropdown criterion (``const`` mirrors the label)."""

    def _apply(schema: dict[str, Any]) -> dict[str, Any] | None:
        if infer_criterion_type(schema) != CriterionType.DROPDOWN:
            return None
        return {**schema, "oneOf": [{"const": value, "title": value} for value in values]}

    return _update_fragment(template, criterion_id, _apply)
