from __future__ import annotations

import logging

import pytest

from process_engine.config import EngineSettings
from process_engine.contracts import CriterionOption, CriterionType, CriterionView, RubricTemplateSchema
from process_engine.errors import ConfigurationError, DuplicateCriterionError, InvariantViolationError
from process_engine.rubric import (
    ERROR_EMPTY_OPTION,
    ERROR_EMPTY_SCORE_LABEL,
    ERROR_LABEL_REQUIRED,
    ERROR_TWO_OPTIONS_REQUIRED,
    add_criterion,
    build_rubric_template,
    change_criterion_type,
    create_empty_rubric_template,
    get_criteria,
    get_criterion,
    get_criterion_errors,
    infer_criterion_type,
    remove_criterion,
    reorder_criteria,
    set_criterion_required,
    update_criterion_description,
    update_criterion_label,
    update_criterion_options,
    update_score_label,
    update_scored_max_points,
    validate_rubric_template,
)


def _three_criteria() -> RubricTemplateSchema:
    tpl = create_empty_rubric_template()
    tpl = add_criterion(tpl, "impact", CriterionType.SCORED, "Impact")
    tpl = add_criterion(tpl, "eligible", CriterionType.YES_NO, "Eligible?")
    tpl = add_criterion(tpl, "notes", CriterionType.LONG_TEXT, "Notes")
    return tpl


@pytest.mark.parametrize(
    "view",
    [
        CriterionView(
            id="impact",
            criterion_type=CriterionType.SCORED,
            label="Impact",
            description="How much difference it makes",
            required=True,
            max_points=3,
            score_labels=["Low", "Mid", "High"],
        ),
        CriterionView(
            id="eligible",
            criterion_type=CriterionType.YES_NO,
            label="Eligible?",
            options=[CriterionOption(id="eligible-opt-0", value="Yes"), CriterionOption(id="eligible-opt-1", value="No")],
        ),
        CriterionView(
            id="size",
            criterion_type=CriterionType.DROPDOWN,
            label="Budget size",
            required=True,
            options=[
                CriterionOption(id="size-opt-0", value="Small"),
                CriterionOption(id="size-opt-1", value="Medium"),
                CriterionOption(id="size-opt-2", value="Large"),
            ],
        ),
        CriterionView(id="notes", criterion_type=CriterionType.LONG_TEXT, label="Notes", description="Free text"),
    ],
    ids=["scored", "yes_no", "dropdown", "long_text"],
)
def test_decode_of_encoded_criterion_matches_view(view: CriterionView) -> None:
    template = build_rubric_template([view])

    assert get_criteria(template) == [view]


def test_encoded_scored_criterion_has_documented_wire_shape() -> None:
    tpl = add_criterion(create_empty_rubric_template(), "impact", CriterionType.SCORED, "Impact")
    wire = tpl.to_wire()

    assert wire["x-field-order"] == ["impact"]
    fragment = wire["properties"]["impact"]
    assert fragment["type"] == "integer"
    assert fragment["x-format"] == "dropdown"
    assert fragment["minimum"] == 1
    assert fragment["maximum"] == 5
    assert [entry["title"] for entry in fragment["oneOf"]] == ["Poor", "Below Average", "Average", "Good", "Excellent"]


def test_infer_criterion_type_returns_none_for_unrecognised_shapes() -> None:
    assert infer_criterion_type({"type": "number"}) is None
    assert infer_criterion_type({"type": "string"}) is None
    assert infer_criterion_type({"type": "integer", "x-format": "dropdown"}) is None
    assert infer_criterion_type("not a schema") is None  # type: ignore[arg-type]
    assert infer_criterion_type({"type": "string", "x-format": "long-text"}) == CriterionType.LONG_TEXT


def test_yes_no_requires_exactly_yes_and_no_options() -> None:
    yes_no = {"type": "string", "x-format": "dropdown", "oneOf": [{"const": "yes"}, {"const": "no"}]}
    three = {"type": "string", "x-format": "dropdown", "oneOf": [{"const": "yes"}, {"const": "no"}, {"const": "maybe"}]}

    assert infer_criterion_type(yes_no) == CriterionType.YES_NO
    assert infer_criterion_type(three) == CriterionType.DROPDOWN


def test_get_criteria_skips_missing_and_unclassifiable_entries() -> None:
    template = {
        "type": "object",
        "properties": {
            "notes": {"type": "string", "x-format": "long-text", "title": "Notes"},
            "weird": {"type": "string"},
        },
        "x-field-order": ["notes", "ghost", "weird"],
    }

    criteria = get_criteria(template)

    assert [c.id for c in criteria] == ["notes"]


def test_get_criteria_reads_repeated_ids_once(caplog: pytest.LogCaptureFixture) -> None:
    template = {
        "type": "object",
        "properties": {"a": {"type": "string", "x-format": "long-text", "title": "A"}},
        "x-field-order": ["a", "a"],
    }

    with caplog.at_level(logging.WARNING, logger="process_engine.rubric"):
        criteria = get_criteria(template)

    assert [c.id for c in criteria] == ["a"]
    assert "repeated in x-field-order" in caplog.text


def test_property_key_order_is_not_trusted() -> None:
    template = {
        "type": "object",
        "properties": {
            "b": {"type": "string", "x-format": "long-text", "title": "B"},
            "a": {"type": "string", "x-format": "long-text", "title": "A"},
        },
        "x-field-order": ["a", "b"],
    }

    assert [c.id for c in get_criteria(template)] == ["a", "b"]


def test_reorder_then_read_yields_new_order_without_drops() -> None:
    tpl = _three_criteria()

    reordered = reorder_criteria(tpl, ["notes", "impact", "eligible"])

    assert [c.id for c in get_criteria(reordered)] == ["notes", "impact", "eligible"]
    assert [c.id for c in get_criteria(tpl)] == ["impact", "eligible", "notes"]


def test_reorder_rejects_duplicates_and_changed_id_sets() -> None:
    tpl = _three_criteria()

    with pytest.raises(DuplicateCriterionError):
        reorder_criteria(tpl, ["notes", "notes", "impact"])
    with pytest.raises(InvariantViolationError):
        reorder_criteria(tpl, ["notes", "impact"])
    with pytest.raises(InvariantViolationError):
        reorder_criteria(tpl, ["notes", "impact", "eligible", "extra"])


def test_max_points_resize_down_then_up_preserves_existing_labels() -> None:
    tpl = add_criterion(create_empty_rubric_template(), "impact", CriterionType.SCORED, "Impact")
    for index, label in enumerate(["A", "B", "C", "D", "E"]):
        tpl = update_score_label(tpl, "impact", index, label)

    shrunk = update_scored_max_points(tpl, "impact", 3)
    regrown = update_scored_max_points(shrunk, "impact", 5)

    shrunk_view = get_criterion(shrunk, "impact")
    regrown_view = get_criterion(regrown, "impact")
    assert shrunk_view is not None and regrown_view is not None
    assert shrunk_view.score_labels == ["A", "B", "C"]
    assert regrown_view.score_labels[:3] == ["A", "B", "C"]
    assert regrown_view.score_labels[3:] == ["Good", "Excellent"]
    assert regrown_view.max_points == 5


def test_max_points_is_clamped_and_numeric_labels_fill_beyond_five(settings: EngineSettings) -> None:
    tpl = add_criterion(create_empty_rubric_template(), "impact", CriterionType.SCORED, "Impact")

    high = get_criterion(update_scored_max_points(tpl, "impact", 50, settings=settings), "impact")
    low = get_criterion(update_scored_max_points(tpl, "impact", 0, settings=settings), "impact")

    assert high is not None and low is not None
    assert high.max_points == 10
    assert high.score_labels[5:] == ["6", "7", "8", "9", "10"]
    assert low.max_points == 2
    assert low.score_labels == ["Poor", "Below Average"]


def test_max_points_ignores_non_scored_criteria() -> None:
    tpl = _three_criteria()

    assert update_scored_max_points(tpl, "notes", 3) == tpl


def test_change_type_keeps_title_and_description_and_resets_specifics() -> None:
    tpl = add_criterion(create_empty_rubric_template(), "impact", CriterionType.SCORED, "Impact")
    tpl = update_criterion_description(tpl, "impact", "Why it matters")
    tpl = update_score_label(tpl, "impact", 0, "Terrible")

    as_dropdown = change_criterion_type(tpl, "impact", CriterionType.DROPDOWN)
    back = change_criterion_type(as_dropdown, "impact", CriterionType.SCORED)

    dropdown_view = get_criterion(as_dropdown, "impact")
    scored_view = get_criterion(back, "impact")
    assert dropdown_view is not None and scored_view is not None
    assert dropdown_view.criterion_type == CriterionType.DROPDOWN
    assert dropdown_view.label == "Impact"
    assert dropdown_view.description == "Why it matters"
    assert [o.value for o in dropdown_view.options] == ["Option 1", "Option 2"]
    assert dropdown_view.score_labels == []
    assert scored_view.score_labels[0] == "Poor"


def test_mutators_do_not_touch_their_input() -> None:
    tpl = _three_criteria()
    before = tpl.to_wire()

    update_criterion_label(tpl, "impact", "Reach")
    set_criterion_required(tpl, "impact", True)
    remove_criterion(tpl, "notes")
    change_criterion_type(tpl, "eligible", CriterionType.LONG_TEXT)
    update_scored_max_points(tpl, "impact", 7)

    assert tpl.to_wire() == before


def test_required_flag_and_removal_stay_consistent() -> None:
    tpl = set_criterion_required(_three_criteria(), "impact", True)
    view = get_criterion(tpl, "impact")
    assert view is not None and view.required is True

    removed = remove_criterion(tpl, "impact")

    assert "impact" not in removed.properties
    assert removed.x_field_order == ["eligible", "notes"]
    assert not removed.required


def test_add_criterion_rejects_existing_id() -> None:
    with pytest.raises(DuplicateCriterionError):
        add_criterion(_three_criteria(), "notes", CriterionType.LONG_TEXT, "Again")


def test_unknown_criterion_id_leaves_template_unchanged() -> None:
    tpl = _three_criteria()

    assert update_criterion_label(tpl, "missing", "X") == tpl


def test_dropdown_options_can_be_replaced() -> None:
    tpl = add_criterion(create_empty_rubric_template(), "size", CriterionType.DROPDOWN, "Size")

    updated = update_criterion_options(tpl, "size", ["S", "M", "L"])

    view = get_criterion(updated, "size")
    assert view is not None
    assert [(o.id, o.value) for o in view.options] == [("size-opt-0", "S"), ("size-opt-1", "M"), ("size-opt-2", "L")]


def test_criterion_errors_are_advisory_keys() -> None:
    blank = CriterionView(id="x", criterion_type=CriterionType.LONG_TEXT, label="  ")
    one_option = CriterionView(
        id="d",
        criterion_type=CriterionType.DROPDOWN,
        label="Pick",
        options=[CriterionOption(id="d-opt-0", value="")],
    )
    scored = CriterionView(
        id="s", criterion_type=CriterionType.SCORED, label="Score", max_points=2, score_labels=["Low", ""]
    )

    assert get_criterion_errors(blank) == [ERROR_LABEL_REQUIRED]
    assert get_criterion_errors(one_option) == [ERROR_TWO_OPTIONS_REQUIRED, ERROR_EMPTY_OPTION]
    assert get_criterion_errors(scored) == [ERROR_EMPTY_SCORE_LABEL]


def test_validate_rubric_template_rejects_broken_field_order() -> None:
    duplicated = {
        "properties": {"a": {"type": "string", "x-format": "long-text"}},
        "x-field-order": ["a", "a"],
    }
    missing = {
        "properties": {"a": {"type": "string", "x-format": "long-text"}},
        "x-field-order": ["a", "b"],
    }

    with pytest.raises(DuplicateCriterionError):
        validate_rubric_template(duplicated)
    with pytest.raises(ConfigurationError):
        validate_rubric_template(missing)
    assert all(outcome.passed for outcome in validate_rubric_template(_three_criteria()))
