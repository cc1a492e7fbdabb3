from __future__ import annotations

from typing import Any

import pytest

from process_engine.contracts import ProcessStatus, SortBlock
from process_engine.documents import parse_instance, parse_pipeline, parse_schema
from process_engine.errors import ConfigurationError, SchemaValidationError, UnknownBlockTypeError
from process_engine.templates import SIMPLE_VOTING, get_template, template_document


def _doc(**overrides: Any) -> dict[str, Any]:
    doc: dict[str, Any] = {
        "id": "doc",
        "version": "1.0.0",
        "name": "Doc",
        "phases": [{"id": "one", "name": "One"}, {"id": "two", "name": "Two"}],
    }
    doc.update(overrides)
    return doc


def test_unknown_keys_survive_a_round_trip() -> None:
    doc = _doc(proposalTemplate={"type": "object"}, phases=[{"id": "one", "name": "One", "uiHint": "wide"}])

    wire = parse_schema(doc).to_wire()

    assert wire["proposalTemplate"] == {"type": "object"}
    assert wire["phases"][0]["uiHint"] == "wide"


def test_structurally_invalid_documents_raise_schema_validation_error() -> None:
    with pytest.raises(SchemaValidationError) as excinfo:
        parse_schema({"id": "doc", "phases": []})

    assert excinfo.value.errors
    assert isinstance(excinfo.value, ConfigurationError)


def test_duplicate_phase_ids_are_rejected() -> None:
    with pytest.raises(ConfigurationError, match="unique"):
        parse_schema(_doc(phases=[{"id": "one", "name": "One"}, {"id": "one", "name": "Again"}]))


def test_unknown_pipeline_block_in_phase_is_rejected() -> None:
    doc = _doc(phases=[{"id": "one", "name": "One", "selectionPipeline": {"blocks": [{"type": "rank"}]}}])

    with pytest.raises(UnknownBlockTypeError) as excinfo:
        parse_schema(doc)

    assert excinfo.value.block_type == "rank"


def test_parse_pipeline_builds_typed_blocks() -> None:
    pipeline = parse_pipeline({"blocks": [{"type": "sort", "sortBy": [{"field": "title"}]}]})

    (block,) = pipeline.blocks
    assert isinstance(block, SortBlock)
    assert block.sort_by[0].field == "title"
    assert pipeline.version == "1.0.0"


def test_parse_instance_accepts_camel_case_wire_documents() -> None:
    instance = parse_instance(
        {
            "id": "inst:1",
            "processId": "simple",
            "status": "active",
            "version": 2,
            "instanceData": {
                "currentStateId": "voting",
                "fieldValues": {"maxVotesPerMember": 2},
                "stateData": {"voting": {"enteredAt": "2026-01-02T00:00:00Z"}},
            },
        }
    )

    assert instance.status is ProcessStatus.ACTIVE
    assert instance.current_state_id == "voting"
    assert instance.to_wire()["instanceData"]["stateData"]["voting"]["enteredAt"] == "2026-01-02T00:00:00Z"


def test_parse_instance_rejects_negative_versions() -> None:
    with pytest.raises(SchemaValidationError):
        parse_instance({"id": "i", "processId": "p", "version": -1, "instanceData": {"currentStateId": "a"}})


def test_builtin_template_lookup() -> None:
    assert get_template("simple") is SIMPLE_VOTING
    assert [p.id for p in SIMPLE_VOTING.phases] == ["submission", "review", "voting", "results"]
    voting = SIMPLE_VOTING.phase("voting")
    assert voting is not None and voting.setting_defaults() == {"maxVotesPerMember": 3}
    with pytest.raises(KeyError):
        get_template("ranked")


def test_template_document_is_an_independent_copy() -> None:
    doc = template_document("simple")
    doc["phases"].clear()

    assert len(template_document("simple")["phases"]) == 4
    assert template_document("simple")["proposalTemplate"]["x-field-order"] == ["title", "summary"]
