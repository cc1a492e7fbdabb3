# process_engine/documents.py
"""
Parsing boundary for the JSON documents the engine consumes.

Raw mappings become contract models here; pydantic failures become
``SchemaValidationError`` and structural problems become the matching
configuration or invariant error. Everything past this module works on models.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from process_engine.contracts import (
    BLOCK_TYPES,
    DecisionSchemaDefinition,
    ProcessInstance,
    SelectionPipeline,
)
from process_engine.errors import ConfigurationError, SchemaValidationError, UnknownBlockTypeError
from process_engine.invariants import (
    SCHEMA_INVARIANTS,
    InvariantOutcome,
    default_check_context,
    first_stop,
    run_checkers,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def _validate(model: type[ModelT], raw: Any, what: str) -> ModelT:
    if isinstance(raw, model):
        return raw
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        errors = [dict(err) for err in exc.errors(include_url=False)]
        raise SchemaValidationError(f"Invalid {what}: {exc.error_count()} validation error(s)", errors) from exc


def _reject_unknown_blocks(blocks: Any) -> None:
    if not isinstance(blocks, list):
        return
    for block in blocks:
        if isinstance(block, Mapping):
            block_type = block.get("type")
            if block_type not in BLOCK_TYPES:
                raise UnknownBlockTypeError(str(block_type))


def parse_pipeline(raw: SelectionPipeline | Mapping[str, Any]) -> SelectionPipeline:
    if isinstance(raw, Mapping):
        _reject_unknown_blocks(raw.get("blocks"))
    return _validate(SelectionPipeline, raw, "selection pipeline")


def parse_schema(raw: DecisionSchemaDefinition | Mapping[str, Any]) -> DecisionSchemaDefinition:
    """Parse and validate a decision schema document."""
    if isinstance(raw, Mapping):
        for phase in raw.get("phases") or []:
            if isinstance(phase, Mapping) and isinstance(phase.get("selectionPipeline"), Mapping):
                _reject_unknown_blocks(phase["selectionPipeline"].get("blocks"))
    schema = _validate(DecisionSchemaDefinition, raw, "decision schema")
    validate_schema(schema)
    return schema


def parse_instance(raw: ProcessInstance | Mapping[str, Any]) -> ProcessInstance:
    return _validate(ProcessInstance, raw, "process instance")


def validate_schema(schema: DecisionSchemaDefinition) -> list[InvariantOutcome]:
    """Run every schema invariant; raise ``ConfigurationError`` on the first stop."""
    outcomes = run_checkers(ctx=default_check_context(schema=schema), invariant_ids=SCHEMA_INVARIANTS)
    stop = first_stop(outcomes)
    if stop is not None:
        logger.debug("schema %s failed %s (%s)", schema.id, stop.invariant_id.value, stop.code)
        raise ConfigurationError(f"Invalid decision schema '{schema.id}': {stop.reason}")
    return outcomes
