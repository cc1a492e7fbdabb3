# process_engine/pipeline.py
"""
Selection pipeline executor.

A pipeline is an ordered list of sort / filter / limit blocks applied to a
proposal snapshot when a phase is left. Execution is pure: the same pipeline,
proposals and variables always produce the same ordered output.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence
from functools import cmp_to_key
from typing import Any

from process_engine.config import VariablePrecedence
from process_engine.contracts import (
    Block,
    FilterBlock,
    LimitBlock,
    Phase,
    ProcessInstance,
    Proposal,
    SelectionPipeline,
    SortBlock,
    SortKey,
    SortOrder,
    VariableRef,
)
from process_engine.documents import parse_pipeline
from process_engine.errors import ConfigurationError, UnknownBlockTypeError, UnresolvedVariableError
from process_engine.expressions import get_value_by_path, matches

logger = logging.getLogger(__name__)

BlockExecutor = Callable[[Any, list[Proposal], Mapping[str, Any]], list[Proposal]]


# ------------------------------------------------------------------------------
# Variable resolution
# ------------------------------------------------------------------------------


def resolve_variables(
    *,
    setting_defaults: Mapping[str, Any],
    field_values: Mapping[str, Any],
    precedence: VariablePrecedence,
) -> dict[str, Any]:
    """
    Merge phase setting defaults with instance field values.

    ``precedence`` is required: it names which source wins when both define the
    same variable.
    """
    mode = VariablePrecedence(precedence)
    if mode == VariablePrecedence.INSTANCE_FIRST:
        return {**dict(setting_defaults), **dict(field_values)}
    return {**dict(field_values), **dict(setting_defaults)}


def resolve_phase_variables(
    phase: Phase,
    instance: ProcessInstance,
    *,
    precedence: VariablePrecedence,
) -> dict[str, Any]:
    return resolve_variables(
        setting_defaults=phase.setting_defaults(),
        field_values=instance.instance_data.field_values,
        precedence=precedence,
    )


# ------------------------------------------------------------------------------
# Sort
# ------------------------------------------------------------------------------


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _type_rank(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if _is_number(value):
        return 1
    if isinstance(value, str):
        return 2
    return 3


def _compare_present(a: Any, b: Any) -> int:
    rank_a, rank_b = _type_rank(a), _type_rank(b)
    if rank_a != rank_b:
        return (rank_a > rank_b) - (rank_a < rank_b)
    if rank_a == 3:
        a, b = repr(a), repr(b)
    return (a > b) - (a < b)


def _compare_key(key: SortKey, left: Proposal, right: Proposal) -> int:
    a = get_value_by_path(left, key.field)
    b = get_value_by_path(right, key.field)
    if a is None and b is None:
        return 0
    # Missing values keep their place regardless of direction.
    if a is None:
        return -1 if key.nulls_first else 1
    if b is None:
        return 1 if key.nulls_first else -1
    result = _compare_present(a, b)
    return -result if key.order == SortOrder.DESC else result


def execute_sort(block: SortBlock, proposals: list[Proposal], variables: Mapping[str, Any]) -> list[Proposal]:
    def _compare(left: Proposal, right: Proposal) -> int:
        for key in block.sort_by:
            result = _compare_key(key, left, right)
            if result:
                return result
        return 0

    # sorted() is stable, so proposals equal on every key keep their input order.
    return sorted(proposals, key=cmp_to_key(_compare))


# ------------------------------------------------------------------------------
# Filter
# ------------------------------------------------------------------------------


def execute_filter(block: FilterBlock, proposals: list[Proposal], variables: Mapping[str, Any]) -> list[Proposal]:
    return [proposal for proposal in proposals if matches(block.condition, proposal, variables)]


# ------------------------------------------------------------------------------
# Limit
# ------------------------------------------------------------------------------


def _resolve_count(value: int | VariableRef, variables: Mapping[str, Any], label: str) -> int:
    if isinstance(value, VariableRef):
        if value.name not in variables:
            raise UnresolvedVariableError(value.name, list(variables))
        resolved = variables[value.name]
    else:
        resolved = value

    if isinstance(resolved, bool) or not _is_number(resolved) or resolved != int(resolved) or resolved < 0:
        raise ConfigurationError(f"Limit {label} must resolve to a non-negative integer, got {resolved!r}")
    return int(resolved)


def execute_limit(block: LimitBlock, proposals: list[Proposal], variables: Mapping[str, Any]) -> list[Proposal]:
    count = _resolve_count(block.count, variables, "count")
    offset = _resolve_count(block.offset, variables, "offset") if block.offset is not None else 0
    return proposals[offset : offset + count]


BLOCK_EXECUTORS: dict[str, BlockExecutor] = {
    "sort": execute_sort,
    "filter": execute_filter,
    "limit": execute_limit,
}


# ------------------------------------------------------------------------------
# Pipeline
# ------------------------------------------------------------------------------


def _executor_for(block: Block) -> BlockExecutor:
    block_type = getattr(block, "type", None)
    executor = BLOCK_EXECUTORS.get(str(block_type))
    if executor is None:
        raise UnknownBlockTypeError(str(block_type))
    return executor


def run_pipeline(
    pipeline: SelectionPipeline | Mapping[str, Any],
    proposals: Sequence[Proposal],
    resolved_variables: Mapping[str, Any],
) -> list[Proposal]:
    """
    Run every block left to right, each on the previous block's output.

    Pipeline-level ``variables`` act as the lowest-priority defaults beneath
    ``resolved_variables``.
    """
    parsed = parse_pipeline(pipeline)
    variables = {**parsed.variables, **dict(resolved_variables)}
    current: list[Proposal] = list(proposals)

    for index, block in enumerate(parsed.blocks):
        executor = _executor_for(block)
        before = len(current)
        current = executor(block, current, variables)
        logger.debug(
            "pipeline block %d (%s%s): %d -> %d proposals",
            index,
            block.type,
            f" {block.id}" if block.id else "",
            before,
            len(current),
        )

    return current
