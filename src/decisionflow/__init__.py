"""
decisionflow distribution import namespace.

Re-exports the public operations of the core `process_engine` package so
callers can depend on one stable import path.
"""

from importlib.metadata import PackageNotFoundError, version

# src/decisionflow/__init__.py
from process_engine.documents import parse_instance, parse_schema, validate_schema
from process_engine.lifecycle import advance_phase, cancel, complete, launch, pause, resume
from process_engine.monitor import process_due_transitions
from process_engine.pipeline import resolve_variables, run_pipeline
from process_engine.rubric import (
    add_criterion,
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
    update_score_label,
    update_scored_max_points,
    validate_rubric_template,
)
from process_engine.transitions import check_transitions, execute_transition

try:
    __version__ = version("decisionflow")
except PackageNotFoundError:  # pragma: no cover - fallback for local non-installed environments
    __version__ = "0+unknown"

__all__ = [
    "__version__",
    "add_criterion",
    "advance_phase",
    "cancel",
    "change_criterion_type",
    "check_transitions",
    "complete",
    "create_empty_rubric_template",
    "execute_transition",
    "get_criteria",
    "get_criterion",
    "get_criterion_errors",
    "infer_criterion_type",
    "launch",
    "parse_instance",
    "parse_schema",
    "pause",
    "process_due_transitions",
    "remove_criterion",
    "reorder_criteria",
    "resolve_variables",
    "resume",
    "run_pipeline",
    "set_criterion_required",
    "update_criterion_description",
    "update_criterion_label",
    "update_score_label",
    "update_scored_max_points",
    "validate_rubric_template",
    "validate_schema",
]
