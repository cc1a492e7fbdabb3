# process_engine/adapters/legacy_schema.py
"""
Boundary adapter for the state-based process schema dialect.

Older processes store ``{states, transitions, initialState}`` and instance data
keyed by ``currentPhaseId`` / ``phases[].stateId``. This module is the only
place that knows both spellings; it produces canonical models and nothing
downstream ever sees the legacy shape.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any, Optional

from pydantic import ValidationError

from process_engine.contracts import DecisionSchemaDefinition, InstanceData
from process_engine.documents import parse_schema
from process_engine.errors import ConfigurationError, SchemaValidationError

_SLUG = re.compile(r"[^a-z0-9]+")


def _slug(text: str) -> str:
    return _SLUG.sub("-", text.lower()).strip("-") or "process"


def _state_to_phase(state: Mapping[str, Any]) -> dict[str, Any]:
    config = state.get("config") or {}
    timing = state.get("phase") or {}
    end_date = timing.get("endDate")

    rules: dict[str, Any] = {
        "proposals": {"submit": bool(config.get("allowProposals", False))},
        "voting": {"submit": bool(config.get("allowDecisions", False))},
    }
    if end_date:
        rules["advancement"] = {"method": "date", "endDate": end_date}
    else:
        rules["advancement"] = {"method": "manual"}

    phase: dict[str, Any] = {"id": state.get("id"), "name": state.get("name") or state.get("id"), "rules": rules}
    if state.get("description"):
        phase["description"] = state["description"]
    if isinstance(state.get("fields"), Mapping):
        phase["settings"] = dict(state["fields"])
    return phase


def _ordered_states(raw: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    states = [s for s in raw.get("states") or [] if isinstance(s, Mapping)]
    if not states:
        raise ConfigurationError("Legacy process schema declares no states")

    initial = raw.get("initialState")
    if initial is None:
        flagged = [s for s in states if s.get("type") == "initial"]
        initial = flagged[0].get("id") if flagged else states[0].get("id")

    first = [s for s in states if s.get("id") == initial]
    if not first:
        raise ConfigurationError(f"Legacy initialState {initial!r} is not one of the declared states")

    rest = [s for s in states if s.get("id") != initial]
    # final states last, then sortOrder; ties keep array order.
    rest.sort(key=lambda s: (s.get("type") == "final", (s.get("phase") or {}).get("sortOrder", 0)))
    return first + rest


def from_process_schema(
    raw: Mapping[str, Any],
    *,
    schema_id: Optional[str] = None,
    version: str = "1.0.0",
) -> DecisionSchemaDefinition:
    """Convert a legacy ``processSchema`` document into a validated decision schema."""
    if not isinstance(raw, Mapping):
        raise SchemaValidationError("Legacy process schema must be a JSON object")
    name = str(raw.get("name") or "Untitled process")

    doc: dict[str, Any] = {
        "id": schema_id or str(raw.get("id") or _slug(name)),
        "version": str(raw.get("version") or version),
        "name": name,
        "phases": [_state_to_phase(state) for state in _ordered_states(raw)],
    }
    if raw.get("description"):
        doc["description"] = raw["description"]
    if raw.get("transitions"):
        doc["transitions"] = list(raw["transitions"])
    for key in ("decisionDefinition", "proposalTemplate"):
        if key in raw:
            doc[key] = raw[key]
    if "budget" in raw:
        doc["config"] = {"budget": raw["budget"]}

    return parse_schema(doc)


def normalize_instance_data(raw: Mapping[str, Any]) -> InstanceData:
    """Map ``currentPhaseId`` and ``phases[].stateId`` spellings onto canonical instance data."""
    if not isinstance(raw, Mapping):
        raise SchemaValidationError("Instance data must be a JSON object")
    data = dict(raw)

    current = data.pop("currentPhaseId", None)
    data["currentStateId"] = data.get("currentStateId") or current
    if not data["currentStateId"]:
        raise SchemaValidationError("Instance data has neither currentStateId nor currentPhaseId")

    phases = []
    for entry in data.get("phases") or []:
        if not isinstance(entry, Mapping):
            continue
        item = dict(entry)
        state_id = item.pop("stateId", None)
        item["phaseId"] = item.get("phaseId") or state_id
        planned_end = item.pop("plannedEndDate", None)
        item["endDate"] = item.get("endDate") or planned_end
        phases.append({k: v for k, v in item.items() if v is not None})
    data["phases"] = phases

    state_data = {}
    for phase_id, entry in (data.get("stateData") or {}).items():
        if isinstance(entry, Mapping) and entry.get("enteredAt"):
            state_data[phase_id] = dict(entry)
    data["stateData"] = state_data

    try:
        return InstanceData.model_validate(data)
    except ValidationError as exc:
        errors = [dict(err) for err in exc.errors(include_url=False)]
        raise SchemaValidationError("Invalid legacy instance data", errors) from exc
