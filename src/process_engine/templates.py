# process_engine/templates.py
"""Built-in decision schema templates, keyed by template id."""

from __future__ import annotations

import copy
from typing import Any

from process_engine.contracts import DecisionSchemaDefinition
from process_engine.documents import parse_schema

_BUDGET_SETTING: dict[str, Any] = {
    "type": "number",
    "title": "Budget",
    "description": "Total budget available for this decision process",
    "minimum": 0,
}


def _settings(extra: dict[str, Any] | None = None, *, required: list[str] | None = None) -> dict[str, Any]:
    properties = {"budget": dict(_BUDGET_SETTING), **(extra or {})}
    doc: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        doc["required"] = required
    return doc


# Simple voting with linear phases: submission -> review -> voting -> results
SIMPLE_VOTING_DOCUMENT: dict[str, Any] = {
    "id": "simple",
    "version": "1.0.0",
    "name": "Simple Voting",
    "description": "Basic approval voting where members vote for multiple proposals.",
    "phases": [
        {
            "id": "submission",
            "name": "Proposal Submission",
            "description": "Members submit proposals for consideration.",
            "rules": {
                "proposals": {"submit": True},
                "voting": {"submit": False},
                "advancement": {"method": "date", "endDate": "2026-01-01"},
            },
            "settings": _settings(
                {
                    "maxProposalsPerMember": {
                        "type": "number",
                        "title": "Maximum Proposals Per Member",
                        "description": "How many proposals can each member submit?",
                        "minimum": 1,
                        "default": 3,
                    }
                }
            ),
        },
        {
            "id": "review",
            "name": "Review & Shortlist",
            "description": "Reviewers evaluate and shortlist proposals.",
            "rules": {
                "proposals": {"submit": False, "review": True},
                "voting": {"submit": False},
                "advancement": {"method": "date", "endDate": "2026-01-02"},
            },
            "settings": _settings(),
        },
        {
            "id": "voting",
            "name": "Voting",
            "description": "Members vote on shortlisted proposals.",
            "rules": {
                "proposals": {"submit": False},
                "voting": {"submit": True},
                "advancement": {"method": "date", "endDate": "2026-01-03"},
            },
            "settings": _settings(
                {
                    "maxVotesPerMember": {
                        "type": "number",
                        "title": "Maximum Votes Per Member",
                        "description": "How many proposals can each member vote for?",
                        "minimum": 1,
                        "default": 3,
                    }
                },
                required=["maxVotesPerMember"],
            ),
            "selectionPipeline": {
                "version": "1.0.0",
                "blocks": [
                    {
                        "id": "sort-by-likes",
                        "type": "sort",
                        "name": "Sort by likes count",
                        "sortBy": [{"field": "voteData.likesCount", "order": "desc"}],
                    },
                    {
                        "id": "limit-by-votes",
                        "type": "limit",
                        "name": "Take top N (based on maxVotesPerMember config)",
                        "count": {"variable": "maxVotesPerMember"},
                    },
                ],
            },
        },
        {
            "id": "results",
            "name": "Results",
            "description": "View final results and winning proposals.",
            "rules": {
                "proposals": {"submit": False},
                "voting": {"submit": False},
                "advancement": {"method": "date", "endDate": "2026-01-04"},
            },
            "settings": _settings(),
        },
    ],
    "proposalTemplate": {
        "type": "object",
        "properties": {
            "title": {"type": "string", "title": "Proposal title", "x-format": "short-text"},
            "summary": {"type": "string", "title": "Proposal summary", "x-format": "long-text"},
        },
        "x-field-order": ["title", "summary"],
        "required": ["summary", "title"],
    },
}

SIMPLE_VOTING: DecisionSchemaDefinition = parse_schema(SIMPLE_VOTING_DOCUMENT)

TEMPLATES: dict[str, DecisionSchemaDefinition] = {
    SIMPLE_VOTING.id: SIMPLE_VOTING,
}


def get_template(template_id: str) -> DecisionSchemaDefinition:
    try:
        return TEMPLATES[template_id]
    except KeyError:
        known = ", ".join(sorted(TEMPLATES))
        raise KeyError(f"Unknown decision template {template_id!r} (known: {known})") from None


def template_document(template_id: str) -> dict[str, Any]:
    """Deep copy of the raw JSON document behind a template."""
    return copy.deepcopy(get_template(template_id).to_wire())
