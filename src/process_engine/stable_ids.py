# process_engine/stable_ids.py
from __future__ import annotations

import hashlib
import json
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def _canon(obj: Any) -> str:
    """
    Canonical JSON string (stable across runs) for hashing.
    """
    return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str)


def _jsonable(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", by_alias=True, exclude_none=True)
    return obj


def transition_record_id(
    *,
    instance_id: str,
    instance_version: int,
    from_state_id: str,
    to_state_id: str,
) -> str:
    """
    Deterministic id for a transition-history record.

    Keyed on the pre-transition version so that re-running the same advance
    against the same snapshot (e.g. after a crash) yields the same record id and
    the persistence layer can treat the write as idempotent.
    """
    key_obj = {
        "instance_id": instance_id,
        "version": instance_version,
        "from": from_state_id,
        "to": to_state_id,
    }
    return "th_" + _sha256_hex(_canon(key_obj))


def proposal_key(proposal: Mapping[str, Any]) -> str:
    pid = proposal.get("id")
    if isinstance(pid, str) and pid:
        return pid
    return "anon_" + _sha256_hex(_canon(dict(proposal)))[:16]


def pipeline_fingerprint(
    pipeline: Any,
    proposals: Sequence[Mapping[str, Any]],
    variables: Mapping[str, Any],
) -> str:
    """Fingerprint of one pipeline run's inputs, stored next to selection results."""
    key_obj = {
        "pipeline": _jsonable(pipeline),
        "proposals": [proposal_key(p) for p in proposals],
        "variables": dict(variables),
    }
    return "sp_" + _sha256_hex(_canon(key_obj))
