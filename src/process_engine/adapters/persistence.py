# process_engine/adapters/persistence.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple, Union

from pydantic import BaseModel, ValidationError

from process_engine.config import get_settings
from process_engine.contracts import TransitionHistoryRecord

logger = logging.getLogger(__name__)

JsonObj = Dict[str, Any]
PathLike = Union[str, Path]


def _to_jsonable(x: Any) -> Any:
    if isinstance(x, BaseModel):
        return x.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(x, dict):
        return {str(k): _to_jsonable(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [_to_jsonable(v) for v in x]
    return x


def _next_offset(p: Path) -> int:
    if not p.exists():
        return 1
    return len(p.read_text(encoding="utf-8").splitlines()) + 1


def append_jsonl(path: PathLike, record: Any) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    obj = _to_jsonable(record)

    # enforce "one JSON object per line"
    line = json.dumps(obj, ensure_ascii=False)
    with p.open("a", encoding="utf-8") as f:
        f.write(line + "\n")


def read_jsonl(path: PathLike) -> Iterator[Tuple[JsonObj, JsonObj]]:
    """
    Yields (meta, obj) for each JSON object line.
    - meta includes line number and source path.
    - obj is the parsed dict.
    """
    p = Path(path)
    with p.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            s = line.strip()
            if not s:
                continue
            obj = json.loads(s)
            if not isinstance(obj, dict):
                raise ValueError(f"Expected JSON object on line {lineno}, got {type(obj).__name__}")
            meta: JsonObj = {"path": str(p), "lineno": lineno}
            yield meta, obj


def _history_path(path: Optional[PathLike]) -> Path:
    return Path(path) if path is not None else get_settings().history_log_path


def append_transition_history(record: TransitionHistoryRecord, *, path: Optional[PathLike] = None) -> JsonObj:
    """
    Append one history record and return its ``{"kind": "jsonl", "ref": "name@line"}``.

    Records are keyed by their deterministic id: appending a record whose id is
    already present returns the existing ref instead of writing a duplicate.
    """
    p = _history_path(path)
    if p.exists():
        for meta, raw in read_jsonl(p):
            if raw.get("id") == record.id:
                return {"kind": "jsonl", "ref": f"{p.name}@{meta['lineno']}"}

    payload = record.to_wire()
    missing = [key for key in TransitionHistoryRecord.required_payload_fields() if key not in payload]
    if missing:
        raise ValueError(f"history record missing fields: {', '.join(missing)}")

    offset = _next_offset(p)
    append_jsonl(p, payload)
    return {"kind": "jsonl", "ref": f"{p.name}@{offset}"}


def iter_transition_history(
    path: Optional[PathLike] = None,
    *,
    instance_id: Optional[str] = None,
) -> Iterator[TransitionHistoryRecord]:
    """Rehydrate history rows in file order; rows that fail validation are skipped."""
    p = _history_path(path)
    if not p.exists():
        return
    for meta, raw in read_jsonl(p):
        try:
            record = TransitionHistoryRecord.model_validate(raw)
        except ValidationError as exc:
            logger.warning("skipping invalid history row %s@%d: %d error(s)", p.name, meta["lineno"], exc.error_count())
            continue
        if instance_id is None or record.process_instance_id == instance_id:
            yield record
