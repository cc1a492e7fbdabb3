from __future__ import annotations

from typing import Any, Callable, TypeVar, cast

from behave import given as _given
from behave import then as _then
from behave import when as _when

StepFunc = TypeVar("StepFunc", bound=Callable[..., Any])
StepDecorator = Callable[[str], Callable[[StepFunc], StepFunc]]

given = cast(StepDecorator, _given)
when = cast(StepDecorator, _when)
then = cast(StepDecorator, _then)


def coerce_cell(text: str) -> Any:
    """Turn a Gherkin table cell into an int, float, bool or None where it reads as one."""
    value = text.strip()
    if value == "":
        return None
    lowered = value.lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        return value


def _assign_path(target: dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    node = target
    for part in parts[:-1]:
        node = node.setdefault(part, {})
    node[parts[-1]] = value


def table_records(context: Any) -> list[dict[str, Any]]:
    """
    Rows of ``context.table`` as dicts. Dotted headings (``voteData.likesCount``)
    become nested objects so rows can be used directly as proposals.
    """
    table = getattr(context, "table", None)
    if table is None:
        return []
    records: list[dict[str, Any]] = []
    for row in table:
        record: dict[str, Any] = {}
        for heading in table.headings:
            _assign_path(record, heading, coerce_cell(row[heading]))
        records.append(record)
    return records
