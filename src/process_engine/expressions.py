# process_engine/expressions.py
"""
Predicate/expression documents used by selection pipeline filter blocks.

An expression is a JSON object whose shape selects its kind:

- ``{"field": "voteData.likesCount"}``            dot-path lookup on the proposal
- ``{"value": 3}``                                 literal
- ``{"variable": "maxVotesPerMember"}``            pipeline variable (``$`` prefix optional)
- ``{"operator": "greaterThan", "left": ..., "right": ...}``   comparison
- ``{"and": [...]}`` / ``{"or": [...]}`` / ``{"not": ...}``     logic
- ``{"operator": "add", "operands": [...]}``       arithmetic
- ``{"function": "coalesce", "arguments": [...]}`` function call

Missing fields resolve to ``None`` and make comparisons false; unknown
operators, functions and shapes are configuration errors.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Callable

import regex

from process_engine.errors import ConfigurationError

# Wall-clock bound for one ``matches`` evaluation; patterns are author-supplied.
MATCH_TIMEOUT_SECONDS = 0.25


@dataclass(frozen=True)
class EvaluationScope:
    proposal: Mapping[str, Any] | None = None
    variables: Mapping[str, Any] = field(default_factory=dict)


def get_value_by_path(obj: Any, path: str) -> Any:
    """Dot-path lookup; any missing hop yields ``None``."""
    current = obj
    for part in path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _ordered(left: Any, right: Any, op: Callable[[Any, Any], bool]) -> bool:
    if left is None or right is None:
        return False
    if _is_number(left) and _is_number(right):
        return op(left, right)
    if isinstance(left, str) and isinstance(right, str):
        return op(left, right)
    return False


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, str):
        return str(right) in left
    if isinstance(left, (list, tuple)):
        return right in left
    return False


def _matches(left: Any, right: Any) -> bool:
    if not isinstance(left, str) or not isinstance(right, str):
        return False
    try:
        return regex.search(right, left, timeout=MATCH_TIMEOUT_SECONDS) is not None
    except regex.error as exc:
        raise ConfigurationError(f"Invalid regular expression in filter: {right!r} ({exc})") from exc
    except TimeoutError as exc:
        raise ConfigurationError(
            f"Regular expression in filter timed out after {MATCH_TIMEOUT_SECONDS}s: {right!r}"
        ) from exc


COMPARISONS: dict[str, Callable[[Any, Any], bool]] = {
    "equals": lambda l, r: l == r,
    "notEquals": lambda l, r: l != r,
    "greaterThan": lambda l, r: _ordered(l, r, lambda a, b: a > b),
    "lessThan": lambda l, r: _ordered(l, r, lambda a, b: a < b),
    "greaterThanOrEquals": lambda l, r: _ordered(l, r, lambda a, b: a >= b),
    "lessThanOrEquals": lambda l, r: _ordered(l, r, lambda a, b: a <= b),
    "in": lambda l, r: isinstance(r, (list, tuple)) and l in r,
    "notIn": lambda l, r: isinstance(r, (list, tuple)) and l not in r,
    "contains": _contains,
    "startsWith": lambda l, r: isinstance(l, str) and l.startswith(str(r)),
    "endsWith": lambda l, r: isinstance(l, str) and l.endswith(str(r)),
    "matches": _matches,
}


def _numbers(values: Sequence[Any]) -> list[float]:
    return [v if _is_number(v) else 0 for v in values]


def _fold(values: Sequence[Any], step: Callable[[float, float], float]) -> float:
    nums = _numbers(values)
    if not nums:
        return 0
    acc = nums[0]
    for value in nums[1:]:
        acc = step(acc, value)
    return acc


ARITHMETIC: dict[str, Callable[[Sequence[Any]], float]] = {
    "add": lambda vs: sum(_numbers(vs)),
    "subtract": lambda vs: _fold(vs, lambda a, b: a - b),
    "multiply": lambda vs: math.prod(_numbers(vs)),
    "divide": lambda vs: _fold(vs, lambda a, b: a / b if b != 0 else 0),
    "modulo": lambda vs: _fold(vs, lambda a, b: a % b if b != 0 else 0),
    "power": lambda vs: _fold(vs, lambda a, b: a**b),
}


def _first_number(args: Sequence[Any]) -> float | None:
    return args[0] if args and _is_number(args[0]) else None


def _first_string(args: Sequence[Any]) -> str | None:
    return args[0] if args and isinstance(args[0], str) else None


def _if(args: Sequence[Any]) -> Any:
    if len(args) != 3:
        raise ConfigurationError("if() requires exactly 3 arguments")
    return args[1] if args[0] else args[2]


def _length(args: Sequence[Any]) -> int:
    if args and isinstance(args[0], (str, list, tuple)):
        return len(args[0])
    return 0


FUNCTIONS: dict[str, Callable[[Sequence[Any]], Any]] = {
    "sum": lambda args: sum(_numbers(args)),
    "avg": lambda args: (sum(_numbers(args)) / len(args)) if args else 0,
    "count": lambda args: len(args),
    "min": lambda args: min((a for a in args if _is_number(a)), default=None),
    "max": lambda args: max((a for a in args if _is_number(a)), default=None),
    "if": _if,
    "coalesce": lambda args: next((a for a in args if a is not None), None),
    "concat": lambda args: "".join("" if a is None else str(a) for a in args),
    "length": _length,
    "abs": lambda args: abs(n) if (n := _first_number(args)) is not None else 0,
    "round": lambda args: round(n) if (n := _first_number(args)) is not None else 0,
    "floor": lambda args: math.floor(n) if (n := _first_number(args)) is not None else 0,
    "ceil": lambda args: math.ceil(n) if (n := _first_number(args)) is not None else 0,
    "lower": lambda args: s.lower() if (s := _first_string(args)) is not None else "",
    "upper": lambda args: s.upper() if (s := _first_string(args)) is not None else "",
    "trim": lambda args: s.strip() if (s := _first_string(args)) is not None else "",
}


def evaluate_expression(expr: Any, scope: EvaluationScope) -> Any:
    if not isinstance(expr, Mapping):
        raise ConfigurationError(f"Expression must be an object, got {type(expr).__name__}")

    if "field" in expr:
        return get_value_by_path(scope.proposal, str(expr["field"]))

    if "left" in expr and "right" in expr:
        operator = expr.get("operator")
        compare = COMPARISONS.get(str(operator))
        if compare is None:
            raise ConfigurationError(f"Unknown comparison operator: {operator!r}")
        return compare(evaluate_expression(expr["left"], scope), evaluate_expression(expr["right"], scope))

    if "and" in expr:
        return all(evaluate_expression(item, scope) for item in _as_list(expr["and"], "and"))
    if "or" in expr:
        return any(evaluate_expression(item, scope) for item in _as_list(expr["or"], "or"))
    if "not" in expr:
        return not evaluate_expression(expr["not"], scope)

    if "operands" in expr:
        operator = expr.get("operator")
        apply = ARITHMETIC.get(str(operator))
        if apply is None:
            raise ConfigurationError(f"Unknown arithmetic operator: {operator!r}")
        return apply([evaluate_expression(item, scope) for item in _as_list(expr["operands"], "operands")])

    if "function" in expr:
        name = expr.get("function")
        fn = FUNCTIONS.get(str(name))
        if fn is None:
            raise ConfigurationError(f"Unknown function: {name!r}")
        args = [evaluate_expression(item, scope) for item in _as_list(expr.get("arguments", []), "arguments")]
        return fn(args)

    if "value" in expr:
        return expr["value"]

    if "variable" in expr:
        name = str(expr["variable"])
        name = name[1:] if name.startswith("$") else name
        return scope.variables.get(name)

    raise ConfigurationError(f"Unknown expression shape: keys={sorted(expr.keys())}")


def _as_list(value: Any, key: str) -> list[Any]:
    if not isinstance(value, list):
        raise ConfigurationError(f"Expression '{key}' must be a list")
    return value


def matches(predicate: Mapping[str, Any], proposal: Mapping[str, Any], variables: Mapping[str, Any]) -> bool:
    return bool(evaluate_expression(predicate, EvaluationScope(proposal=proposal, variables=variables)))
