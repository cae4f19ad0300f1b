"""Condition operators used by condition steps, trigger filters and criteria."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, NamedTuple, Optional

from .contracts import Condition, Criteria
from .errors import ConfigurationError
from .resolver import UNRESOLVED, ResolutionContext, require_resolved, resolve_value

OPERATORS = frozenset(
    {
        "equals",
        "not_equals",
        "contains",
        "not_contains",
        "greater_than",
        "less_than",
        "is_empty",
        "is_not_empty",
        "is_true",
        "is_false",
    }
)
_EMPTY_TOLERANT = frozenset({"is_empty", "is_not_empty"})
_TRUE_WORDS = frozenset({"true", "1", "yes", "y", "on"})
_FALSE_WORDS = frozenset({"false", "0", "no", "n", "off"})


class ConditionResult(NamedTuple):
    result: bool
    left: Any
    right: Any
    operator: str


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _moment(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _is_empty(value: Any) -> bool:
    if value is None or value is UNRESOLVED:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _equals(left: Any, right: Any) -> bool:
    ln, rn = _number(left), _number(right)
    if ln is not None and rn is not None:
        return ln == rn
    if isinstance(left, bool) or isinstance(right, bool):
        return _truthy_word(left) == _truthy_word(right)
    if left is None or right is None:
        return left is None and right is None or _is_empty(left) and _is_empty(right)
    return str(left) == str(right)


def _truthy_word(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return None


def _contains(left: Any, right: Any) -> bool:
    if isinstance(left, (list, tuple, set)):
        return any(_equals(item, right) for item in left)
    if isinstance(left, dict):
        return str(right) in left
    if left is None:
        return False
    return str(right).lower() in str(left).lower()


def _compare(left: Any, right: Any) -> Optional[int]:
    ln, rn = _number(left), _number(right)
    if ln is not None and rn is not None:
        return (ln > rn) - (ln < rn)
    lm, rm = _moment(left), _moment(right)
    if lm is not None and rm is not None:
        try:
            return (lm > rm) - (lm < rm)
        except TypeError:
            return None
    return None


def evaluate_operator(operator: str, left: Any, right: Any = None) -> bool:
    """Apply ``operator`` to already-resolved operands."""
    if operator == "equals":
        return _equals(left, right)
    if operator == "not_equals":
        return not _equals(left, right)
    if operator == "contains":
        return _contains(left, right)
    if operator == "not_contains":
        return not _contains(left, right)
    if operator == "greater_than":
        return _compare(left, right) == 1
    if operator == "less_than":
        return _compare(left, right) == -1
    if operator == "is_empty":
        return _is_empty(left)
    if operator == "is_not_empty":
        return not _is_empty(left)
    if operator == "is_true":
        return _truthy_word(left) is True
    if operator == "is_false":
        return _truthy_word(left) is False
    raise ConfigurationError(f"Unknown condition operator: {operator!r}")


def evaluate_condition(
    condition: Condition, ctx: ResolutionContext, step_id: Optional[str] = None
) -> ConditionResult:
    """Resolve both operands against ``ctx`` and evaluate the condition."""
    if condition.operator not in OPERATORS:
        raise ConfigurationError(
            f"Unknown condition operator: {condition.operator!r}", step_id
        )
    left_res = resolve_value(condition.left, ctx)
    if left_res.unresolved and condition.operator in _EMPTY_TOLERANT:
        left = None
    else:
        left = require_resolved(left_res, step_id)
    right = require_resolved(resolve_value(condition.right, ctx), step_id)
    result = evaluate_operator(condition.operator, left, right)
    return ConditionResult(result, left, right, condition.operator)


def evaluate_all(
    conditions: Iterable[Condition], ctx: ResolutionContext, match_all: bool = True
) -> bool:
    results = (evaluate_condition(c, ctx).result for c in conditions)
    return all(results) if match_all else any(results)


def criteria_met(criteria: Optional[Criteria], ctx: ResolutionContext) -> bool:
    """Empty or missing criteria always match."""
    if criteria is None or not criteria.conditions:
        return True
    return evaluate_all(criteria.conditions, ctx, criteria.match_all)
