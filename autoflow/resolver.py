"""Placeholder resolution for step configuration.

Templates reference data with ``{{ path | filter | filter(arg) }}``. Paths are
resolved against an explicit :class:`ResolutionContext`:

- ``contact.email`` / ``entity.email``: field of the triggering record
- ``variables.leadScore``: enrollment variables
- ``steps.<stepId>.<field...>``: recorded output of an earlier step

Everything in this module is a pure function of its arguments so the
simulation runner can reuse it unchanged.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .constants import MAX_FILTER_PIPES
from .contracts import DataContext
from .errors import ConfigurationError

PLACEHOLDER_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_LONE_PLACEHOLDER_RE = re.compile(r"\{\{((?:(?!\{\{|\}\}).)*)\}\}", re.DOTALL)
_FILTER_RE = re.compile(r"^(\w+)(?:\((.*)\))?$", re.DOTALL)
_NUMBER_RE = re.compile(r"^-?\d+(\.\d+)?$")


class _Unresolved:
    """Sentinel for a path that does not exist in the context."""

    _instance: Optional["_Unresolved"] = None

    def __new__(cls) -> "_Unresolved":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "<unresolved>"

    def __deepcopy__(self, memo: dict) -> "_Unresolved":
        return self


UNRESOLVED = _Unresolved()


@dataclass(frozen=True)
class ResolutionContext:
    entity: Mapping[str, Any] = field(default_factory=dict)
    entity_type: str = "contact"
    variables: Mapping[str, Any] = field(default_factory=dict)
    step_outputs: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        entity: Optional[Mapping[str, Any]],
        entity_type: str,
        data_context: DataContext,
    ) -> "ResolutionContext":
        return cls(
            entity=entity or {},
            entity_type=entity_type,
            variables=data_context.variables,
            step_outputs=data_context.step_outputs,
        )


@dataclass(frozen=True)
class Resolution:
    """Result of resolving a template or structure.

    ``unresolved`` lists the placeholder expressions whose path was missing.
    """

    value: Any
    unresolved: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.unresolved


# ----------------------------------------------------------------------
# Filters


def _to_number(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return value
    try:
        text = str(value).strip()
        return int(text) if re.fullmatch(r"-?\d+", text) else float(text)
    except (TypeError, ValueError):
        return 0


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def _date_format(value: Any, fmt: str = "YYYY-MM-DD") -> Any:
    if isinstance(value, datetime):
        moment = value
    elif isinstance(value, date):
        moment = datetime(value.year, value.month, value.day)
    else:
        try:
            moment = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return value
    if "%" in fmt:
        return moment.strftime(fmt)
    return (
        fmt.replace("YYYY", f"{moment.year:04d}")
        .replace("MM", f"{moment.month:02d}")
        .replace("DD", f"{moment.day:02d}")
        .replace("HH", f"{moment.hour:02d}")
        .replace("mm", f"{moment.minute:02d}")
    )


def _divide(value: Any, divisor: Any = 1) -> Any:
    divisor = _to_number(divisor)
    return _to_number(value) / divisor if divisor else 0


def _round(value: Any, decimals: int = 0) -> Any:
    rounded = round(float(_to_number(value)), int(decimals))
    return int(rounded) if int(decimals) == 0 else rounded


def _default(value: Any, fallback: Any = "") -> Any:
    if value is UNRESOLVED or value is None or value == "":
        return fallback
    return value


FILTERS: Dict[str, Callable[..., Any]] = {
    "uppercase": lambda v: _as_text(v).upper(),
    "lowercase": lambda v: _as_text(v).lower(),
    "trim": lambda v: _as_text(v).strip(),
    "capitalize": lambda v: _as_text(v).capitalize(),
    "default": _default,
    "length": lambda v: len(v) if isinstance(v, (list, tuple, dict)) else len(_as_text(v)),
    "first": lambda v: (v[0] if v else None) if isinstance(v, (list, tuple)) else v,
    "last": lambda v: (v[-1] if v else None) if isinstance(v, (list, tuple)) else v,
    "join": lambda v, sep=", ": sep.join(_as_text(i) for i in v) if isinstance(v, (list, tuple)) else _as_text(v),
    "split": lambda v, sep=",": _as_text(v).split(sep),
    "add": lambda v, n=0: _to_number(v) + _to_number(n),
    "subtract": lambda v, n=0: _to_number(v) - _to_number(n),
    "multiply": lambda v, n=1: _to_number(v) * _to_number(n),
    "divide": _divide,
    "round": _round,
    "date_format": _date_format,
    "replace": lambda v, old, new="": _as_text(v).replace(str(old), str(new)),
    "substring": lambda v, start=0, end=None: _as_text(v)[int(start) : None if end is None else int(end)],
    "to_string": _as_text,
    "to_number": _to_number,
    "to_boolean": lambda v: v.strip().lower() in {"true", "1", "yes"} if isinstance(v, str) else bool(v),
    "to_json": lambda v: json.dumps(v, default=str),
}
FILTERS["dateFormat"] = _date_format


def available_filters() -> List[str]:
    return sorted(FILTERS)


# ----------------------------------------------------------------------
# Parsing


def _split_outside_quotes(text: str, sep: str) -> List[str]:
    parts: List[str] = []
    buf: List[str] = []
    quote: Optional[str] = None
    depth = 0
    for ch in text:
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        elif ch == sep and depth == 0:
            parts.append("".join(buf))
            buf = []
            continue
        buf.append(ch)
    parts.append("".join(buf))
    return parts


def _parse_arg(raw: str) -> Any:
    arg = raw.strip()
    if len(arg) >= 2 and arg[0] == arg[-1] and arg[0] in ("'", '"'):
        return arg[1:-1]
    if _NUMBER_RE.match(arg):
        return float(arg) if "." in arg else int(arg)
    if arg in ("true", "false"):
        return arg == "true"
    if arg == "null":
        return None
    return arg


def parse_expression(expression: str) -> Tuple[str, List[Tuple[str, List[Any]]]]:
    """Split ``path | filter(arg)`` into the path and parsed filters."""
    parts = [p.strip() for p in _split_outside_quotes(expression, "|")]
    path, filter_parts = parts[0], parts[1:]
    if len(filter_parts) > MAX_FILTER_PIPES:
        raise ConfigurationError(
            f"Expression has too many pipes (max {MAX_FILTER_PIPES}): {expression}"
        )
    filters: List[Tuple[str, List[Any]]] = []
    for part in filter_parts:
        match = _FILTER_RE.match(part)
        if not match:
            raise ConfigurationError(f"Invalid filter syntax: {part!r}")
        name, raw_args = match.group(1), match.group(2)
        args = (
            [_parse_arg(a) for a in _split_outside_quotes(raw_args, ",")]
            if raw_args and raw_args.strip()
            else []
        )
        filters.append((name, args))
    return path, filters


# ----------------------------------------------------------------------
# Resolution


def _walk(value: Any, segments: Sequence[str]) -> Any:
    current = value
    for segment in segments:
        if isinstance(current, Mapping):
            if segment not in current:
                return UNRESOLVED
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(segment)]
            except (ValueError, IndexError):
                return UNRESOLVED
        else:
            return UNRESOLVED
    return current


def resolve_path(path: str, ctx: ResolutionContext) -> Any:
    """Resolve a dotted path, returning ``UNRESOLVED`` when it is missing."""
    segments = [s for s in path.strip().split(".") if s != ""]
    if not segments:
        return UNRESOLVED
    root, rest = segments[0], segments[1:]
    if root == "variables":
        return _walk(ctx.variables, rest)
    if root == "steps":
        return _walk(ctx.step_outputs, rest)
    if root in ("entity", ctx.entity_type):
        return _walk(ctx.entity, rest)
    found = _walk(ctx.entity, segments)
    if found is UNRESOLVED:
        found = _walk(ctx.variables, segments)
    return found


def apply_filters(value: Any, filters: Sequence[Tuple[str, List[Any]]]) -> Any:
    result = value
    for name, args in filters:
        fn = FILTERS.get(name)
        if fn is None:
            raise ConfigurationError(
                f"Unknown filter: {name} (available: {', '.join(available_filters())})"
            )
        if result is UNRESOLVED and name != "default":
            continue
        try:
            result = fn(result, *args)
        except (TypeError, ValueError, ZeroDivisionError) as exc:
            raise ConfigurationError(f"Filter {name!r} failed: {exc}") from exc
    return result


def evaluate_expression(expression: str, ctx: ResolutionContext) -> Any:
    path, filters = parse_expression(expression)
    return apply_filters(resolve_path(path, ctx), filters)


def resolve_template(template: Any, ctx: ResolutionContext) -> Resolution:
    """Substitute every placeholder in ``template`` with its text form.

    Unresolved placeholders are left verbatim in the output and reported in
    :attr:`Resolution.unresolved`.
    """
    if not isinstance(template, str) or "{{" not in template:
        return Resolution(template)

    unresolved: List[str] = []

    def _sub(match: "re.Match[str]") -> str:
        expression = match.group(1).strip()
        value = evaluate_expression(expression, ctx)
        if value is UNRESOLVED:
            unresolved.append(expression)
            return match.group(0)
        return _as_text(value)

    return Resolution(PLACEHOLDER_RE.sub(_sub, template), tuple(unresolved))


def resolve_value(template: Any, ctx: ResolutionContext) -> Resolution:
    """Like :func:`resolve_template` but keep the raw value of a lone placeholder."""
    if isinstance(template, str):
        match = _LONE_PLACEHOLDER_RE.fullmatch(template.strip())
        if match:
            expression = match.group(1).strip()
            value = evaluate_expression(expression, ctx)
            if value is UNRESOLVED:
                return Resolution(template, (expression,))
            return Resolution(value)
    return resolve_template(template, ctx)


def resolve_structure(obj: Any, ctx: ResolutionContext) -> Resolution:
    """Recursively resolve templates inside dicts and lists."""
    if isinstance(obj, str):
        return resolve_value(obj, ctx)
    if isinstance(obj, Mapping):
        unresolved: List[str] = []
        resolved: Dict[str, Any] = {}
        for key, value in obj.items():
            res = resolve_structure(value, ctx)
            resolved[key] = res.value
            unresolved.extend(res.unresolved)
        return Resolution(resolved, tuple(unresolved))
    if isinstance(obj, (list, tuple)):
        unresolved = []
        items = []
        for value in obj:
            res = resolve_structure(value, ctx)
            items.append(res.value)
            unresolved.extend(res.unresolved)
        return Resolution(items, tuple(unresolved))
    return Resolution(obj)


def require_resolved(resolution: Resolution, step_id: Optional[str] = None) -> Any:
    """Return the resolved value or raise for missing placeholders."""
    if resolution.unresolved:
        missing = ", ".join(resolution.unresolved)
        raise ConfigurationError(f"Unresolved placeholder(s): {missing}", step_id)
    return resolution.value
