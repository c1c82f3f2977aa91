"""Total evaluation of condition trees against record snapshots.

Evaluation never raises: unresolvable paths and incomparable values fall back to
per-operator defaults (``False`` for comparisons, ``True`` for ``is_empty``).
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import ValidationError

from crm_automation.automation.schemas import (
    Condition,
    ConditionAll,
    ConditionAny,
    ConditionLeaf,
    RecordSnapshot,
    parse_condition,
)


logger = logging.getLogger("crm_automation.automation.conditions")

_MISSING = object()


def evaluate_conditions(
    group: Condition | dict[str, Any] | list[Any] | None,
    record: RecordSnapshot | Mapping[str, Any],
    previous: RecordSnapshot | Mapping[str, Any] | None = None,
) -> bool:
    if group is None:
        return True
    if not isinstance(group, (ConditionLeaf, ConditionAll, ConditionAny)):
        try:
            group = parse_condition(group)
        except (ValidationError, ValueError) as exc:
            logger.warning("condition_parse_failed", extra={"error": str(exc)})
            return False
        if group is None:
            return True
    return _evaluate(group, _as_context(record), _as_context(previous) if previous is not None else None)


def resolve_path(context: Mapping[str, Any] | None, path: str) -> Any:
    """Return the value at ``path`` or the ``_MISSING`` sentinel."""
    current: Any = context
    for segment in path.split("."):
        if isinstance(current, Mapping):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, (list, tuple)) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def get_field_value(record: RecordSnapshot | Mapping[str, Any], path: str) -> Any:
    value = resolve_path(_as_context(record), path)
    return None if value is _MISSING else value


def is_empty_value(value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def referenced_fields(group: Condition | None) -> list[str]:
    return list(dict.fromkeys(_iter_fields(group))) if group is not None else []


def _iter_fields(group: Condition) -> Iterator[str]:
    if isinstance(group, ConditionAll):
        for item in group.all:
            yield from _iter_fields(item)
    elif isinstance(group, ConditionAny):
        for item in group.any:
            yield from _iter_fields(item)
    else:
        yield group.field


def _as_context(record: RecordSnapshot | Mapping[str, Any]) -> Mapping[str, Any]:
    if isinstance(record, RecordSnapshot):
        return record.as_context()
    return record


def _evaluate(condition: Condition, context: Mapping[str, Any], previous: Mapping[str, Any] | None) -> bool:
    if isinstance(condition, ConditionAll):
        return all(_evaluate(item, context, previous) for item in condition.all)
    if isinstance(condition, ConditionAny):
        return any(_evaluate(item, context, previous) for item in condition.any)
    try:
        return _evaluate_leaf(condition, context, previous)
    except Exception as exc:
        logger.warning(
            "condition_evaluation_failed",
            extra={"error": f"{condition.field} {condition.op}: {exc}"},
        )
        return condition.op == "is_empty"


def _evaluate_leaf(leaf: ConditionLeaf, context: Mapping[str, Any], previous: Mapping[str, Any] | None) -> bool:
    current = resolve_path(context, leaf.field)
    op = leaf.op
    target = leaf.value

    if op == "is_empty":
        return is_empty_value(current)
    if op == "not_empty":
        return not is_empty_value(current)

    if op in {"changed", "changed_to", "changed_from"}:
        if previous is None:
            return False
        before = resolve_path(previous, leaf.field)
        if _normalized(before) == _normalized(current):
            return False
        if op == "changed":
            return True
        if op == "changed_to":
            return current is not _MISSING and _normalized(current) == _normalized(target)
        return before is not _MISSING and _normalized(before) == _normalized(target)

    if current is _MISSING:
        return False

    if op == "eq":
        return _normalized(current) == _normalized(target)
    if op == "ne":
        return _normalized(current) != _normalized(target)
    if op in {"in", "not_in"}:
        if not isinstance(target, (list, tuple, set)):
            return False
        found = any(_normalized(current) == _normalized(item) for item in target)
        return found if op == "in" else not found
    if op in {"contains", "not_contains"}:
        if isinstance(current, str) and isinstance(target, str):
            found = target.lower() in current.lower()
        elif isinstance(current, (list, tuple, set)):
            found = target in current
        else:
            return False
        return found if op == "contains" else not found
    if op == "starts_with":
        return isinstance(current, str) and isinstance(target, str) and current.lower().startswith(target.lower())
    if op == "ends_with":
        return isinstance(current, str) and isinstance(target, str) and current.lower().endswith(target.lower())

    left = _normalized(current)
    right = _normalized(target)
    if left is None or right is None:
        return False
    try:
        if op == "gt":
            return left > right
        if op == "gte":
            return left >= right
        if op == "lt":
            return left < right
        if op == "lte":
            return left <= right
    except TypeError:
        return False
    return False


def _normalized(value: Any) -> Any:
    if value is _MISSING:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        as_number = _parse_number(value)
        if as_number is not None:
            return as_number
        as_date = _parse_date(value)
        if as_date is not None:
            return as_date.isoformat()
        return value
    return value


def _parse_number(value: str) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None
