from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import inspect

from leadflow.crm.schemas import WorkflowConditionItem


def lead_context(lead: Any) -> dict[str, Any]:
    mapper = inspect(lead).mapper
    return {column.key: getattr(lead, column.key) for column in mapper.column_attrs}


def evaluate_conditions(conditions: list[WorkflowConditionItem], context: dict[str, Any]) -> bool:
    """All conditions must hold; an empty list always matches."""
    return all(evaluate_condition(condition, context) for condition in conditions)


def evaluate_condition(condition: WorkflowConditionItem, context: dict[str, Any]) -> bool:
    exists, current = _resolve_path(context, condition.field)
    operator = condition.operator
    target = condition.value

    if operator == "exists":
        present = exists and current not in (None, "", [], {}, ())
        return present if target is None else present == bool(target)
    if operator == "equals":
        return _equal(current, target)
    if operator == "not_equals":
        return not _equal(current, target)
    if operator == "in":
        if not isinstance(target, (list, tuple, set)):
            return False
        return any(_equal(current, item) for item in target)
    if operator == "contains":
        if isinstance(current, str) and isinstance(target, str):
            return target.lower() in current.lower()
        if isinstance(current, (list, tuple, set)):
            return target in current
        return False

    left, right = _comparable(current, target)
    if left is None or right is None:
        return False
    try:
        if operator == "greater_than":
            return left > right
        if operator == "less_than":
            return left < right
    except TypeError:
        return False
    return False


def _resolve_path(context: dict[str, Any], path: str) -> tuple[bool, Any]:
    current: Any = context
    for segment in path.split("."):
        if not isinstance(current, dict) or segment not in current:
            return False, None
        current = current[segment]
    return True, current


def _equal(left: Any, right: Any) -> bool:
    left, right = _comparable(left, right)
    return left == right


def _comparable(left: Any, right: Any) -> tuple[Any, Any]:
    """Normalize both operands; a string is read as a number only against a number."""
    left, right = _normalized(left), _normalized(right)
    if isinstance(left, float) and isinstance(right, str):
        right = _as_number(right)
    elif isinstance(right, float) and isinstance(left, str):
        left = _as_number(left)
    return left, right


def _normalized(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, str):
        as_date = _parse_date(value) if "-" in value else None
        return as_date.isoformat() if as_date is not None else value
    return value


def _as_number(value: str) -> float | str:
    try:
        return float(value)
    except ValueError:
        return value


def _parse_date(value: str) -> date | None:
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None
