"""Condition group evaluator (flat AND/OR of field comparisons)."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List


Issue = Dict[str, Any]

OPERATORS = {"eq", "ne", "in", "not_in", "gt", "lt", "gte", "lte", "contains"}
LIST_OPERATORS = {"in", "not_in"}
LOGICS = {"AND", "OR"}

EMPTY_GROUP: dict = {"logic": "AND", "conditions": []}


@dataclass
class ConditionEvalError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


class ConditionSchemaError(ConditionEvalError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__("CONDITION_SCHEMA_ERROR", message, path)


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def parse_condition_group(raw: Any) -> dict:
    """Normalize a persisted condition group.

    Accepts a dict, a JSON string, or None (the empty group). Raises
    ConditionSchemaError only when the input cannot be read as a condition
    group at all; leaf-level oddities are left for `matches` to fail closed.
    """
    if raw is None:
        return {"logic": "AND", "conditions": []}
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return {"logic": "AND", "conditions": []}
        try:
            raw = json.loads(text)
        except ValueError as exc:
            raise ConditionSchemaError(f"Condition is not valid JSON: {exc}", "$") from exc
    if not isinstance(raw, dict):
        raise ConditionSchemaError("Condition group must be an object", "$")

    logic = raw.get("logic", "AND")
    if not isinstance(logic, str) or logic.upper() not in LOGICS:
        raise ConditionSchemaError("logic must be AND or OR", "$.logic")
    conditions = raw.get("conditions", [])
    if conditions is None:
        conditions = []
    if not isinstance(conditions, list):
        raise ConditionSchemaError("conditions must be list", "$.conditions")
    for idx, cond in enumerate(conditions):
        if not isinstance(cond, dict):
            raise ConditionSchemaError("condition must be object", f"$.conditions[{idx}]")
        if not isinstance(cond.get("field"), str) or not cond.get("field"):
            raise ConditionSchemaError("condition.field must be non-empty string", f"$.conditions[{idx}].field")
        if not isinstance(cond.get("operator"), str):
            raise ConditionSchemaError("condition.operator must be string", f"$.conditions[{idx}].operator")
    return {"logic": logic.upper(), "conditions": [dict(c) for c in conditions]}


def condition_field_codes(group: Any) -> List[str]:
    if not isinstance(group, dict):
        return []
    codes: List[str] = []
    for cond in group.get("conditions") or []:
        if isinstance(cond, dict) and isinstance(cond.get("field"), str) and cond["field"] not in codes:
            codes.append(cond["field"])
    return codes


def validate_condition_fields(group: Any, field_codes: Iterable[str], path: str = "$") -> List[Issue]:
    """Save-time checks: shape, operators, and field references."""
    errors: List[Issue] = []
    try:
        parsed = parse_condition_group(group)
    except ConditionSchemaError as exc:
        return [_issue(exc.code, exc.message, path)]
    known = set(field_codes)
    for idx, cond in enumerate(parsed["conditions"]):
        cpath = f"{path}.conditions[{idx}]"
        op = cond.get("operator")
        if op not in OPERATORS:
            errors.append(_issue("CONDITION_OPERATOR_UNKNOWN", f"Unknown operator: {op}", f"{cpath}.operator"))
        elif op in LIST_OPERATORS:
            if not isinstance(cond.get("values"), list):
                errors.append(_issue("CONDITION_VALUES_INVALID", f"{op} requires a values list", f"{cpath}.values"))
        elif isinstance(cond.get("value"), (list, dict)):
            errors.append(_issue("CONDITION_VALUE_INVALID", f"{op} requires a scalar value", f"{cpath}.value"))
        if cond["field"] not in known:
            errors.append(
                _issue(
                    "CONDITION_FIELD_UNKNOWN",
                    f"Unknown field: {cond['field']}",
                    f"{cpath}.field",
                    {"field": cond["field"]},
                )
            )
    return errors


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_number(value: Any) -> float | None:
    """Numeric coercion shared by comparisons and formulas; None when impossible."""
    if _is_number(value):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if _is_number(value):
        number = float(value)
        if number.is_integer():
            return str(int(number))
        return repr(number)
    if isinstance(value, (list, tuple)):
        return ",".join(to_text(item) for item in value)
    return str(value)


def _values_equal(left: Any, right: Any, numeric: bool) -> bool:
    if numeric:
        lnum = to_number(left)
        rnum = to_number(right)
        if lnum is None or rnum is None:
            return False
        return lnum == rnum
    return to_text(left) == to_text(right)


def _in_values(field_value: Any, values: list, numeric: bool) -> bool:
    candidates = field_value if isinstance(field_value, (list, tuple)) else [field_value]
    for candidate in candidates:
        for value in values:
            if _values_equal(candidate, value, numeric):
                return True
    return False


def _condition_values(cond: dict) -> list | None:
    values = cond.get("values")
    if isinstance(values, list):
        return values
    value = cond.get("value")
    if isinstance(value, list):
        return value
    return None


def eval_leaf(cond: Any, record: dict, numeric_fields: Iterable[str] | None = None) -> bool:
    if not isinstance(cond, dict):
        return False
    field = cond.get("field")
    op = cond.get("operator")
    if not isinstance(field, str) or op not in OPERATORS:
        return False
    field_value = record.get(field) if isinstance(record, dict) else None
    numeric = _is_number(field_value) or (numeric_fields is not None and field in numeric_fields)

    if op in LIST_OPERATORS:
        values = _condition_values(cond)
        if values is None:
            return False
        result = _in_values(field_value, values, numeric)
        return result if op == "in" else not result

    target = cond.get("value")
    if op == "eq":
        return _values_equal(field_value, target, numeric)
    if op == "ne":
        return not _values_equal(field_value, target, numeric)
    if op == "contains":
        if target is None:
            return False
        return to_text(target) in to_text(field_value)

    left = to_number(field_value)
    right = to_number(target)
    if left is None or right is None:
        return False
    if op == "gt":
        return left > right
    if op == "gte":
        return left >= right
    if op == "lt":
        return left < right
    return left <= right


def matches(group: Any, record: dict, numeric_fields: Iterable[str] | None = None) -> bool:
    """Evaluate a condition group against a flat record snapshot.

    An empty group matches every record. Unknown operators and malformed
    leaves evaluate to non-match. Only a group that cannot be parsed at all
    (e.g. a corrupt JSON string) raises ConditionSchemaError.
    """
    if group is None:
        return True
    if isinstance(group, str):
        group = parse_condition_group(group)
    if not isinstance(group, dict):
        raise ConditionSchemaError("Condition group must be an object", "$")
    conditions = group.get("conditions") or []
    if not isinstance(conditions, list):
        raise ConditionSchemaError("conditions must be list", "$.conditions")
    if not conditions:
        return True
    record = record if isinstance(record, dict) else {}
    numeric = set(numeric_fields) if numeric_fields is not None else None
    logic = group.get("logic", "AND")
    logic = logic.upper() if isinstance(logic, str) else "AND"
    if logic == "OR":
        return any(eval_leaf(cond, record, numeric) for cond in conditions)
    if logic == "AND":
        return all(eval_leaf(cond, record, numeric) for cond in conditions)
    return False
