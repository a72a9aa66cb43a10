"""Permission rule tables: parsing, targeting, priority selection, admin checks."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple, TypeVar

import condition_eval


Issue = Dict[str, Any]

APP_CAPABILITIES: Tuple[str, ...] = (
    "can_view",
    "can_add",
    "can_edit",
    "can_delete",
    "can_manage",
    "can_export",
    "can_import",
)
RECORD_CAPABILITIES: Tuple[str, ...] = ("can_view", "can_edit", "can_delete")
ACCESS_LEVELS = ("edit", "view", "hidden")

ACTOR_TARGET_TYPES = {"everyone", "user", "role", "organization"}
RECORD_TARGET_TYPES = {"user", "role", "organization", "creator", "field_value"}
ADMIN_ROLE = "admin"


@dataclass
class PermissionRuleError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _str_list(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,) if value else ()
    return tuple(str(v) for v in value if v not in (None, ""))


@dataclass(frozen=True)
class Actor:
    id: str
    role_ids: Tuple[str, ...] = ()
    org_ids: Tuple[str, ...] = ()
    org_ancestor_ids: Tuple[str, ...] = ()
    is_admin: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "Actor":
        if not isinstance(data, dict) or not isinstance(data.get("id"), str) or not data.get("id"):
            raise PermissionRuleError("ACTOR_INVALID", "actor.id must be non-empty string", "actor.id")
        orgs = _str_list(data.get("org_ids")) or _str_list(data.get("org_id"))
        roles = _str_list(data.get("role_ids") if "role_ids" in data else data.get("roles"))
        return cls(
            id=data["id"],
            role_ids=roles,
            org_ids=orgs,
            org_ancestor_ids=_str_list(data.get("org_ancestor_ids")),
            is_admin=bool(data.get("is_admin")) or ADMIN_ROLE in roles,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "roles": list(self.role_ids),
            "org_ids": list(self.org_ids),
            "org_ancestor_ids": list(self.org_ancestor_ids),
            "is_admin": self.is_admin,
        }


def _priority(data: dict, path: str) -> int:
    value = data.get("priority", 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PermissionRuleError("PERMISSION_RULE_INVALID", "priority must be a number", f"{path}.priority")
    return int(value)


def _rule_id(data: dict, path: str) -> str:
    value = data.get("id")
    if not isinstance(value, str) or not value:
        raise PermissionRuleError("PERMISSION_RULE_INVALID", "id must be non-empty string", f"{path}.id")
    return value


def _target(data: dict, allowed: set, path: str) -> Tuple[str, str | None]:
    target_type = data.get("target_type")
    if target_type not in allowed:
        raise PermissionRuleError(
            "PERMISSION_TARGET_TYPE_INVALID",
            f"target_type must be one of {sorted(allowed)}",
            f"{path}.target_type",
        )
    target_id = data.get("target_id")
    if target_type in ("user", "role", "organization") and (not isinstance(target_id, str) or not target_id):
        raise PermissionRuleError("PERMISSION_TARGET_ID_MISSING", "target_id is required", f"{path}.target_id")
    return target_type, target_id if isinstance(target_id, str) else None


@dataclass(frozen=True)
class AppPermission:
    id: str
    target_type: str
    target_id: str | None = None
    can_view: bool = False
    can_add: bool = False
    can_edit: bool = False
    can_delete: bool = False
    can_manage: bool = False
    can_export: bool = False
    can_import: bool = False
    priority: int = 0
    include_sub_organizations: bool = False

    @classmethod
    def from_dict(cls, data: dict, path: str = "$") -> "AppPermission":
        if not isinstance(data, dict):
            raise PermissionRuleError("PERMISSION_RULE_INVALID", "rule must be object", path)
        target_type, target_id = _target(data, ACTOR_TARGET_TYPES, path)
        return cls(
            id=_rule_id(data, path),
            target_type=target_type,
            target_id=target_id,
            priority=_priority(data, path),
            include_sub_organizations=bool(data.get("include_sub_organizations")),
            **{cap: bool(data.get(cap)) for cap in APP_CAPABILITIES},
        )

    def capabilities(self) -> Dict[str, bool]:
        return {cap: getattr(self, cap) for cap in APP_CAPABILITIES}


@dataclass(frozen=True)
class FieldPermission:
    id: str
    field_name: str
    target_type: str
    target_id: str | None = None
    access_level: str = "edit"
    priority: int = 0
    include_sub_organizations: bool = False

    @classmethod
    def from_dict(cls, data: dict, path: str = "$") -> "FieldPermission":
        if not isinstance(data, dict):
            raise PermissionRuleError("PERMISSION_RULE_INVALID", "rule must be object", path)
        field_name = data.get("field_name")
        if not isinstance(field_name, str) or not field_name:
            raise PermissionRuleError("PERMISSION_RULE_INVALID", "field_name must be non-empty string", f"{path}.field_name")
        level = data.get("access_level")
        if level not in ACCESS_LEVELS:
            raise PermissionRuleError("PERMISSION_ACCESS_LEVEL_INVALID", "access_level must be view, edit or hidden", f"{path}.access_level")
        target_type, target_id = _target(data, ACTOR_TARGET_TYPES, path)
        return cls(
            id=_rule_id(data, path),
            field_name=field_name,
            target_type=target_type,
            target_id=target_id,
            access_level=level,
            priority=_priority(data, path),
            include_sub_organizations=bool(data.get("include_sub_organizations")),
        )


@dataclass(frozen=True)
class RecordPermissionRule:
    id: str
    target_type: str
    condition: dict = field(default_factory=lambda: copy.deepcopy(condition_eval.EMPTY_GROUP), hash=False, compare=False)
    target_id: str | None = None
    target_field: str | None = None
    can_view: bool = False
    can_edit: bool = False
    can_delete: bool = False
    priority: int = 0
    include_sub_organizations: bool = False

    @classmethod
    def from_dict(cls, data: dict, path: str = "$") -> "RecordPermissionRule":
        if not isinstance(data, dict):
            raise PermissionRuleError("PERMISSION_RULE_INVALID", "rule must be object", path)
        target_type, target_id = _target(data, RECORD_TARGET_TYPES, path)
        target_field = data.get("target_field")
        if target_type == "field_value" and (not isinstance(target_field, str) or not target_field):
            raise PermissionRuleError("PERMISSION_TARGET_FIELD_MISSING", "target_field is required", f"{path}.target_field")
        try:
            condition = condition_eval.parse_condition_group(data.get("condition"))
        except condition_eval.ConditionSchemaError as exc:
            raise PermissionRuleError(exc.code, exc.message, f"{path}.condition") from exc
        return cls(
            id=_rule_id(data, path),
            target_type=target_type,
            condition=condition,
            target_id=target_id,
            target_field=target_field if isinstance(target_field, str) else None,
            priority=_priority(data, path),
            include_sub_organizations=bool(data.get("include_sub_organizations")),
            **{cap: bool(data.get(cap)) for cap in RECORD_CAPABILITIES},
        )

    def capabilities(self) -> Dict[str, bool]:
        return {cap: getattr(self, cap) for cap in RECORD_CAPABILITIES}


def parse_rules(items: Iterable[Any], cls: Any, path: str) -> list:
    if items is None:
        return []
    return [item if isinstance(item, cls) else cls.from_dict(item, f"{path}[{idx}]") for idx, item in enumerate(items)]


def matches_actor(rule: Any, actor: Actor) -> bool:
    """Target match for the actor-only target types."""
    target_type = rule.target_type
    if target_type == "everyone":
        return True
    if target_type == "user":
        return rule.target_id == actor.id
    if target_type == "role":
        return rule.target_id in actor.role_ids
    if target_type == "organization":
        if rule.target_id in actor.org_ids:
            return True
        return bool(rule.include_sub_organizations) and rule.target_id in actor.org_ancestor_ids
    return False


def _holds_actor(value: Any, actor_id: str) -> bool:
    if isinstance(value, (list, tuple)):
        return any(_holds_actor(item, actor_id) for item in value)
    if isinstance(value, dict):
        return value.get("id") == actor_id
    return condition_eval.to_text(value) == actor_id


def matches_target(rule: Any, actor: Actor, record: dict | None = None) -> bool:
    if rule.target_type == "creator":
        return record is not None and record.get("created_by") == actor.id
    if rule.target_type == "field_value":
        if record is None or not rule.target_field:
            return False
        return _holds_actor(record.get(rule.target_field), actor.id)
    return matches_actor(rule, actor)


R = TypeVar("R")


def priority_key(rule: Any) -> Tuple[int, str]:
    return (-int(rule.priority), str(rule.id))


def pick_highest_priority(rules: Iterable[R], predicate: Callable[[R], bool]) -> R | None:
    """Highest priority matching rule; equal priority goes to the smallest id."""
    matched = [rule for rule in rules if predicate(rule)]
    if not matched:
        return None
    return sorted(matched, key=priority_key)[0]


def reorder_priorities(rules: Sequence[R], ordered_ids: Sequence[str]) -> List[R]:
    """Rewrite the whole priority column from a drag-reordered id list.

    The first id gets the highest priority. Every rule id must appear exactly
    once.
    """
    by_id = {rule.id: rule for rule in rules}
    if len(by_id) != len(rules):
        raise PermissionRuleError("PERMISSION_REORDER_INVALID", "rule ids must be unique", "$")
    if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(by_id):
        raise PermissionRuleError("PERMISSION_REORDER_INVALID", "ordered ids must list every rule exactly once", "$.ordered_ids")
    total = len(ordered_ids)
    return [replace(by_id[rule_id], priority=total - idx) for idx, rule_id in enumerate(ordered_ids)]


def validate_app_permissions(items: Iterable[Any]) -> List[Issue]:
    errors: List[Issue] = []
    seen: set = set()
    for idx, item in enumerate(items or []):
        path = f"$.app_permissions[{idx}]"
        try:
            rule = item if isinstance(item, AppPermission) else AppPermission.from_dict(item, path)
        except PermissionRuleError as exc:
            errors.append(_issue(exc.code, exc.message, exc.path))
            continue
        if rule.id in seen:
            errors.append(_issue("PERMISSION_RULE_DUPLICATE", f"Duplicate rule id: {rule.id}", f"{path}.id"))
        seen.add(rule.id)
    return errors


def validate_field_permissions(items: Iterable[Any], field_codes: Iterable[str]) -> List[Issue]:
    errors: List[Issue] = []
    known = set(field_codes)
    seen: set = set()
    for idx, item in enumerate(items or []):
        path = f"$.field_permissions[{idx}]"
        try:
            rule = item if isinstance(item, FieldPermission) else FieldPermission.from_dict(item, path)
        except PermissionRuleError as exc:
            errors.append(_issue(exc.code, exc.message, exc.path))
            continue
        if rule.id in seen:
            errors.append(_issue("PERMISSION_RULE_DUPLICATE", f"Duplicate rule id: {rule.id}", f"{path}.id"))
        seen.add(rule.id)
        if rule.field_name not in known:
            errors.append(_issue("PERMISSION_FIELD_UNKNOWN", f"Unknown field: {rule.field_name}", f"{path}.field_name"))
    return errors


def validate_record_rules(items: Iterable[Any], field_codes: Iterable[str]) -> List[Issue]:
    errors: List[Issue] = []
    known = set(field_codes)
    seen: set = set()
    for idx, item in enumerate(items or []):
        path = f"$.record_rules[{idx}]"
        try:
            rule = item if isinstance(item, RecordPermissionRule) else RecordPermissionRule.from_dict(item, path)
        except PermissionRuleError as exc:
            errors.append(_issue(exc.code, exc.message, exc.path))
            continue
        if rule.id in seen:
            errors.append(_issue("PERMISSION_RULE_DUPLICATE", f"Duplicate rule id: {rule.id}", f"{path}.id"))
        seen.add(rule.id)
        errors.extend(condition_eval.validate_condition_fields(rule.condition, known, f"{path}.condition"))
        if rule.target_type == "field_value" and rule.target_field not in known:
            errors.append(_issue("PERMISSION_FIELD_UNKNOWN", f"Unknown field: {rule.target_field}", f"{path}.target_field"))
    return errors
