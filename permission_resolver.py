"""Effective permission resolution: app level, then record level, then fields.

Every decision is a pure function of (actor, record, rule set). Each layer
uses the same highest-priority reducer from permission_rules; record rules
can only narrow what the app layer granted.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Tuple

import condition_eval
from dynapp import rules_hash
from permission_rules import (
    APP_CAPABILITIES,
    RECORD_CAPABILITIES,
    Actor,
    AppPermission,
    FieldPermission,
    RecordPermissionRule,
    matches_actor,
    matches_target,
    parse_rules,
    pick_highest_priority,
)


logger = logging.getLogger("dynapp.permissions")

# Keys that describe the record rather than user data; never masked.
METADATA_KEYS = {"id", "record_number", "created_by", "created_at", "updated_by", "updated_at", "status"}


@dataclass(frozen=True)
class AppCapabilities:
    can_view: bool = False
    can_add: bool = False
    can_edit: bool = False
    can_delete: bool = False
    can_manage: bool = False
    can_export: bool = False
    can_import: bool = False

    @classmethod
    def none(cls) -> "AppCapabilities":
        return cls()

    @classmethod
    def all(cls) -> "AppCapabilities":
        return cls(**{cap: True for cap in APP_CAPABILITIES})

    @classmethod
    def from_rule(cls, rule: AppPermission) -> "AppCapabilities":
        return cls(**rule.capabilities())

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)


@dataclass(frozen=True)
class RecordCapabilities:
    can_view: bool = False
    can_edit: bool = False
    can_delete: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return asdict(self)

    def is_subset_of(self, app: AppCapabilities) -> bool:
        return all(not getattr(self, cap) or getattr(app, cap) for cap in RECORD_CAPABILITIES)


@dataclass(frozen=True)
class PermissionRuleSet:
    app_permissions: Tuple[AppPermission, ...] = ()
    field_permissions: Tuple[FieldPermission, ...] = ()
    record_rules: Tuple[RecordPermissionRule, ...] = ()

    @classmethod
    def from_dict(cls, data: dict | None) -> "PermissionRuleSet":
        data = data or {}
        return cls(
            tuple(parse_rules(data.get("app_permissions"), AppPermission, "$.app_permissions")),
            tuple(parse_rules(data.get("field_permissions"), FieldPermission, "$.field_permissions")),
            tuple(parse_rules(data.get("record_rules"), RecordPermissionRule, "$.record_rules")),
        )

    def to_dict(self) -> dict:
        return {
            "app_permissions": [asdict(r) for r in self.app_permissions],
            "field_permissions": [asdict(r) for r in self.field_permissions],
            "record_rules": [asdict(r) for r in self.record_rules],
        }

    def rules_hash(self) -> str:
        return rules_hash(self)


@dataclass
class EffectivePermissions:
    app: AppCapabilities
    record: RecordCapabilities | None = None
    fields: Dict[str, str] = field(default_factory=dict)
    app_rule_id: str | None = None
    record_rule_id: str | None = None
    field_rule_ids: Dict[str, str] = field(default_factory=dict)
    rules_hash: str | None = None

    def can(self, operation: str) -> bool:
        cap = operation if operation.startswith("can_") else f"can_{operation}"
        if self.record is not None and cap in RECORD_CAPABILITIES:
            return bool(getattr(self.record, cap))
        return bool(getattr(self.app, cap, False))

    def to_dict(self) -> dict:
        return {
            "app": self.app.to_dict(),
            "record": self.record.to_dict() if self.record is not None else None,
            "fields": dict(self.fields),
            "app_rule_id": self.app_rule_id,
            "record_rule_id": self.record_rule_id,
            "field_rule_ids": dict(self.field_rule_ids),
            "rules_hash": self.rules_hash,
        }


def resolve_app_capabilities(actor: Actor, rules: Iterable[AppPermission]) -> Tuple[AppCapabilities, str | None]:
    """Winning app-level row for the actor; no matching row denies everything."""
    if actor.is_admin:
        return AppCapabilities.all(), None
    winner = pick_highest_priority(rules, lambda rule: matches_actor(rule, actor))
    if winner is None:
        return AppCapabilities.none(), None
    return AppCapabilities.from_rule(winner), winner.id


def resolve_record_capabilities(
    actor: Actor,
    app: AppCapabilities,
    rules: Iterable[RecordPermissionRule],
    record: dict,
    numeric_fields: Iterable[str] | None = None,
) -> Tuple[RecordCapabilities, str | None]:
    base = RecordCapabilities(app.can_view, app.can_edit, app.can_delete)
    if actor.is_admin:
        return base, None
    numeric = set(numeric_fields) if numeric_fields is not None else None

    def _applies(rule: RecordPermissionRule) -> bool:
        if not matches_target(rule, actor, record):
            return False
        return condition_eval.matches(rule.condition, record, numeric)

    winner = pick_highest_priority(rules, _applies)
    if winner is None:
        return base, None
    narrowed = RecordCapabilities(
        base.can_view and winner.can_view,
        base.can_edit and winner.can_edit,
        base.can_delete and winner.can_delete,
    )
    return narrowed, winner.id


def resolve_field_access(
    actor: Actor,
    rules: Iterable[FieldPermission],
    field_codes: Iterable[str],
    can_view: bool,
    can_edit: bool,
) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Per-field access level plus the winning rule id for each restricted field.

    Without a matching rule a field follows the record: edit when the record is
    editable, otherwise view. A field rule never grants more than the record.
    """
    levels: Dict[str, str] = {}
    winners: Dict[str, str] = {}
    by_field: Dict[str, List[FieldPermission]] = {}
    for rule in rules:
        by_field.setdefault(rule.field_name, []).append(rule)
    for code in field_codes:
        if not can_view:
            levels[code] = "hidden"
            continue
        default = "edit" if can_edit else "view"
        if actor.is_admin:
            levels[code] = default
            continue
        winner = pick_highest_priority(by_field.get(code, []), lambda rule: matches_actor(rule, actor))
        if winner is None:
            levels[code] = default
            continue
        level = winner.access_level
        if level == "edit" and not can_edit:
            level = "view"
        levels[code] = level
        winners[code] = winner.id
    return levels, winners


def effective_permissions(
    actor: Actor,
    rule_set: PermissionRuleSet,
    field_codes: Iterable[str],
    record: dict | None = None,
    numeric_fields: Iterable[str] | None = None,
) -> EffectivePermissions:
    """Full decision for an actor, optionally against one record.

    Without a record only the app layer and field defaults apply (new record
    forms, list columns).
    """
    app, app_rule_id = resolve_app_capabilities(actor, rule_set.app_permissions)
    record_caps = None
    record_rule_id = None
    if record is not None:
        record_caps, record_rule_id = resolve_record_capabilities(actor, app, rule_set.record_rules, record, numeric_fields)
        can_view, can_edit = record_caps.can_view, record_caps.can_edit
    else:
        can_view, can_edit = app.can_view, app.can_edit or app.can_add
    levels, field_rule_ids = resolve_field_access(actor, rule_set.field_permissions, list(field_codes), can_view, can_edit)
    digest = rule_set.rules_hash()
    logger.debug(
        "permission_decision actor=%s record_id=%s app_rule=%s record_rule=%s field_rules=%s rules_hash=%s",
        actor.id,
        (record or {}).get("id"),
        app_rule_id,
        record_rule_id,
        sorted(field_rule_ids.values()),
        digest,
    )
    return EffectivePermissions(app, record_caps, levels, app_rule_id, record_rule_id, field_rule_ids, digest)


def authorize(
    actor: Actor,
    rule_set: PermissionRuleSet,
    operation: str,
    record: dict | None = None,
    numeric_fields: Iterable[str] | None = None,
) -> bool:
    app, _ = resolve_app_capabilities(actor, rule_set.app_permissions)
    cap = f"can_{operation}"
    if cap not in APP_CAPABILITIES:
        return False
    if record is None or cap not in RECORD_CAPABILITIES:
        return bool(getattr(app, cap))
    record_caps, _ = resolve_record_capabilities(actor, app, rule_set.record_rules, record, numeric_fields)
    return bool(getattr(record_caps, cap))


def mask_record(record: dict, field_access: Dict[str, str]) -> dict:
    """Read payload with hidden fields removed."""
    return {key: value for key, value in record.items() if key in METADATA_KEYS or field_access.get(key, "hidden") != "hidden"}


def filter_payload_for_write(payload: dict, field_access: Dict[str, str]) -> Tuple[dict, List[str]]:
    """Keep only editable fields; returns (accepted, rejected field codes)."""
    accepted: dict = {}
    rejected: List[str] = []
    for key, value in (payload or {}).items():
        if field_access.get(key) == "edit":
            accepted[key] = value
        else:
            rejected.append(key)
    return accepted, rejected
