"""Save-time validation for app schemas and rule tables."""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from typing import Any, Dict, List

from app.notifications import NotificationRule, validate_rule
from app.stores import MemoryAppStore
from app.template_render import TEMPLATE_ERROR_CODES, validate_templates
from app.webhooks import WebhookConfig
from condition_eval import condition_field_codes, validate_condition_fields
from field_schema import (
    RECORD_METADATA_KEYS,
    FieldDefinition,
    FieldSchemaError,
    apply_field_update,
    find_field_references,
    retire_field,
    stores_value,
    validate_app_schema,
)
from permission_resolver import PermissionRuleSet
from permission_rules import (
    AppPermission,
    FieldPermission,
    PermissionRuleError,
    RecordPermissionRule,
    reorder_priorities,
    validate_app_permissions,
    validate_field_permissions,
    validate_record_rules,
)
from process_plan import ProcessDefinition, validate_process_definition


logger = logging.getLogger("dynapp.schema")

Issue = Dict[str, Any]

_RULE_TABLES = {
    "app_permissions": AppPermission,
    "field_permissions": FieldPermission,
    "record_rules": RecordPermissionRule,
}


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _result(ok: bool, errors: List[Issue], warnings: List[Issue] | None = None, **extra: Any) -> dict:
    return {"ok": ok, "errors": errors, "warnings": warnings or [], **extra}


def field_codes(fields: List[FieldDefinition]) -> List[str]:
    return [f.field_code for f in fields if f.is_active and stores_value(f.field_type)]


def _rule_field_refs(apps: MemoryAppStore, app_code: str, code: str) -> List[Issue]:
    refs: List[Issue] = []
    rule_set = apps.get_permissions(app_code)
    for rule in rule_set.field_permissions:
        if rule.field_name == code:
            refs.append(_issue("REFERENCED_BY_FIELD_PERMISSION", f"Field permission {rule.id}", rule.id))
    for rule in rule_set.record_rules:
        if rule.target_field == code or code in condition_field_codes(rule.condition):
            refs.append(_issue("REFERENCED_BY_RECORD_RULE", f"Record rule {rule.id}", rule.id))
    for rule in apps.get_notification_rules(app_code):
        if rule.notify_target_field == code or code in condition_field_codes(rule.condition):
            refs.append(_issue("REFERENCED_BY_NOTIFICATION", f"Notification rule {rule.id}", rule.id))
    return refs


def save_fields(apps: MemoryAppStore, app_code: str, payload: List[dict]) -> dict:
    """Replace an app's field list.

    Persisted fields keep their field_code. Fields dropped from the payload
    are soft-retired; references to them are returned as warnings.
    """
    errors: List[Issue] = []
    warnings: List[Issue] = []
    existing = {f.id: f for f in apps.get_fields(app_code) if f.id}

    incoming: List[FieldDefinition] = []
    for idx, raw in enumerate(payload or []):
        try:
            defn = FieldDefinition.from_dict(raw)
            if defn.id and defn.id in existing:
                defn = apply_field_update(existing[defn.id], raw)
        except FieldSchemaError as exc:
            errors.append(_issue(exc.code, exc.message, f"$.fields[{idx}].{exc.path}" if exc.path else f"$.fields[{idx}]"))
            continue
        if defn.is_temporary:
            defn = replace(defn, id=f"fld_{uuid.uuid4().hex[:12]}")
        incoming.append(defn)
    if errors:
        return _result(False, errors)

    kept_ids = {f.id for f in incoming}
    for field_id, old in existing.items():
        if field_id in kept_ids:
            continue
        if old.is_active:
            refs = find_field_references(old.field_code, incoming) + _rule_field_refs(apps, app_code, old.field_code)
            for ref in refs:
                warnings.append(_issue("FIELD_RETIRED_REFERENCED", f"{old.field_code} is still referenced", ref["path"], {"reference": ref["code"]}))
            old = retire_field(old)
        incoming.append(old)

    errors.extend(validate_app_schema(incoming))
    if errors:
        return _result(False, errors, warnings)
    apps.set_fields(app_code, incoming)
    logger.info("fields_saved app=%s count=%s", app_code, len(incoming))
    return _result(True, [], warnings, fields=[f.to_dict() for f in incoming])


def _known_codes(apps: MemoryAppStore, app_code: str) -> set:
    return set(field_codes(apps.get_fields(app_code))) | RECORD_METADATA_KEYS


def save_permissions(apps: MemoryAppStore, app_code: str, payload: dict) -> dict:
    payload = payload or {}
    known = _known_codes(apps, app_code)
    errors: List[Issue] = []
    errors.extend(validate_app_permissions(payload.get("app_permissions") or []))
    errors.extend(validate_field_permissions(payload.get("field_permissions") or [], known))
    errors.extend(validate_record_rules(payload.get("record_rules") or [], known))
    if errors:
        return _result(False, errors)
    rule_set = PermissionRuleSet.from_dict(payload)
    apps.set_permissions(app_code, rule_set)
    digest = rule_set.rules_hash()
    logger.info("permissions_saved app=%s rules_hash=%s", app_code, digest)
    return _result(True, [], rules_hash=digest)


def reorder_rules(apps: MemoryAppStore, app_code: str, table: str, ordered_ids: List[str]) -> dict:
    """Rewrite one table's priority column; the first id ends up highest."""
    if table not in _RULE_TABLES:
        return _result(False, [_issue("PERMISSION_TABLE_UNKNOWN", f"Unknown rule table: {table}", "table")])
    rule_set = apps.get_permissions(app_code)
    try:
        reordered = reorder_priorities(list(getattr(rule_set, table)), ordered_ids)
    except PermissionRuleError as exc:
        return _result(False, [_issue(exc.code, exc.message, exc.path)])
    updated = replace(rule_set, **{table: tuple(reordered)})
    apps.set_permissions(app_code, updated)
    return _result(True, [], rules_hash=updated.rules_hash())


def save_process(apps: MemoryAppStore, app_code: str, payload: dict) -> dict:
    errors = validate_process_definition(payload)
    if not errors:
        defn = ProcessDefinition.from_dict(payload)
        known = _known_codes(apps, app_code)
        for idx, action in enumerate(defn.actions):
            if action.filter_condition is not None:
                errors.extend(validate_condition_fields(action.filter_condition, known, f"$.actions[{idx}].filter_condition"))
    if errors:
        return _result(False, errors)
    apps.set_process(app_code, defn)
    logger.info("process_saved app=%s enabled=%s statuses=%s actions=%s", app_code, defn.enabled, len(defn.statuses), len(defn.actions))
    return _result(True, [])


def save_notification_rules(apps: MemoryAppStore, app_code: str, payload: List[dict]) -> dict:
    known = _known_codes(apps, app_code)
    rules = [NotificationRule.from_dict(item) for item in payload or [] if isinstance(item, dict)]
    errors: List[Issue] = []
    warnings: List[Issue] = []
    for idx, rule in enumerate(rules):
        errors.extend(validate_rule(rule, known, f"$.rules[{idx}]"))
        templates = [(f"$.rules[{idx}].title_template", rule.title_template), (f"$.rules[{idx}].message_template", rule.message_template)]
        for issue in validate_templates(templates, known | {"new_status", "comment"}):
            (errors if issue["code"] in TEMPLATE_ERROR_CODES else warnings).append(issue)
    if errors:
        return _result(False, errors, warnings)
    apps.set_notification_rules(app_code, rules)
    return _result(True, [], warnings)


def save_webhooks(apps: MemoryAppStore, app_code: str, payload: List[dict]) -> dict:
    errors: List[Issue] = []
    hooks = []
    for idx, item in enumerate(payload or []):
        hook = WebhookConfig.from_dict(item if isinstance(item, dict) else {})
        if not hook.id or not hook.url.startswith(("http://", "https://")):
            errors.append(_issue("WEBHOOK_INVALID", "id and an http(s) url are required", f"$.webhooks[{idx}]"))
        hooks.append(hook)
    if errors:
        return _result(False, errors)
    apps.set_webhooks(app_code, hooks)
    return _result(True, [])
