"""Notification rules: trigger + condition match, recipients, rendered intents.

Delivery is external; this module only produces intents and publishes them
as `notification.intent` events.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

import condition_eval
from app.template_render import render_template
from event_bus import NOTIFICATION_INTENT


logger = logging.getLogger("dynapp.notifications")

Issue = Dict[str, Any]

TRIGGER_TYPES = ("record_added", "record_edited", "record_deleted", "comment_added", "status_changed")
NOTIFY_TYPES = ("creator", "user", "role", "organization", "field_value")

_DEFAULT_TITLES = {
    "record_added": "{app}: record added",
    "record_edited": "{app}: record updated",
    "record_deleted": "{app}: record deleted",
    "comment_added": "{app}: comment added",
    "status_changed": "{app}: status changed",
}

_DEFAULT_MESSAGES = {
    "record_added": "Record #{{record_number}} was added",
    "record_edited": "Record #{{record_number}} was updated",
    "record_deleted": "A record was deleted",
    "comment_added": "A comment was added to record #{{record_number}}",
    "status_changed": "Record #{{record_number}} status changed to {{status}}",
}


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


@dataclass(frozen=True)
class ActorRef:
    type: str
    id: str

    def to_dict(self) -> dict:
        return {"type": self.type, "id": self.id}


@dataclass
class NotificationRule:
    id: str
    trigger_type: str
    notify_type: str
    name: str = ""
    condition: dict | None = None
    notify_target_id: str | None = None
    notify_target_field: str | None = None
    title_template: str | None = None
    message_template: str | None = None
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "NotificationRule":
        return cls(
            id=str(data.get("id") or ""),
            trigger_type=str(data.get("trigger_type") or ""),
            notify_type=str(data.get("notify_type") or ""),
            name=str(data.get("name") or ""),
            condition=data.get("condition"),
            notify_target_id=data.get("notify_target_id"),
            notify_target_field=data.get("notify_target_field"),
            title_template=data.get("title_template"),
            message_template=data.get("message_template"),
            is_active=bool(data.get("is_active", True)),
        )


def validate_rule(rule: NotificationRule, field_codes: Iterable[str], path: str = "$") -> List[Issue]:
    errors: List[Issue] = []
    known = set(field_codes)
    if not rule.id:
        errors.append(_issue("NOTIFICATION_RULE_INVALID", "id must be non-empty string", f"{path}.id"))
    if rule.trigger_type not in TRIGGER_TYPES:
        errors.append(_issue("NOTIFICATION_TRIGGER_INVALID", f"Unknown trigger_type: {rule.trigger_type}", f"{path}.trigger_type"))
    if rule.notify_type not in NOTIFY_TYPES:
        errors.append(_issue("NOTIFICATION_TARGET_INVALID", f"Unknown notify_type: {rule.notify_type}", f"{path}.notify_type"))
    elif rule.notify_type in ("user", "role", "organization") and not rule.notify_target_id:
        errors.append(_issue("NOTIFICATION_TARGET_INVALID", "notify_target_id is required", f"{path}.notify_target_id"))
    elif rule.notify_type == "field_value" and rule.notify_target_field not in known:
        errors.append(
            _issue("NOTIFICATION_TARGET_INVALID", f"Unknown notify_target_field: {rule.notify_target_field}", f"{path}.notify_target_field")
        )
    if rule.condition is not None:
        errors.extend(condition_eval.validate_condition_fields(rule.condition, known, f"{path}.condition"))
    return errors


def match_rule(rule: NotificationRule, trigger_type: str, record: dict) -> bool:
    if not rule.is_active or rule.trigger_type != trigger_type:
        return False
    return condition_eval.matches(rule.condition or condition_eval.EMPTY_GROUP, record)


def _actor_ids(value: Any) -> List[str]:
    if value in (None, ""):
        return []
    if isinstance(value, (list, tuple)):
        out: List[str] = []
        for item in value:
            for actor_id in _actor_ids(item):
                if actor_id not in out:
                    out.append(actor_id)
        return out
    if isinstance(value, dict):
        return [str(value["id"])] if value.get("id") else []
    return [str(value)]


def resolve_recipients(rule: NotificationRule, record: dict) -> List[ActorRef]:
    notify_type = rule.notify_type
    if notify_type == "creator":
        creator = record.get("created_by")
        return [ActorRef("user", str(creator))] if creator else []
    if notify_type in ("user", "role", "organization"):
        return [ActorRef(notify_type, str(rule.notify_target_id))] if rule.notify_target_id else []
    if notify_type == "field_value":
        if not rule.notify_target_field:
            return []
        return [ActorRef("user", actor_id) for actor_id in _actor_ids(record.get(rule.notify_target_field))]
    return []


def template_context(record: dict, extra: dict | None = None) -> dict:
    context = {key: value for key, value in record.items()}
    for key in ("record_number", "id", "status"):
        context.setdefault(key, None)
    context.update(extra or {})
    return context


def render(template: str | None, record: dict, extra: dict | None = None) -> str:
    return render_template(template or "", template_context(record, extra))


def default_title(trigger_type: str, app_name: str) -> str:
    return _DEFAULT_TITLES.get(trigger_type, "{app}: notification").format(app=app_name)


def default_message(trigger_type: str) -> str:
    return _DEFAULT_MESSAGES.get(trigger_type, "")


def build_intents(
    rules: Iterable[NotificationRule],
    trigger_type: str,
    record: dict,
    app: dict,
    actor_id: str | None,
    extra: dict | None = None,
    notify_self: bool = False,
) -> List[dict]:
    """One intent per matching rule with at least one recipient left.

    The acting user is dropped from user recipients unless notify_self is set.
    A rule whose condition cannot be parsed is skipped and logged.
    """
    intents: List[dict] = []
    app_name = app.get("name") or app.get("code") or ""
    for rule in rules:
        try:
            if not match_rule(rule, trigger_type, record):
                continue
        except condition_eval.ConditionSchemaError as exc:
            logger.warning("notification_rule_invalid rule_id=%s code=%s", rule.id, exc.code)
            continue
        recipients = resolve_recipients(rule, record)
        if not notify_self and actor_id is not None:
            recipients = [r for r in recipients if not (r.type == "user" and r.id == actor_id)]
        if not recipients:
            continue
        intents.append(
            {
                "rule_id": rule.id,
                "trigger_type": trigger_type,
                "app_code": app.get("code"),
                "record_id": record.get("id"),
                "recipients": [r.to_dict() for r in recipients],
                "title": render(rule.title_template or default_title(trigger_type, app_name), record, extra),
                "message": render(rule.message_template or default_message(trigger_type), record, extra),
                "link": f"/apps/{app.get('code')}/records/{record.get('id')}",
            }
        )
    logger.info("notification_intents trigger=%s app=%s count=%s", trigger_type, app.get("code"), len(intents))
    return intents


def publish_intents(intents: Iterable[dict], events: Any, meta: dict) -> List[str]:
    return [events.emit(NOTIFICATION_INTENT, intent, meta) for intent in intents]
