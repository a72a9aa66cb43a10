"""Event envelopes for record activity and the in-process bus that fans them out.

An envelope is {"name", "payload", "meta"}. meta ties the event to an app
code, the acting user and the rules hash in force when it was produced.
Events are built only after the write they describe has committed.
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Tuple

from dynapp import CanonicalJsonTypeError, canonical_dumps, is_rules_hash


logger = logging.getLogger("dynapp.events")

Event = Dict[str, Any]
Handler = Callable[[Event], None]
Issue = Dict[str, Any]

SCHEMA_VERSION = "1"
ANY_EVENT = "*"

RECORD_CREATED = "record.created"
RECORD_UPDATED = "record.updated"
RECORD_DELETED = "record.deleted"
RECORD_COMMENTED = "record.commented"
STATUS_CHANGED = "record.status_changed"
NOTIFICATION_INTENT = "notification.intent"

# Payload keys each known event must carry; other names are free-form.
PAYLOAD_KEYS: Dict[str, Tuple[str, ...]] = {
    RECORD_CREATED: ("app_code", "record_id", "record"),
    RECORD_UPDATED: ("app_code", "record_id", "record"),
    RECORD_DELETED: ("app_code", "record_id", "record"),
    RECORD_COMMENTED: ("app_code", "record_id", "comment"),
    STATUS_CHANGED: ("app_code", "record_id", "action_id", "from_status_id", "to_status_id"),
    NOTIFICATION_INTENT: ("rule_id", "trigger_type", "recipients", "title", "message"),
}


@dataclass
class EventValidationError(Exception):
    code: str
    message: str
    path: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.code}: {self.message}"
        return f"{base} (path={self.path})" if self.path else base


def _issue(code: str, message: str, path: str | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": None}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def event_meta(app_code: str, actor: dict | None = None, rules_hash: str | None = None, trace_id: str | None = None) -> dict:
    return {"app_code": app_code, "rules_hash": rules_hash, "actor": actor, "trace_id": trace_id}


def _payload_issues(name: Any, payload: Any) -> List[Issue]:
    if not isinstance(payload, dict):
        return [_issue("PAYLOAD_INVALID", "payload must be an object", "payload")]
    try:
        canonical_dumps(payload)
    except (CanonicalJsonTypeError, ValueError) as exc:
        return [_issue("PAYLOAD_INVALID", str(exc), "payload")]
    missing = [key for key in PAYLOAD_KEYS.get(name, ()) if key not in payload]
    if missing:
        return [_issue("PAYLOAD_INCOMPLETE", f"{name} payload needs {', '.join(missing)}", "payload")]
    return []


def _occurred_at_ok(value: Any) -> bool:
    if not isinstance(value, str) or not value.endswith("Z"):
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def _actor_issues(actor: Any) -> List[Issue]:
    if actor is None:
        return []
    if not isinstance(actor, dict) or not isinstance(actor.get("id"), str):
        return [_issue("META_ACTOR_INVALID", "actor must be null or an object with a string id", "meta.actor")]
    roles = actor.get("roles", [])
    if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
        return [_issue("META_ACTOR_INVALID", "actor.roles must be list of strings", "meta.actor.roles")]
    return []


def event_issues(event: Any) -> List[Issue]:
    """Every problem with an envelope, in field order."""
    if not isinstance(event, dict):
        return [_issue("EVENT_INVALID", "event must be object")]
    issues: List[Issue] = []
    name = event.get("name")
    if not isinstance(name, str) or not name:
        issues.append(_issue("EVENT_NAME_INVALID", "name must be non-empty string", "name"))
    issues.extend(_payload_issues(name, event.get("payload")))

    meta = event.get("meta")
    if not isinstance(meta, dict):
        issues.append(_issue("META_INVALID", "meta must be object", "meta"))
        return issues
    if not isinstance(meta.get("event_id"), str) or not meta.get("event_id"):
        issues.append(_issue("META_EVENT_ID_INVALID", "event_id must be non-empty string", "meta.event_id"))
    if not _occurred_at_ok(meta.get("occurred_at")):
        issues.append(_issue("META_OCCURRED_AT_INVALID", "occurred_at must be ISO8601 UTC ending in Z", "meta.occurred_at"))
    if not isinstance(meta.get("app_code"), str) or not meta.get("app_code"):
        issues.append(_issue("META_APP_CODE_INVALID", "app_code must be non-empty string", "meta.app_code"))
    digest = meta.get("rules_hash")
    if digest is not None and not is_rules_hash(digest):
        issues.append(_issue("META_RULES_HASH_INVALID", "rules_hash must be sha256:<64 hex>", "meta.rules_hash"))
    issues.extend(_actor_issues(meta.get("actor")))
    if meta.get("trace_id") is not None and not isinstance(meta.get("trace_id"), str):
        issues.append(_issue("META_TRACE_ID_INVALID", "trace_id must be string or null", "meta.trace_id"))
    if meta.get("schema_version") != SCHEMA_VERSION:
        issues.append(_issue("META_SCHEMA_VERSION_INVALID", f"schema_version must be '{SCHEMA_VERSION}'", "meta.schema_version"))
    return issues


def validate_event(event: Any) -> None:
    issues = event_issues(event)
    if issues:
        first = issues[0]
        raise EventValidationError(first["code"], first["message"], first["path"])


def make_event(name: str, payload: dict, meta: dict) -> Event:
    """Envelope with event_id, occurred_at and schema_version filled in."""
    if not isinstance(meta, dict):
        raise EventValidationError("META_INVALID", "meta must be object", "meta")
    meta_out = copy.deepcopy(meta)
    meta_out.setdefault("event_id", str(uuid.uuid4()))
    meta_out.setdefault("occurred_at", _now())
    meta_out.setdefault("schema_version", SCHEMA_VERSION)
    event = {"name": name, "payload": copy.deepcopy(payload), "meta": meta_out}
    validate_event(event)
    return event


class EventBus:
    """Validates, records to the outbox, then calls subscribers in order.

    A failing subscriber is logged and does not stop the rest. Subscribing to
    "*" receives every event.
    """

    def __init__(self, outbox: Any = None) -> None:
        self.outbox = outbox
        self._subs: Dict[str, List[Handler]] = {}

    def subscribe(self, name: str, handler: Handler) -> None:
        self._subs.setdefault(name, []).append(handler)

    def unsubscribe(self, name: str, handler: Handler) -> bool:
        handlers = self._subs.get(name) or []
        if handler not in handlers:
            return False
        handlers.remove(handler)
        if not handlers:
            self._subs.pop(name, None)
        return True

    def publish(self, event: Event) -> str:
        validate_event(event)
        if self.outbox is not None:
            self.outbox.enqueue(event)
        for handler in self._subs.get(event["name"], []) + self._subs.get(ANY_EVENT, []):
            try:
                handler(event)
            except Exception:
                logger.exception("event_handler_failed name=%s event_id=%s", event["name"], event["meta"]["event_id"])
        return event["meta"]["event_id"]

    def emit(self, name: str, payload: dict, meta: dict) -> str:
        return self.publish(make_event(name, payload, meta))
