"""Record operations wired through permissions, process, derived fields and notifications.

Order for every mutation: permission check, payload validation, process
check, derived-field recompute, one transaction, then events, notification
intents and webhooks.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

import condition_eval
from app.notifications import build_intents, publish_intents
from app.records_validation import check_unique_fields, validate_record_payload
from app.stores import InMemoryRecordStore, InMemoryTxManager, MemoryAppStore
from app.webhooks import WebhookDispatcher, build_payload
from derived_fields import display_values, numeric_field_codes, recompute_derived
from event_bus import RECORD_COMMENTED, RECORD_CREATED, RECORD_DELETED, RECORD_UPDATED, EventBus, event_meta
from field_schema import FieldDefinition, FieldType, accepts_input, stores_value
from formula_eval import DEFAULT_DEPTH_LIMIT
from lookup_resolver import resolve_related_records
from permission_resolver import effective_permissions, filter_payload_for_write, mask_record
from permission_rules import Actor
from process_plan import available_actions
from process_runtime import apply_process_action, initialize_record_state
from process_store import ProcessStore


logger = logging.getLogger("dynapp.records")

Issue = Dict[str, Any]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _fail(code: str, message: str, path: str | None = None, detail: dict | None = None, warnings: List[Issue] | None = None) -> dict:
    return {"ok": False, "errors": [_issue(code, message, path, detail)], "warnings": warnings or []}


def _fail_many(errors: List[Issue], warnings: List[Issue] | None = None) -> dict:
    return {"ok": False, "errors": errors, "warnings": warnings or []}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _ok(warnings: List[Issue] | None = None, **payload: Any) -> dict:
    return {"ok": True, "errors": [], "warnings": warnings or [], **payload}


class RecordsService:
    def __init__(
        self,
        apps: MemoryAppStore,
        records: InMemoryRecordStore,
        process_store: ProcessStore,
        tx: InMemoryTxManager,
        events: EventBus,
        webhooks: WebhookDispatcher | None = None,
        notify_self: bool = False,
        formula_depth_limit: int = DEFAULT_DEPTH_LIMIT,
    ) -> None:
        self.apps = apps
        self.records = records
        self.process_store = process_store
        self.tx = tx
        self.events = events
        self.webhooks = webhooks
        self.notify_self = notify_self
        self.formula_depth_limit = formula_depth_limit

    # context helpers

    def _context(self, app_code: str) -> dict | None:
        app = self.apps.get_app(app_code)
        if app is None:
            return None
        fields: List[FieldDefinition] = self.apps.get_fields(app_code)
        active = [f for f in fields if f.is_active]
        return {
            "app": app,
            "fields": active,
            "codes": [f.field_code for f in active if stores_value(f.field_type)],
            "numeric": numeric_field_codes(active),
            "rules": self.apps.get_permissions(app_code),
            "process": self.apps.get_process(app_code),
        }

    def _permissions(self, ctx: dict, actor: Actor, record: dict | None = None):
        return effective_permissions(actor, ctx["rules"], ctx["codes"], record, ctx["numeric"])

    def _user_values(self, ctx: dict, record: dict) -> dict:
        inputs = {f.field_code for f in ctx["fields"] if accepts_input(f.field_type)}
        values = {k: v for k, v in record.items() if k in inputs}
        if "status" in record and not ctx["process"].enabled:
            values["status"] = record["status"]
        return values

    def _event_meta(self, app_code: str, actor: Actor, ctx: dict) -> dict:
        return event_meta(app_code, {"id": actor.id, "roles": list(actor.role_ids)}, ctx["rules"].rules_hash())

    def _after_commit(
        self,
        ctx: dict,
        actor: Actor,
        trigger: str,
        record: dict,
        extra: dict | None = None,
        event_name: str | None = None,
    ) -> List[str]:
        app = ctx["app"]
        meta = self._event_meta(app["code"], actor, ctx)
        event_ids: List[str] = []
        if event_name is not None:
            payload = {"app_code": app["code"], "record_id": record.get("id"), "record": record, **(extra or {})}
            event_ids.append(self.events.emit(event_name, payload, meta))
        rules = self.apps.get_notification_rules(app["code"])
        intents = build_intents(rules, trigger, record, app, actor.id, extra, self.notify_self)
        event_ids.extend(publish_intents(intents, self.events, meta))
        if self.webhooks is not None:
            payload = build_payload(trigger, app, record, record.get("id"), actor.id, extra)
            self.webhooks.fire(self.apps.get_webhooks(app["code"]), trigger, payload)
        return event_ids

    def _write_filter(self, ctx: dict, perms: Any, payload: dict) -> tuple[dict, List[Issue]]:
        warnings: List[Issue] = []
        data = dict(payload)
        status = data.pop("status", None)
        accepted, rejected = filter_payload_for_write(data, perms.fields)
        for code in rejected:
            warnings.append(_issue("FIELD_NOT_WRITABLE", f"{code} is not writable and was ignored", code))
        if status is not None:
            if ctx["process"].enabled:
                warnings.append(_issue("STATUS_MANAGED_BY_PROCESS", "status changes go through process actions", "status"))
            else:
                accepted["status"] = status
        return accepted, warnings

    def _view(self, ctx: dict, actor: Actor, record: dict) -> dict:
        perms = self._permissions(ctx, actor, record)
        masked = mask_record(record, perms.fields)
        display = {code: text for code, text in display_values(ctx["fields"], record).items() if code in masked}
        return {"record": masked, "display": display, "permissions": perms.to_dict()}

    # operations

    def create_record(self, app_code: str, actor: Actor, payload: dict) -> dict:
        ctx = self._context(app_code)
        if ctx is None:
            return _fail("APP_NOT_FOUND", "App not found", "app_code")
        if not isinstance(payload, dict):
            return _fail("INVALID_PAYLOAD", "Record data must be an object", "record")
        perms = self._permissions(ctx, actor)
        if not perms.app.can_add:
            return _fail("PERMISSION_DENIED", "Not allowed to add records", "can_add")

        accepted, warnings = self._write_filter(ctx, perms, payload)
        errors, clean = validate_record_payload(ctx["fields"], accepted, for_create=True)
        errors.extend(check_unique_fields(ctx["fields"], clean, self.records.list_records(app_code)))
        if errors:
            return _fail_many(errors, warnings)

        derived = recompute_derived(ctx["fields"], clean, self.records, None, self.formula_depth_limit)
        warnings.extend(derived["warnings"])
        values = derived["record"]
        process = ctx["process"]
        initial = process.initial_status() if process.enabled else None
        if initial is not None:
            values["status"] = initial.id

        tx = self.tx.begin()
        try:
            record = self.records.create_record(tx, app_code, values, actor.id)
            if initial is not None:
                tx.stage(lambda: initialize_record_state(process, app_code, record["id"], actor.id, self.process_store))
            tx.commit()
        except Exception as exc:
            tx.rollback()
            logger.warning("record_create_failed app=%s error=%s", app_code, exc)
            return _fail("RECORD_WRITE_FAILED", str(exc), "record", warnings=warnings)

        logger.info("record_created app=%s record_id=%s actor=%s", app_code, record["id"], actor.id)
        events = self._after_commit(ctx, actor, "record_added", record, event_name=RECORD_CREATED)
        return _ok(warnings, record_id=record["id"], events_enqueued=events, **self._view(ctx, actor, record))

    def update_record(self, app_code: str, record_id: str, actor: Actor, payload: dict) -> dict:
        ctx = self._context(app_code)
        if ctx is None:
            return _fail("APP_NOT_FOUND", "App not found", "app_code")
        existing = self.records.get_record(app_code, record_id)
        if existing is None:
            return _fail("RECORD_NOT_FOUND", "Record not found", "record_id")
        if not isinstance(payload, dict):
            return _fail("INVALID_PAYLOAD", "Record data must be an object", "record")
        perms = self._permissions(ctx, actor, existing)
        if not perms.can("edit"):
            return _fail("PERMISSION_DENIED", "Not allowed to edit this record", "can_edit", {"record_rule_id": perms.record_rule_id})

        accepted, warnings = self._write_filter(ctx, perms, payload)
        candidate = {**self._user_values(ctx, existing), **accepted}
        errors, clean = validate_record_payload(ctx["fields"], candidate, for_create=False)
        errors.extend(check_unique_fields(ctx["fields"], clean, self.records.list_records(app_code), record_id))
        if errors:
            return _fail_many(errors, warnings)

        merged = {**existing, **clean}
        derived = recompute_derived(ctx["fields"], merged, self.records, existing, self.formula_depth_limit)
        warnings.extend(derived["warnings"])
        changes = {k: v for k, v in derived["record"].items() if existing.get(k) != v}
        changes["updated_by"] = actor.id
        changes["updated_at"] = _now()

        tx = self.tx.begin()
        try:
            self.records.update_record(tx, app_code, record_id, changes)
            tx.commit()
        except Exception as exc:
            tx.rollback()
            logger.warning("record_update_failed app=%s record_id=%s error=%s", app_code, record_id, exc)
            return _fail("RECORD_WRITE_FAILED", str(exc), "record", warnings=warnings)

        record = self.records.get_record(app_code, record_id)
        logger.info("record_updated app=%s record_id=%s actor=%s changed=%s", app_code, record_id, actor.id, sorted(changes))
        events = self._after_commit(ctx, actor, "record_edited", record, event_name=RECORD_UPDATED)
        return _ok(warnings, record_id=record_id, events_enqueued=events, **self._view(ctx, actor, record))

    def delete_record(self, app_code: str, record_id: str, actor: Actor) -> dict:
        ctx = self._context(app_code)
        if ctx is None:
            return _fail("APP_NOT_FOUND", "App not found", "app_code")
        existing = self.records.get_record(app_code, record_id)
        if existing is None:
            return _fail("RECORD_NOT_FOUND", "Record not found", "record_id")
        perms = self._permissions(ctx, actor, existing)
        if not perms.can("delete"):
            return _fail("PERMISSION_DENIED", "Not allowed to delete this record", "can_delete")

        tx = self.tx.begin()
        try:
            self.records.delete_record(tx, app_code, record_id)
            tx.stage(lambda: self.process_store.delete_state(record_id))
            tx.commit()
        except Exception as exc:
            tx.rollback()
            logger.warning("record_delete_failed app=%s record_id=%s error=%s", app_code, record_id, exc)
            return _fail("RECORD_WRITE_FAILED", str(exc), "record")

        logger.info("record_deleted app=%s record_id=%s actor=%s", app_code, record_id, actor.id)
        events = self._after_commit(ctx, actor, "record_deleted", existing, event_name=RECORD_DELETED)
        return _ok(record_id=record_id, events_enqueued=events)

    def get_record(self, app_code: str, record_id: str, actor: Actor) -> dict:
        ctx = self._context(app_code)
        if ctx is None:
            return _fail("APP_NOT_FOUND", "App not found", "app_code")
        record = self.records.get_record(app_code, record_id)
        if record is None:
            return _fail("RECORD_NOT_FOUND", "Record not found", "record_id")
        view = self._view(ctx, actor, record)
        if not view["permissions"]["record"]["can_view"]:
            return _fail("PERMISSION_DENIED", "Not allowed to view this record", "can_view")

        related: Dict[str, list] = {}
        warnings: List[Issue] = []
        for defn in ctx["fields"]:
            if defn.field_type is not FieldType.RELATED_RECORDS or view["permissions"]["fields"].get(defn.field_code) == "hidden":
                continue
            result = resolve_related_records(defn.related_config(), record, self.records)
            if result.ok:
                related[defn.field_code] = result.records
            else:
                warnings.append(_issue(result.error, result.message, defn.field_code))

        process = ctx["process"]
        state = self.process_store.get_state(record_id) if process.enabled else None
        actions = [
            {"id": a.id, "name": a.name, "to_status_id": a.to_status_id}
            for a in available_actions(process, state, actor.id, record)
        ]
        return _ok(
            warnings,
            record_id=record_id,
            related=related,
            process_state=state,
            available_actions=actions,
            comments=self.records.list_comments(record_id),
            **view,
        )

    def list_records(self, app_code: str, actor: Actor, filter: Any = None) -> dict:
        ctx = self._context(app_code)
        if ctx is None:
            return _fail("APP_NOT_FOUND", "App not found", "app_code")
        perms = self._permissions(ctx, actor)
        if not perms.app.can_view:
            return _fail("PERMISSION_DENIED", "Not allowed to view records", "can_view")
        try:
            group = condition_eval.parse_condition_group(filter) if filter is not None else None
        except condition_eval.ConditionSchemaError as exc:
            return _fail(exc.code, exc.message, "filter")
        items = []
        for record in self.records.list_records(app_code):
            view = self._view(ctx, actor, record)
            if not view["permissions"]["record"]["can_view"]:
                continue
            # filters see only what the actor may read
            if group is not None and not condition_eval.matches(group, view["record"], ctx["numeric"]):
                continue
            items.append({"record": view["record"], "display": view["display"]})
        return _ok(records=items, total=len(items))

    def add_comment(self, app_code: str, record_id: str, actor: Actor, body: str) -> dict:
        ctx = self._context(app_code)
        if ctx is None:
            return _fail("APP_NOT_FOUND", "App not found", "app_code")
        record = self.records.get_record(app_code, record_id)
        if record is None:
            return _fail("RECORD_NOT_FOUND", "Record not found", "record_id")
        if not isinstance(body, str) or not body.strip():
            return _fail("COMMENT_EMPTY", "Comment body is required", "body")
        perms = self._permissions(ctx, actor, record)
        if not perms.can("view"):
            return _fail("PERMISSION_DENIED", "Not allowed to comment on this record", "can_view")

        tx = self.tx.begin()
        try:
            comment = self.records.add_comment(tx, app_code, record_id, body.strip(), actor.id)
            tx.commit()
        except Exception as exc:
            tx.rollback()
            return _fail("RECORD_WRITE_FAILED", str(exc), "comment")
        events = self._after_commit(ctx, actor, "comment_added", record, {"comment": comment["body"]}, event_name=RECORD_COMMENTED)
        return _ok(comment=comment, events_enqueued=events)

    def process_action(
        self,
        app_code: str,
        record_id: str,
        actor: Actor,
        action_id: str,
        comment: str | None = None,
        assignees: List[str] | None = None,
    ) -> dict:
        ctx = self._context(app_code)
        if ctx is None:
            return _fail("APP_NOT_FOUND", "App not found", "app_code")
        record = self.records.get_record(app_code, record_id)
        if record is None:
            return _fail("RECORD_NOT_FOUND", "Record not found", "record_id")
        perms = self._permissions(ctx, actor, record)
        if not perms.can("view"):
            return _fail("PERMISSION_DENIED", "Not allowed to act on this record", "can_view")

        process = ctx["process"]
        run_ctx = {
            "actor": {"id": actor.id, "roles": list(actor.role_ids)},
            "comment": comment,
            "assignees": assignees,
            "rules_hash": ctx["rules"].rules_hash(),
        }
        deps = {"store": self.process_store, "records": self.records, "tx": self.tx, "events": self.events}
        result = apply_process_action(process, app_code, record_id, action_id, run_ctx, deps)
        if not result["ok"]:
            return result

        updated = result["record"]
        to_status = process.status(result["plan"]["to_status_id"])
        extra = {"new_status": to_status.name if to_status else result["plan"]["to_status_id"]}
        if comment:
            extra["comment"] = comment
        events = result["events_enqueued"] + self._after_commit(ctx, actor, "status_changed", updated, extra)
        return _ok(
            result["warnings"],
            record_id=record_id,
            state=result["state"],
            plan=result["plan"],
            events_enqueued=events,
            **self._view(ctx, actor, updated),
        )
