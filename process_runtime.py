"""Process runtime (single action, transactional with the record status)."""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from event_bus import STATUS_CHANGED, event_meta
from process_plan import ProcessDefinition, plan_transition


logger = logging.getLogger("dynapp.process")

Issue = Dict[str, Any]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _fail(errors: List[Issue], warnings: List[Issue] | None = None) -> dict:
    return {
        "ok": False,
        "errors": errors,
        "warnings": warnings or [],
        "state": None,
        "record": None,
        "plan": None,
        "events_enqueued": [],
    }


def initialize_record_state(
    definition: ProcessDefinition,
    app_code: str,
    record_id: str,
    actor_id: str | None,
    store: Any,
) -> dict | None:
    """Give a new record the initial status; None when process management is off."""
    if not definition.enabled:
        return None
    initial = definition.initial_status()
    if initial is None:
        return None
    return store.create_state(app_code, record_id, initial.id, actor_id)


def apply_process_action(
    definition: ProcessDefinition,
    app_code: str,
    record_id: str,
    action_id: str,
    ctx: dict,
    deps: dict,
) -> dict:
    """Validate and apply one action.

    The state change and the record's status field are staged in one
    transaction; readers see either both or neither. The status event is
    published only after commit.
    """
    store = deps.get("store")
    records = deps.get("records")
    tx_mgr = deps.get("tx")
    events = deps.get("events")
    if store is None or records is None or tx_mgr is None or events is None:
        return _fail([_issue("PROCESS_DEPS_MISSING", "Required deps missing", "$")])

    record = records.get_record(app_code, record_id)
    if record is None:
        return _fail([_issue("RECORD_NOT_FOUND", "Record not found", "record_id", {"record_id": record_id})])

    actor = ctx.get("actor") or {}
    actor_id = actor.get("id") if isinstance(actor, dict) else None
    state = store.get_state(record_id)

    planned = plan_transition(definition, state, action_id, actor_id, record)
    if not planned.get("ok"):
        err = planned["errors"][0]
        logger.info("process_rejected app=%s record_id=%s action=%s code=%s", app_code, record_id, action_id, err["code"])
        return _fail(planned["errors"], planned.get("warnings"))
    plan = planned["plan"]

    if state is None:
        state = {
            "record_id": record_id,
            "app_code": app_code,
            "current_status_id": plan["from_status_id"],
            "assignees": [],
            "created_at": None,
            "updated_at": None,
            "history": [],
        }
    new_state = copy.deepcopy(state)
    now = ctx.get("now") or _now()
    new_state["current_status_id"] = plan["to_status_id"]
    new_state["assignees"] = list(ctx.get("assignees") or []) if plan["needs_assignment"] else []
    new_state["updated_at"] = now
    if not new_state.get("created_at"):
        new_state["created_at"] = now
    new_state["history"].append(
        {
            "at": now,
            "actor": actor_id,
            "action_id": plan["action_id"],
            "from_status_id": plan["from_status_id"],
            "to_status_id": plan["to_status_id"],
            "comment": ctx.get("comment"),
            "detail": None,
        }
    )

    tx = tx_mgr.begin()
    try:
        records.update_record(
            tx,
            app_code,
            record_id,
            {"status": plan["to_status_id"], "updated_by": actor_id, "updated_at": now},
        )
        tx.stage(lambda: store.put_state(new_state))
        tx.commit()
    except Exception as exc:
        tx.rollback()
        logger.warning("process_exec_failed app=%s record_id=%s action=%s error=%s", app_code, record_id, action_id, exc)
        return _fail([_issue("PROCESS_EXEC_FAILED", str(exc), "$")])

    logger.info(
        "process_transition app=%s record_id=%s action=%s from=%s to=%s actor=%s",
        app_code,
        record_id,
        plan["action_id"],
        plan["from_status_id"],
        plan["to_status_id"],
        actor_id,
    )

    event_id = events.emit(
        STATUS_CHANGED,
        {
            "app_code": app_code,
            "record_id": record_id,
            "action_id": plan["action_id"],
            "from_status_id": plan["from_status_id"],
            "to_status_id": plan["to_status_id"],
            "comment": ctx.get("comment"),
        },
        event_meta(app_code, actor if isinstance(actor, dict) and actor else None, ctx.get("rules_hash"), ctx.get("trace_id")),
    )

    return {
        "ok": True,
        "errors": [],
        "warnings": planned.get("warnings", []),
        "state": new_state,
        "record": records.get_record(app_code, record_id),
        "plan": plan,
        "events_enqueued": [event_id],
    }


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
