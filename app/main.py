"""FastAPI app for the dynamic application runtime."""

from __future__ import annotations

import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import config
from app import schema_service
from app.records_service import RecordsService
from app.stores import InMemoryRecordStore, InMemoryTxManager, MemoryAppStore
from app.webhooks import WebhookDispatcher
from derived_fields import numeric_field_codes
from event_bus import EventBus
from formula_eval import evaluate, format_value, round_value
from outbox import Outbox
from permission_resolver import authorize, effective_permissions
from permission_rules import Actor
from process_store import ProcessStore


config.configure_logging()
logger = logging.getLogger("dynapp.api")

app = FastAPI(title="Dynamic Apps")

_tx = InMemoryTxManager()
_apps = MemoryAppStore()
_records = InMemoryRecordStore(_tx.lock)
_process_store = ProcessStore(_tx.lock)
_outbox = Outbox(_tx.lock)
_events = EventBus(_outbox)
_webhook_pool = ThreadPoolExecutor(max_workers=config.WEBHOOK_WORKERS, thread_name_prefix="dynapp-webhooks")
_webhooks = WebhookDispatcher(
    timeout=config.WEBHOOK_TIMEOUT_S,
    enabled=config.WEBHOOKS_ENABLED,
    submit=_webhook_pool.submit,
)
_service = RecordsService(
    _apps,
    _records,
    _process_store,
    _tx,
    _events,
    webhooks=_webhooks,
    notify_self=config.NOTIFY_SELF,
    formula_depth_limit=config.FORMULA_DEPTH_LIMIT,
)

_STATUS_BY_CODE = {
    "APP_NOT_FOUND": 404,
    "RECORD_NOT_FOUND": 404,
    "PERMISSION_DENIED": 403,
    "AUTH_REQUIRED": 401,
}


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _result_response(result: dict, status: int = 200) -> JSONResponse:
    if not result.get("ok"):
        errors = result.get("errors") or []
        code = errors[0]["code"] if errors else ""
        status = _STATUS_BY_CODE.get(code, 400)
    return JSONResponse(jsonable_encoder(result), status_code=status)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


def _header_list(request: Request, name: str) -> list[str]:
    raw = request.headers.get(name) or ""
    return [part.strip() for part in raw.split(",") if part.strip()]


def _resolve_actor(request: Request) -> Actor | JSONResponse:
    actor_id = (request.headers.get("X-Actor-Id") or "").strip()
    if not actor_id:
        return _error_response("AUTH_REQUIRED", "Authenticated user required", status=401)
    return Actor.from_dict(
        {
            "id": actor_id,
            "roles": _header_list(request, "X-Actor-Roles"),
            "org_ids": _header_list(request, "X-Actor-Orgs"),
            "org_ancestor_ids": _header_list(request, "X-Actor-Org-Ancestors"),
        }
    )


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except Exception:
        return {}


def _require_manage(actor: Actor, app_code: str) -> JSONResponse | None:
    if _apps.get_app(app_code) is None:
        return _error_response("APP_NOT_FOUND", "App not found", "app_code", status=404)
    if not authorize(actor, _apps.get_permissions(app_code), "manage"):
        return _error_response("PERMISSION_DENIED", "App management requires can_manage", "can_manage", status=403)
    return None


def _require_view(actor: Actor, app_code: str) -> JSONResponse | None:
    if _apps.get_app(app_code) is None:
        return _error_response("APP_NOT_FOUND", "App not found", "app_code", status=404)
    if not authorize(actor, _apps.get_permissions(app_code), "view"):
        return _error_response("PERMISSION_DENIED", "App access requires can_view", "can_view", status=403)
    return None



class ActorContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path in {"/health"}:
            return await call_next(request)
        actor = _resolve_actor(request)
        if isinstance(actor, JSONResponse):
            return actor
        request.state.actor = actor
        return await call_next(request)


app.add_middleware(ActorContextMiddleware)

@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.post("/apps")
async def create_app(request: Request):
    actor: Actor = request.state.actor
    if not actor.is_admin:
        return _error_response("PERMISSION_DENIED", "Only admins create apps", status=403)
    body = await _json_body(request)
    code = body.get("code") if isinstance(body, dict) else None
    if not isinstance(code, str) or not code.strip():
        return _error_response("APP_CODE_REQUIRED", "code is required", "code")
    if _apps.get_app(code) is not None:
        return _error_response("APP_CODE_DUPLICATE", "App code already exists", "code")
    created = _apps.create_app(code, body.get("name"))
    _records.register_app(code)
    logger.info("app_created code=%s actor=%s", code, actor.id)
    return _ok_response({"app": created}, status=201)


@app.get("/apps")
async def list_apps(request: Request):
    actor: Actor = request.state.actor
    visible = [a for a in _apps.list_apps() if authorize(actor, _apps.get_permissions(a["code"]), "view")]
    return _ok_response({"apps": visible})


@app.put("/apps/{app_code}/fields")
async def put_fields(app_code: str, request: Request):
    actor: Actor = request.state.actor
    denied = _require_manage(actor, app_code)
    if denied is not None:
        return denied
    body = await _json_body(request)
    fields = body.get("fields") if isinstance(body, dict) else body
    return _result_response(schema_service.save_fields(_apps, app_code, fields if isinstance(fields, list) else []))


@app.get("/apps/{app_code}/fields")
async def get_fields(app_code: str, request: Request):
    actor: Actor = request.state.actor
    denied = _require_view(actor, app_code)
    if denied is not None:
        return denied
    return _ok_response({"fields": [f.to_dict() for f in _apps.get_fields(app_code)]})


@app.put("/apps/{app_code}/permissions")
async def put_permissions(app_code: str, request: Request):
    actor: Actor = request.state.actor
    denied = _require_manage(actor, app_code)
    if denied is not None:
        return denied
    body = await _json_body(request)
    return _result_response(schema_service.save_permissions(_apps, app_code, body if isinstance(body, dict) else {}))


@app.post("/apps/{app_code}/permissions/{table}/order")
async def reorder_permissions(app_code: str, table: str, request: Request):
    actor: Actor = request.state.actor
    denied = _require_manage(actor, app_code)
    if denied is not None:
        return denied
    body = await _json_body(request)
    ordered = body.get("ordered_ids") if isinstance(body, dict) else None
    return _result_response(schema_service.reorder_rules(_apps, app_code, table, ordered if isinstance(ordered, list) else []))


@app.get("/apps/{app_code}/permissions/effective")
async def get_effective_permissions(app_code: str, request: Request):
    actor: Actor = request.state.actor
    if _apps.get_app(app_code) is None:
        return _error_response("APP_NOT_FOUND", "App not found", "app_code", status=404)
    record_id = request.query_params.get("record_id")
    record = _records.get_record(app_code, record_id) if record_id else None
    if record_id and record is None:
        return _error_response("RECORD_NOT_FOUND", "Record not found", "record_id", status=404)
    fields = [f for f in _apps.get_fields(app_code) if f.is_active]
    perms = effective_permissions(
        actor,
        _apps.get_permissions(app_code),
        schema_service.field_codes(fields),
        record,
        numeric_field_codes(fields),
    )
    return _ok_response({"permissions": perms.to_dict()})


@app.put("/apps/{app_code}/process")
async def put_process(app_code: str, request: Request):
    actor: Actor = request.state.actor
    denied = _require_manage(actor, app_code)
    if denied is not None:
        return denied
    body = await _json_body(request)
    return _result_response(schema_service.save_process(_apps, app_code, body))


@app.put("/apps/{app_code}/notifications")
async def put_notifications(app_code: str, request: Request):
    actor: Actor = request.state.actor
    denied = _require_manage(actor, app_code)
    if denied is not None:
        return denied
    body = await _json_body(request)
    rules = body.get("rules") if isinstance(body, dict) else body
    return _result_response(schema_service.save_notification_rules(_apps, app_code, rules if isinstance(rules, list) else []))


@app.put("/apps/{app_code}/webhooks")
async def put_webhooks(app_code: str, request: Request):
    actor: Actor = request.state.actor
    denied = _require_manage(actor, app_code)
    if denied is not None:
        return denied
    body = await _json_body(request)
    hooks = body.get("webhooks") if isinstance(body, dict) else body
    return _result_response(schema_service.save_webhooks(_apps, app_code, hooks if isinstance(hooks, list) else []))


@app.post("/apps/{app_code}/formula/evaluate")
async def evaluate_formula(app_code: str, request: Request):
    actor: Actor = request.state.actor
    denied = _require_view(actor, app_code)
    if denied is not None:
        return denied
    body = await _json_body(request)
    if not isinstance(body, dict) or not isinstance(body.get("formula"), str):
        return _error_response("FORMULA_REQUIRED", "formula is required", "formula")
    decimals = body.get("decimals", 2)
    if isinstance(decimals, bool) or not isinstance(decimals, int):
        decimals = 2
    fields = [f for f in _apps.get_fields(app_code) if f.is_active]
    result = evaluate(
        body["formula"],
        body.get("record") if isinstance(body.get("record"), dict) else {},
        numeric_field_codes(fields) or None,
        config.FORMULA_DEPTH_LIMIT,
    )
    if not result.ok:
        return _error_response(result.error.code, result.error.message, result.error.path)
    value = round_value(result.value, decimals)
    display = format_value(value, body.get("format") or "number", decimals)
    return _ok_response({"value": value, "display": display}, warnings=result.warnings)


@app.post("/apps/{app_code}/records")
async def create_record(app_code: str, request: Request):
    actor: Actor = request.state.actor
    body = await _json_body(request)
    data = body.get("record") if isinstance(body, dict) and "record" in body else body
    return _result_response(_service.create_record(app_code, actor, data), status=201)


@app.get("/apps/{app_code}/records")
async def list_records(app_code: str, request: Request):
    actor: Actor = request.state.actor
    return _result_response(_service.list_records(app_code, actor))


@app.post("/apps/{app_code}/records/search")
async def search_records(app_code: str, request: Request):
    actor: Actor = request.state.actor
    body = await _json_body(request)
    return _result_response(_service.list_records(app_code, actor, body.get("filter") if isinstance(body, dict) else None))


@app.get("/apps/{app_code}/records/{record_id}")
async def get_record(app_code: str, record_id: str, request: Request):
    actor: Actor = request.state.actor
    return _result_response(_service.get_record(app_code, record_id, actor))


@app.put("/apps/{app_code}/records/{record_id}")
async def update_record(app_code: str, record_id: str, request: Request):
    actor: Actor = request.state.actor
    body = await _json_body(request)
    data = body.get("record") if isinstance(body, dict) and "record" in body else body
    return _result_response(_service.update_record(app_code, record_id, actor, data))


@app.delete("/apps/{app_code}/records/{record_id}")
async def delete_record(app_code: str, record_id: str, request: Request):
    actor: Actor = request.state.actor
    return _result_response(_service.delete_record(app_code, record_id, actor))


@app.post("/apps/{app_code}/records/{record_id}/comments")
async def add_comment(app_code: str, record_id: str, request: Request):
    actor: Actor = request.state.actor
    body = await _json_body(request)
    text = body.get("body") if isinstance(body, dict) else None
    return _result_response(_service.add_comment(app_code, record_id, actor, text), status=201)


@app.post("/apps/{app_code}/records/{record_id}/process-action")
async def process_action(app_code: str, record_id: str, request: Request):
    actor: Actor = request.state.actor
    body = await _json_body(request)
    if not isinstance(body, dict) or not isinstance(body.get("action_id"), str):
        return _error_response("ACTION_REQUIRED", "action_id is required", "action_id")
    assignees = body.get("assignees")
    return _result_response(
        _service.process_action(
            app_code,
            record_id,
            actor,
            body["action_id"],
            comment=body.get("comment"),
            assignees=assignees if isinstance(assignees, list) else None,
        )
    )


@app.get("/apps/{app_code}/outbox")
async def list_outbox(app_code: str, request: Request):
    actor: Actor = request.state.actor
    denied = _require_manage(actor, app_code)
    if denied is not None:
        return denied
    name = request.query_params.get("name") or None
    return _ok_response({"events": _outbox.pending(name, app_code)})


@app.post("/apps/{app_code}/outbox/{event_id}/ack")
async def ack_outbox_event(app_code: str, event_id: str, request: Request):
    actor: Actor = request.state.actor
    denied = _require_manage(actor, app_code)
    if denied is not None:
        return denied
    if not any(e["meta"]["event_id"] == event_id for e in _outbox.pending(app_code=app_code)) or not _outbox.ack(event_id):
        return _error_response("EVENT_NOT_FOUND", "Event not pending", "event_id", status=404)
    return _ok_response({"event_id": event_id})
