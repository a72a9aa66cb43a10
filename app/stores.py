"""In-memory stores and a staged transaction standing in for persistence."""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Dict, List

import condition_eval
from permission_resolver import PermissionRuleSet
from process_plan import ProcessDefinition


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class TxClosedError(RuntimeError):
    pass


class InMemoryTx:
    """Collects writes and applies them together at commit.

    Ops run in staging order under the shared lock; the first one that raises
    stops the rest, so stage the write most likely to fail first.
    """

    def __init__(self, lock: threading.RLock) -> None:
        self._lock = lock
        self._ops: List[Callable[[], None]] = []
        self.committed = False
        self.rolled_back = False

    def stage(self, op: Callable[[], None]) -> None:
        if self.committed or self.rolled_back:
            raise TxClosedError("transaction already closed")
        self._ops.append(op)

    def commit(self) -> None:
        if self.committed or self.rolled_back:
            raise TxClosedError("transaction already closed")
        with self._lock:
            for op in self._ops:
                op()
        self._ops.clear()
        self.committed = True

    def rollback(self) -> None:
        self._ops.clear()
        self.rolled_back = True


class InMemoryTxManager:
    def __init__(self) -> None:
        self.lock = threading.RLock()

    def begin(self) -> InMemoryTx:
        return InMemoryTx(self.lock)


class InMemoryRecordStore:
    """Records per app code; writes go through a transaction."""

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock or threading.RLock()
        self._records: Dict[str, Dict[str, dict]] = {}
        self._counters: Dict[str, int] = {}
        self._comments: Dict[str, List[dict]] = {}

    def register_app(self, app_code: str) -> None:
        with self._lock:
            self._records.setdefault(app_code, {})
            self._counters.setdefault(app_code, 0)

    def _app(self, app_code: str) -> Dict[str, dict]:
        records = self._records.get(app_code)
        if records is None:
            raise KeyError(f"unknown app: {app_code}")
        return records

    def create_record(self, tx: InMemoryTx, app_code: str, values: dict, actor_id: str | None = None) -> dict:
        records = self._app(app_code)
        now = _now()
        with self._lock:
            self._counters[app_code] += 1
            number = self._counters[app_code]
        record = copy.deepcopy(values)
        record.update(
            {
                "id": str(uuid.uuid4()),
                "record_number": number,
                "created_by": actor_id,
                "created_at": now,
                "updated_by": actor_id,
                "updated_at": now,
            }
        )
        staged = copy.deepcopy(record)
        tx.stage(lambda: records.__setitem__(staged["id"], staged))
        return copy.deepcopy(record)

    def update_record(self, tx: InMemoryTx, app_code: str, record_id: str, changes: dict) -> None:
        records = self._app(app_code)
        if record_id not in records:
            raise KeyError("record not found")
        staged = copy.deepcopy(changes)

        def _apply() -> None:
            if record_id not in records:
                raise KeyError("record not found")
            records[record_id].update(staged)

        tx.stage(_apply)

    def delete_record(self, tx: InMemoryTx, app_code: str, record_id: str) -> None:
        records = self._app(app_code)
        if record_id not in records:
            raise KeyError("record not found")
        tx.stage(lambda: records.pop(record_id, None))

    def get_record(self, app_code: str, record_id: str) -> dict | None:
        with self._lock:
            rec = self._records.get(app_code, {}).get(record_id)
            return copy.deepcopy(rec) if rec else None

    def list_records(self, app_code: str, filter: dict | None = None) -> list[dict]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in sorted(self._app(app_code).values(), key=lambda r: r.get("record_number") or 0)]
        if filter:
            rows = [r for r in rows if condition_eval.matches(filter, r)]
        return rows

    def add_comment(self, tx: InMemoryTx, app_code: str, record_id: str, body: str, actor_id: str | None) -> dict:
        if record_id not in self._app(app_code):
            raise KeyError("record not found")
        comment = {"id": str(uuid.uuid4()), "record_id": record_id, "body": body, "created_by": actor_id, "created_at": _now()}
        staged = copy.deepcopy(comment)
        tx.stage(lambda: self._comments.setdefault(record_id, []).append(staged))
        return comment

    def list_comments(self, record_id: str) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(c) for c in self._comments.get(record_id, [])]


class MemoryAppStore:
    """App definitions: fields, permission rules, process, notifications, webhooks."""

    def __init__(self) -> None:
        self._apps: Dict[str, dict] = {}

    def create_app(self, code: str, name: str | None = None, app_id: str | None = None) -> dict:
        app = {
            "id": app_id or str(uuid.uuid4()),
            "code": code,
            "name": name or code,
            "fields": [],
            "permissions": PermissionRuleSet(),
            "process": ProcessDefinition(),
            "notification_rules": [],
            "webhooks": [],
        }
        self._apps[code] = app
        return self.get_app(code)

    def _get(self, code: str) -> dict:
        app = self._apps.get(code)
        if app is None:
            raise KeyError(f"unknown app: {code}")
        return app

    def get_app(self, code: str) -> dict | None:
        app = self._apps.get(code)
        if app is None:
            return None
        return {"id": app["id"], "code": app["code"], "name": app["name"]}

    def list_apps(self) -> list[dict]:
        return [self.get_app(code) for code in sorted(self._apps)]

    def get_fields(self, code: str) -> list:
        return copy.deepcopy(self._get(code)["fields"])

    def set_fields(self, code: str, fields: list) -> None:
        self._get(code)["fields"] = copy.deepcopy(fields)

    def get_permissions(self, code: str) -> PermissionRuleSet:
        return self._get(code)["permissions"]

    def set_permissions(self, code: str, rule_set: PermissionRuleSet) -> None:
        self._get(code)["permissions"] = rule_set

    def get_process(self, code: str) -> ProcessDefinition:
        return copy.deepcopy(self._get(code)["process"])

    def set_process(self, code: str, definition: ProcessDefinition) -> None:
        self._get(code)["process"] = copy.deepcopy(definition)

    def get_notification_rules(self, code: str) -> list:
        return copy.deepcopy(self._get(code)["notification_rules"])

    def set_notification_rules(self, code: str, rules: list) -> None:
        self._get(code)["notification_rules"] = copy.deepcopy(rules)

    def get_webhooks(self, code: str) -> list:
        return copy.deepcopy(self._get(code)["webhooks"])

    def set_webhooks(self, code: str, webhooks: list) -> None:
        self._get(code)["webhooks"] = copy.deepcopy(webhooks)
