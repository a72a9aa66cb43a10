"""In-memory per-record process state store."""

from __future__ import annotations

import copy
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List


ProcessState = Dict[str, Any]


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ProcessStore:
    """Process state per record id.

    Share the transaction manager's lock so reads never interleave with a
    commit.
    """

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock or threading.RLock()
        self._states: Dict[str, ProcessState] = {}

    def create_state(
        self,
        app_code: str,
        record_id: str,
        initial_status_id: str,
        actor_id: str | None,
        assignees: List[str] | None = None,
    ) -> ProcessState:
        now = _now()
        state = {
            "record_id": record_id,
            "app_code": app_code,
            "current_status_id": initial_status_id,
            "assignees": list(assignees or []),
            "created_at": now,
            "updated_at": now,
            "history": [
                {
                    "at": now,
                    "actor": actor_id,
                    "action_id": None,
                    "from_status_id": None,
                    "to_status_id": initial_status_id,
                    "comment": None,
                    "detail": {"reason": "init"},
                }
            ],
        }
        with self._lock:
            self._states[record_id] = copy.deepcopy(state)
        return copy.deepcopy(state)

    def get_state(self, record_id: str) -> ProcessState | None:
        with self._lock:
            state = self._states.get(record_id)
            return copy.deepcopy(state) if state is not None else None

    def put_state(self, state: ProcessState) -> None:
        if not isinstance(state, dict) or "record_id" not in state:
            raise ValueError("Invalid process state")
        with self._lock:
            self._states[state["record_id"]] = copy.deepcopy(state)

    def delete_state(self, record_id: str) -> bool:
        with self._lock:
            return self._states.pop(record_id, None) is not None

    def set_assignees(self, record_id: str, assignees: List[str]) -> ProcessState:
        with self._lock:
            state = self._states.get(record_id)
            if state is None:
                raise KeyError("Process state not found")
            state["assignees"] = list(assignees)
            state["updated_at"] = _now()
            return copy.deepcopy(state)

    def list_states(self, app_code: str, status_id: str | None = None) -> list[ProcessState]:
        with self._lock:
            states = list(self._states.values())
            return [
                copy.deepcopy(s)
                for s in states
                if s.get("app_code") == app_code and (status_id is None or s.get("current_status_id") == status_id)
            ]
