"""Process management planning: status graph checks and guarded transitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

import condition_eval


Issue = Dict[str, Any]
ProcessPlan = Dict[str, Any]

ASSIGNEE_TYPES = {"ONE", "ALL", "ANY"}
ACTION_TYPES = {"NORMAL", "NON_ASSIGNEE"}


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}



def _display_order(value: Any) -> int | None:
    if value is None:
        return 0
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


@dataclass
class ProcessStatus:
    id: str
    name: str = ""
    is_initial: bool = False
    is_final: bool = False
    assignee_type: str | None = None
    display_order: int = 0


@dataclass
class ProcessAction:
    id: str
    from_status_id: str
    to_status_id: str
    name: str = ""
    action_type: str = "NORMAL"
    filter_condition: dict | None = None
    display_order: int = 0


@dataclass
class ProcessDefinition:
    enabled: bool = False
    statuses: List[ProcessStatus] = field(default_factory=list)
    actions: List[ProcessAction] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict | None) -> "ProcessDefinition":
        """Lenient parse; shape problems are reported by validate_process_definition."""
        data = data or {}
        statuses = [
            ProcessStatus(
                id=str(s.get("id")),
                name=str(s.get("name") or ""),
                is_initial=bool(s.get("is_initial")),
                is_final=bool(s.get("is_final")),
                assignee_type=s.get("assignee_type"),
                display_order=_display_order(s.get("display_order")) or 0,
            )
            for s in data.get("statuses") or []
            if isinstance(s, dict)
        ]
        actions = [
            ProcessAction(
                id=str(a.get("id")),
                from_status_id=str(a.get("from_status_id")),
                to_status_id=str(a.get("to_status_id")),
                name=str(a.get("name") or ""),
                action_type=a.get("action_type") or "NORMAL",
                filter_condition=a.get("filter_condition"),
                display_order=_display_order(a.get("display_order")) or 0,
            )
            for a in data.get("actions") or []
            if isinstance(a, dict)
        ]
        return cls(bool(data.get("enabled")), statuses, actions)

    def status(self, status_id: str | None) -> ProcessStatus | None:
        for status in self.statuses:
            if status.id == status_id:
                return status
        return None

    def action(self, action_id: str | None) -> ProcessAction | None:
        for action in self.actions:
            if action.id == action_id:
                return action
        return None

    def initial_status(self) -> ProcessStatus | None:
        initial = [s for s in self.statuses if s.is_initial]
        return initial[0] if len(initial) == 1 else None


def validate_process_definition(definition: Any) -> List[Issue]:
    """Save-time graph checks. A disabled definition is still validated."""
    errors: List[Issue] = []
    if isinstance(definition, dict):
        raw_statuses = definition.get("statuses")
        raw_actions = definition.get("actions")
        if raw_statuses is not None and not isinstance(raw_statuses, list):
            return [_issue("PROCESS_DEFINITION_INVALID", "statuses must be list", "$.statuses")]
        if raw_actions is not None and not isinstance(raw_actions, list):
            return [_issue("PROCESS_DEFINITION_INVALID", "actions must be list", "$.actions")]
        for idx, item in enumerate(raw_statuses or []):
            if not isinstance(item, dict) or not isinstance(item.get("id"), str) or not item.get("id"):
                errors.append(_issue("PROCESS_DEFINITION_INVALID", "status.id must be non-empty string", f"$.statuses[{idx}].id"))
            elif _display_order(item.get("display_order")) is None:
                errors.append(_issue("PROCESS_DEFINITION_INVALID", "display_order must be an integer", f"$.statuses[{idx}].display_order"))
        for idx, item in enumerate(raw_actions or []):
            if not isinstance(item, dict) or not isinstance(item.get("id"), str) or not item.get("id"):
                errors.append(_issue("PROCESS_DEFINITION_INVALID", "action.id must be non-empty string", f"$.actions[{idx}].id"))
            elif _display_order(item.get("display_order")) is None:
                errors.append(_issue("PROCESS_DEFINITION_INVALID", "display_order must be an integer", f"$.actions[{idx}].display_order"))
        if errors:
            return errors
        defn = ProcessDefinition.from_dict(definition)
    elif isinstance(definition, ProcessDefinition):
        defn = definition
    else:
        return [_issue("PROCESS_DEFINITION_INVALID", "definition must be object", "$")]

    status_ids = [s.id for s in defn.statuses]
    if len(set(status_ids)) != len(status_ids):
        errors.append(_issue("PROCESS_DEFINITION_INVALID", "status ids must be unique", "$.statuses"))

    initial = [s.id for s in defn.statuses if s.is_initial]
    if defn.statuses and len(initial) != 1:
        errors.append(
            _issue(
                "PROCESS_INITIAL_STATUS_INVALID",
                "exactly one status must be initial",
                "$.statuses",
                {"initial": initial},
            )
        )
    if defn.enabled and not defn.statuses:
        errors.append(_issue("PROCESS_INITIAL_STATUS_INVALID", "an enabled process needs statuses", "$.statuses"))

    for idx, status in enumerate(defn.statuses):
        if status.assignee_type is not None and status.assignee_type not in ASSIGNEE_TYPES:
            errors.append(
                _issue("PROCESS_DEFINITION_INVALID", "assignee_type must be ONE, ALL, ANY or null", f"$.statuses[{idx}].assignee_type")
            )
        if status.is_final and status.assignee_type is not None:
            errors.append(
                _issue(
                    "PROCESS_FINAL_STATUS_ASSIGNEE",
                    "a final status cannot have an assignee",
                    f"$.statuses[{idx}].assignee_type",
                    {"status_id": status.id},
                )
            )

    action_ids = [a.id for a in defn.actions]
    if len(set(action_ids)) != len(action_ids):
        errors.append(_issue("PROCESS_DEFINITION_INVALID", "action ids must be unique", "$.actions"))

    known = set(status_ids)
    for idx, action in enumerate(defn.actions):
        if action.from_status_id not in known:
            errors.append(_issue("PROCESS_DEFINITION_INVALID", "action.from_status_id unknown status", f"$.actions[{idx}].from_status_id"))
        if action.to_status_id not in known:
            errors.append(_issue("PROCESS_DEFINITION_INVALID", "action.to_status_id unknown status", f"$.actions[{idx}].to_status_id"))
        if action.action_type not in ACTION_TYPES:
            errors.append(_issue("PROCESS_DEFINITION_INVALID", "action_type must be NORMAL or NON_ASSIGNEE", f"$.actions[{idx}].action_type"))
        if action.filter_condition is not None:
            try:
                condition_eval.parse_condition_group(action.filter_condition)
            except condition_eval.ConditionSchemaError as exc:
                errors.append(_issue(exc.code, exc.message, f"$.actions[{idx}].filter_condition"))
    return errors


def current_status_id(definition: ProcessDefinition, state: dict | None) -> str | None:
    """Stored status, or the initial status for records that have no state yet."""
    if state and state.get("current_status_id"):
        return state["current_status_id"]
    initial = definition.initial_status()
    return initial.id if initial else None


def _is_assignee(state: dict | None, actor_id: str | None) -> bool:
    if not state or actor_id is None:
        return False
    return actor_id in (state.get("assignees") or [])


def _reject(code: str, message: str, path: str, detail: dict | None = None) -> dict:
    return {"ok": False, "errors": [_issue(code, message, path, detail)], "warnings": [], "plan": None}


def plan_transition(
    definition: ProcessDefinition,
    state: dict | None,
    action_id: str,
    actor_id: str | None,
    record: dict | None = None,
) -> dict:
    """Authorize one action against the record's current status.

    Never mutates anything; a rejection carries exactly one reason code.
    """
    if not definition.enabled:
        return _reject("PROCESS_DISABLED", "Process management is disabled", "$.enabled")
    action = definition.action(action_id)
    if action is None:
        return _reject("PROCESS_UNKNOWN_ACTION", f"Unknown action: {action_id}", "action_id", {"action_id": action_id})

    current_id = current_status_id(definition, state)
    if action.from_status_id != current_id:
        return _reject(
            "PROCESS_INVALID_TRANSITION",
            "Action does not start from the current status",
            "action_id",
            {"action_id": action.id, "current_status_id": current_id, "from_status_id": action.from_status_id},
        )

    if action.filter_condition is not None:
        try:
            allowed = condition_eval.matches(action.filter_condition, record or {})
        except condition_eval.ConditionSchemaError as exc:
            return _reject(exc.code, exc.message, "$.filter_condition", {"action_id": action.id})
        if not allowed:
            return _reject(
                "PROCESS_ACTION_CONDITION_UNMET",
                "Record does not satisfy the action condition",
                "$.filter_condition",
                {"action_id": action.id},
            )

    current = definition.status(current_id)
    if current is not None and current.assignee_type is not None and action.action_type == "NORMAL":
        if not _is_assignee(state, actor_id):
            return _reject(
                "PROCESS_NOT_ASSIGNEE",
                "Only the current assignee can run this action",
                "actor",
                {"actor_id": actor_id, "status_id": current.id},
            )

    to_status = definition.status(action.to_status_id)
    if to_status is None:
        return _reject("PROCESS_DEFINITION_INVALID", "Unknown target status", "$.to_status_id")
    if to_status.is_final and to_status.assignee_type is not None:
        return _reject("PROCESS_DEFINITION_INVALID", "A final status cannot have an assignee", "$.to_status_id")

    plan: ProcessPlan = {
        "action_id": action.id,
        "action_name": action.name,
        "from_status_id": current_id,
        "to_status_id": to_status.id,
        "to_status_name": to_status.name,
        "needs_assignment": to_status.assignee_type is not None,
        "is_final": to_status.is_final,
    }
    return {"ok": True, "errors": [], "warnings": [], "plan": plan}


def available_actions(
    definition: ProcessDefinition,
    state: dict | None,
    actor_id: str | None,
    record: dict | None = None,
) -> List[ProcessAction]:
    if not definition.enabled:
        return []
    actions = [a for a in definition.actions if plan_transition(definition, state, a.id, actor_id, record)["ok"]]
    return sorted(actions, key=lambda a: (a.display_order, a.id))
