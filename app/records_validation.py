"""Record payload validation against an app's field definitions."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Iterable, List
from urllib.parse import urlparse

from condition_eval import to_number, to_text
from field_schema import (
    FieldDefinition,
    FieldType,
    RECORD_METADATA_KEYS,
    accepts_input,
    coerce_definition,
    default_value_for,
    is_entity_select,
)


_TIME_RE = re.compile(r"^\d{2}:\d{2}(:\d{2})?$")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_TEL_RE = re.compile(r"^[\d\s\-+()]+$")


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _add(errors: list, code: str, message: str, path: str | None = None, detail: dict | None = None) -> None:
    errors.append({"code": code, "message": message, "path": path, "detail": detail})


def _valid_date(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        date.fromisoformat(value[:10])
        return True
    except ValueError:
        return False


def _valid_datetime(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
        return True
    except ValueError:
        return False


def _valid_link(value: Any, link_type: str) -> bool:
    text = str(value)
    if link_type == "email":
        return bool(_EMAIL_RE.match(text))
    if link_type == "tel":
        return bool(_TEL_RE.match(text))
    parsed = urlparse(text)
    return bool(parsed.scheme and parsed.netloc)


def _validate_value(defn: FieldDefinition, value: Any, errors: list, path: str) -> None:
    ftype = defn.field_type
    v = defn.validation or {}
    code = defn.field_code

    if ftype in (FieldType.SINGLE_LINE_TEXT, FieldType.MULTI_LINE_TEXT):
        if not isinstance(value, str):
            _add(errors, "TYPE_MISMATCH", f"{code} must be a string", path)
            return
        limit = v.get("max")
        if isinstance(limit, int) and limit > 0 and len(value) > limit:
            _add(errors, "TEXT_TOO_LONG", f"{code} must be at most {limit} characters", path, {"max": limit})
        pattern = v.get("pattern")
        if ftype is FieldType.SINGLE_LINE_TEXT and isinstance(pattern, str) and pattern:
            try:
                matched = re.search(pattern, value) is not None
            except re.error:
                matched = True
            if not matched:
                _add(errors, "PATTERN_MISMATCH", v.get("patternMessage") or f"{code} has an invalid format", path)
    elif ftype is FieldType.NUMBER:
        number = to_number(value)
        if number is None:
            _add(errors, "TYPE_MISMATCH", f"{code} must be a number", path)
            return
        lo, hi = v.get("min"), v.get("max")
        if isinstance(lo, (int, float)) and number < lo:
            _add(errors, "NUMBER_OUT_OF_RANGE", f"{code} must be at least {lo}", path, {"min": lo})
        if isinstance(hi, (int, float)) and number > hi:
            _add(errors, "NUMBER_OUT_OF_RANGE", f"{code} must be at most {hi}", path, {"max": hi})
    elif ftype is FieldType.DATE:
        if not _valid_date(value):
            _add(errors, "INVALID_DATE", f"{code} must be YYYY-MM-DD", path)
    elif ftype is FieldType.TIME:
        if not isinstance(value, str) or not _TIME_RE.match(value):
            _add(errors, "INVALID_TIME", f"{code} must be HH:MM", path)
    elif ftype is FieldType.DATETIME:
        if not _valid_datetime(value):
            _add(errors, "INVALID_DATETIME", f"{code} must be ISO8601", path)
    elif ftype is FieldType.LINK:
        link_type = v.get("link_type") or "url"
        if not _valid_link(value, link_type):
            _add(errors, "INVALID_LINK", f"{code} must be a valid {link_type}", path, {"link_type": link_type})
    elif ftype in (FieldType.DROPDOWN, FieldType.RADIO_BUTTON):
        allowed = defn.option_values()
        if defn.options is not None and to_text(value) not in allowed:
            _add(errors, "INVALID_OPTION", f"{code} must be one of {allowed}", path)
    elif ftype in (FieldType.CHECKBOX, FieldType.MULTI_SELECT):
        if not isinstance(value, list):
            _add(errors, "TYPE_MISMATCH", f"{code} must be a list", path)
            return
        allowed = defn.option_values()
        if defn.options is not None and any(to_text(item) not in allowed for item in value):
            _add(errors, "INVALID_OPTION", f"{code} contains a value outside {allowed}", path)
    elif ftype is FieldType.RICH_EDITOR:
        if not isinstance(value, str):
            _add(errors, "TYPE_MISMATCH", f"{code} must be text", path)
    elif ftype is FieldType.LOOKUP:
        if not isinstance(value, (str, int, float)) or isinstance(value, bool):
            _add(errors, "TYPE_MISMATCH", f"{code} must be a lookup key", path)
    elif is_entity_select(ftype):
        if defn.allow_multiple():
            if not isinstance(value, list):
                _add(errors, "TYPE_MISMATCH", f"{code} must be a list", path)
        elif not isinstance(value, str):
            _add(errors, "TYPE_MISMATCH", f"{code} must be a single id", path)
    elif ftype is FieldType.SUBTABLE:
        _validate_subtable(defn, value, errors, path)


def _validate_subtable(defn: FieldDefinition, value: Any, errors: list, path: str) -> None:
    if not isinstance(value, list) or not all(isinstance(row, dict) for row in value):
        _add(errors, "TYPE_MISMATCH", f"{defn.field_code} must be a list of rows", path)
        return
    cfg = defn.subtable_config()
    if cfg.min_rows and len(value) < cfg.min_rows:
        _add(errors, "SUBTABLE_ROWS", f"{defn.field_code} needs at least {cfg.min_rows} rows", path)
    if cfg.max_rows and len(value) > cfg.max_rows:
        _add(errors, "SUBTABLE_ROWS", f"{defn.field_code} allows at most {cfg.max_rows} rows", path)
    sub_fields = defn.subtable_fields()
    for idx, row in enumerate(value):
        for sub in sub_fields:
            cell = row.get(sub.field_code)
            cpath = f"{path}[{idx}].{sub.field_code}"
            if _is_empty(cell):
                if sub.required:
                    _add(errors, "REQUIRED_FIELD", f"Row {idx + 1}: {sub.field_code} is required", cpath)
                continue
            if accepts_input(sub.field_type):
                _validate_value(sub, cell, errors, cpath)


def validate_record_payload(fields: Iterable[Any], data: Any, for_create: bool) -> tuple[list[dict], dict]:
    """Return (errors, clean).

    clean keeps only user-enterable fields plus `status`; auto, decorative,
    related-record and calculated values are dropped, defaults are filled on
    create.
    """
    errors: List[dict] = []
    if not isinstance(data, dict):
        _add(errors, "INVALID_PAYLOAD", "Record data must be an object")
        return errors, {}
    defs = [coerce_definition(f) for f in fields]
    by_code = {d.field_code: d for d in defs if d.is_active}

    clean: dict = {}
    for key, value in data.items():
        if key == "status":
            clean[key] = value
            continue
        if key in RECORD_METADATA_KEYS:
            continue
        defn = by_code.get(key)
        if defn is None:
            _add(errors, "UNKNOWN_FIELD", f"Unknown field: {key}", key)
            continue
        if not accepts_input(defn.field_type):
            continue
        clean[key] = value

    if for_create:
        for code, defn in by_code.items():
            if code not in clean and accepts_input(defn.field_type):
                default = default_value_for(defn)
                if default is not None:
                    clean[code] = default

    for code, defn in by_code.items():
        if not accepts_input(defn.field_type) or defn.field_type is FieldType.FILE_UPLOAD:
            continue
        value = clean.get(code)
        if _is_empty(value):
            if defn.required:
                _add(errors, "REQUIRED_FIELD", f"Missing required field: {code}", code)
            continue
        _validate_value(defn, value, errors, code)

    return errors, clean


def check_unique_fields(fields: Iterable[Any], data: dict, existing: Iterable[dict], record_id: str | None = None) -> list[dict]:
    errors: List[dict] = []
    defs = [coerce_definition(f) for f in fields]
    rows = [row for row in existing if row.get("id") != record_id]
    for defn in defs:
        if not defn.is_active or not defn.unique_field:
            continue
        value = data.get(defn.field_code)
        if _is_empty(value):
            continue
        wanted = to_text(value)
        if any(to_text(row.get(defn.field_code)) == wanted for row in rows):
            _add(errors, "DUPLICATE_VALUE", f"{defn.field_code} must be unique", defn.field_code, {"value": wanted})
    return errors
