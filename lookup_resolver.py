"""Lookup copy-on-match and related-records projection."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from condition_eval import to_text
from field_schema import LookupConfig, LookupCopyField, RelatedRecordsConfig


logger = logging.getLogger("dynapp.lookup")


class RecordSource(Protocol):
    def list_records(self, app_code: str, filter: dict | None = None) -> List[dict]:
        ...


@dataclass
class LookupResult:
    ok: bool
    copy: Dict[str, Any] = field(default_factory=dict)
    matched_record_id: str | None = None
    error: str | None = None
    message: str | None = None


@dataclass
class RelatedRecordsResult:
    ok: bool
    records: List[dict] = field(default_factory=list)
    error: str | None = None
    message: str | None = None


def _coerce_lookup(config: Any) -> LookupConfig | None:
    if isinstance(config, LookupConfig):
        return config
    if not isinstance(config, dict):
        return None
    app_code = config.get("lookup_app_code")
    key_field = config.get("lookup_key_field")
    if not isinstance(app_code, str) or not app_code or not isinstance(key_field, str) or not key_field:
        return None
    copies = []
    for item in config.get("lookup_copy_fields") or []:
        if isinstance(item, dict) and item.get("source_field") and item.get("target_field"):
            copies.append(LookupCopyField(str(item["source_field"]), str(item["target_field"])))
    return LookupConfig(app_code, key_field, copies)


def _coerce_related(config: Any) -> RelatedRecordsConfig | None:
    if isinstance(config, RelatedRecordsConfig):
        return config
    if not isinstance(config, dict):
        return None
    keys = ("related_app_code", "related_key_field", "related_this_field")
    if not all(isinstance(config.get(k), str) and config.get(k) for k in keys):
        return None
    display = [d for d in config.get("related_display_fields") or [] if isinstance(d, str)]
    return RelatedRecordsConfig(config["related_app_code"], config["related_key_field"], config["related_this_field"], display)


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == []


def _read_source(source: RecordSource, app_code: str) -> List[dict] | LookupResult:
    try:
        return source.list_records(app_code)
    except KeyError:
        return LookupResult(False, error="LOOKUP_APP_UNKNOWN", message=f"Unknown app: {app_code}")


def resolve_lookup(config: Any, key_value: Any, source: RecordSource) -> LookupResult:
    """Find the first remote record whose key field equals key_value exactly.

    Not-found is a routine outcome and is returned, not raised. Keys are
    compared on their text form so 7 and "7" match.
    """
    cfg = _coerce_lookup(config)
    if cfg is None:
        return LookupResult(False, error="LOOKUP_CONFIG_INVALID", message="lookup_app_code and lookup_key_field are required")
    if _is_blank(key_value):
        return LookupResult(False, error="LOOKUP_NOT_FOUND", message="Lookup key is empty")

    rows = _read_source(source, cfg.lookup_app_code)
    if isinstance(rows, LookupResult):
        logger.warning("lookup_app_unknown app=%s", cfg.lookup_app_code)
        return rows

    wanted = to_text(key_value)
    for row in rows:
        if not isinstance(row, dict):
            continue
        if to_text(row.get(cfg.lookup_key_field)) != wanted:
            continue
        copied = {c.target_field: copy.deepcopy(row.get(c.source_field)) for c in cfg.lookup_copy_fields}
        return LookupResult(True, copy=copied, matched_record_id=row.get("id"))

    logger.info("lookup_not_found app=%s key_field=%s key=%s", cfg.lookup_app_code, cfg.lookup_key_field, wanted)
    return LookupResult(
        False,
        error="LOOKUP_NOT_FOUND",
        message=f"No {cfg.lookup_app_code} record with {cfg.lookup_key_field}={wanted}",
    )


def apply_lookup_copy(record: dict, result: LookupResult) -> dict:
    """Return a copy of record with the lookup copy map applied.

    A failed lookup leaves every target field untouched.
    """
    updated = copy.deepcopy(record)
    if result.ok:
        updated.update(copy.deepcopy(result.copy))
    return updated


def resolve_related_records(config: Any, record: dict, source: RecordSource) -> RelatedRecordsResult:
    """Live projection of remote records keyed by this record's value."""
    cfg = _coerce_related(config)
    if cfg is None:
        return RelatedRecordsResult(False, error="RELATED_CONFIG_INVALID", message="related records config is incomplete")
    this_value = (record or {}).get(cfg.related_this_field)
    if _is_blank(this_value):
        return RelatedRecordsResult(True, [])
    try:
        rows = source.list_records(cfg.related_app_code)
    except KeyError:
        logger.warning("related_app_unknown app=%s", cfg.related_app_code)
        return RelatedRecordsResult(False, error="LOOKUP_APP_UNKNOWN", message=f"Unknown app: {cfg.related_app_code}")

    wanted = to_text(this_value)
    projected: List[dict] = []
    for row in rows:
        if not isinstance(row, dict) or to_text(row.get(cfg.related_key_field)) != wanted:
            continue
        item = {"id": row.get("id"), "record_number": row.get("record_number")}
        for code in cfg.related_display_fields:
            item[code] = copy.deepcopy(row.get(code))
        projected.append(item)
    return RelatedRecordsResult(True, projected)
