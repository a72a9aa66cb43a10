"""Recompute lookup and calculated fields after a record change."""

from __future__ import annotations

import copy
import graphlib
import logging
from typing import Any, Dict, Iterable, List

import formula_eval
from field_schema import FieldDefinition, FieldType, calculation_order, coerce_definition, is_numeric
from lookup_resolver import RecordSource, apply_lookup_copy, resolve_lookup


logger = logging.getLogger("dynapp.derived")

Issue = Dict[str, Any]


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> Issue:
    return {"code": code, "message": message, "path": path, "detail": detail}


def numeric_field_codes(fields: Iterable[FieldDefinition]) -> List[str]:
    return [f.field_code for f in fields if f.is_active and is_numeric(f.field_type)]


def recompute_calculated(
    fields: Iterable[Any],
    record: dict,
    depth_limit: int = formula_eval.DEFAULT_DEPTH_LIMIT,
) -> dict:
    """Evaluate every calculated field, dependencies first.

    Returns {"record", "warnings"}; failed formulas store None so the field
    renders blank while unrelated fields still compute.
    """
    defs = [coerce_definition(f) for f in fields]
    updated = copy.deepcopy(record)
    warnings: List[Issue] = []
    numeric = numeric_field_codes(defs)
    by_code = {d.field_code: d for d in defs if d.is_active}
    try:
        order = calculation_order(defs)
    except graphlib.CycleError:
        warnings.append(_issue("FORMULA_CYCLE", "Calculated fields reference each other in a cycle", "$"))
        order = [d.field_code for d in defs if d.is_active and d.field_type is FieldType.CALCULATED]
        for code in order:
            updated[code] = None
        return {"record": updated, "warnings": warnings}

    for code in order:
        cfg = by_code[code].formula_config()
        if cfg is None:
            updated[code] = None
            continue
        result = formula_eval.evaluate(cfg.formula, updated, numeric, depth_limit=depth_limit)
        for warning in result.warnings:
            warnings.append(dict(warning, detail={"calculated_field": code}))
        if not result.ok:
            logger.info("formula_failed field=%s code=%s", code, result.error.code)
            warnings.append(_issue(result.error.code, result.error.message, code))
            updated[code] = None
            continue
        updated[code] = formula_eval.round_value(result.value, cfg.formula_decimals)
    return {"record": updated, "warnings": warnings}


def refresh_lookups(
    fields: Iterable[Any],
    record: dict,
    source: RecordSource,
    previous: dict | None = None,
) -> dict:
    """Re-resolve lookups whose key value changed (all of them when previous is None)."""
    defs = [coerce_definition(f) for f in fields]
    updated = copy.deepcopy(record)
    warnings: List[Issue] = []
    for defn in defs:
        if not defn.is_active or defn.field_type is not FieldType.LOOKUP:
            continue
        code = defn.field_code
        if previous is not None and previous.get(code) == updated.get(code):
            continue
        if updated.get(code) in (None, ""):
            continue
        cfg = defn.lookup_config()
        result = resolve_lookup(cfg, updated.get(code), source)
        if not result.ok:
            warnings.append(_issue(result.error or "LOOKUP_NOT_FOUND", result.message or "Lookup failed", code))
            continue
        updated = apply_lookup_copy(updated, result)
    return {"record": updated, "warnings": warnings}


def recompute_derived(
    fields: Iterable[Any],
    record: dict,
    source: RecordSource,
    previous: dict | None = None,
    depth_limit: int = formula_eval.DEFAULT_DEPTH_LIMIT,
) -> dict:
    """Lookups first so copied numbers feed formulas, then calculated fields."""
    defs = [coerce_definition(f) for f in fields]
    looked_up = refresh_lookups(defs, record, source, previous)
    calculated = recompute_calculated(defs, looked_up["record"], depth_limit=depth_limit)
    return {"record": calculated["record"], "warnings": looked_up["warnings"] + calculated["warnings"]}


def display_values(fields: Iterable[Any], record: dict) -> Dict[str, str]:
    """Formatted text for calculated fields, keyed by field code."""
    out: Dict[str, str] = {}
    for defn in (coerce_definition(f) for f in fields):
        if not defn.is_active or defn.field_type is not FieldType.CALCULATED:
            continue
        cfg = defn.formula_config()
        if cfg is None:
            continue
        out[defn.field_code] = formula_eval.format_value(record.get(defn.field_code), cfg.formula_format, cfg.formula_decimals)
    return out
