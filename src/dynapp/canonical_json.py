"""Canonical JSON used to fingerprint rule snapshots and to vet event payloads.

Rule tables are frozen dataclasses holding tuples and str enums, so those are
flattened here instead of at every call site.
"""

from __future__ import annotations

import dataclasses
import json
import math
from enum import Enum
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Value has no canonical JSON form."""


def to_plain(value: Any, path: str = "$") -> Any:
    """Plain JSON data: dataclasses become dicts, enums their value, tuples lists."""
    if isinstance(value, Enum):
        return to_plain(value.value, path)
    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: non-finite float {value!r}")
        return value
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        value = {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        plain = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(f"{path}: keys must be strings, got {type(key).__name__}")
            plain[key] = to_plain(item, f"{path}.{key}")
        return plain
    if isinstance(value, (list, tuple)):
        return [to_plain(item, f"{path}[{idx}]") for idx, item in enumerate(value)]
    raise CanonicalJsonTypeError(f"{path}: unsupported type {type(value).__name__}")


def canonical_dumps(value: Any) -> str:
    """Sorted keys, no whitespace, non-ASCII kept as is, no NaN or Infinity."""
    return json.dumps(to_plain(value), sort_keys=True, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
