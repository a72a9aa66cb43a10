"""Shared helpers for dynamic app rule snapshots."""

from .canonical_json import CanonicalJsonTypeError, canonical_dumps, to_plain
from .rules_hash import is_rules_hash, rules_hash

__all__ = [
    "CanonicalJsonTypeError",
    "canonical_dumps",
    "is_rules_hash",
    "rules_hash",
    "to_plain",
]
