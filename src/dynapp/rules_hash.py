"""SHA-256 fingerprints of rule snapshots."""

from __future__ import annotations

import hashlib
import re
from typing import Any

from .canonical_json import canonical_dumps


PREFIX = "sha256:"
_HASH_RE = re.compile(r"^sha256:[0-9a-f]{64}$")


def rules_hash(snapshot: Any) -> str:
    """Fingerprint of a rule set or definition.

    Permission decisions and emitted events carry it so a reader can tell
    which rules were in force.
    """
    return PREFIX + hashlib.sha256(canonical_dumps(snapshot).encode("utf-8")).hexdigest()


def is_rules_hash(value: Any) -> bool:
    return isinstance(value, str) and _HASH_RE.match(value) is not None
