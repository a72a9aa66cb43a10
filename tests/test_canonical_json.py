import os
import sys
import unittest
from dataclasses import dataclass
from enum import Enum


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from dynapp.canonical_json import CanonicalJsonTypeError, canonical_dumps, to_plain
from dynapp.rules_hash import is_rules_hash, rules_hash


class Effect(str, Enum):
    ALLOW = "allow"


@dataclass(frozen=True)
class Rule:
    id: str
    roles: tuple
    effect: Effect


class TestCanonicalJson(unittest.TestCase):
    def test_key_ordering_is_deterministic(self) -> None:
        self.assertEqual(canonical_dumps({"b": 1, "a": 2}), canonical_dumps({"a": 2, "b": 1}))

    def test_nested_dict_ordering(self) -> None:
        obj = {"b": 1, "a": {"d": 4, "c": 3}}
        self.assertEqual(canonical_dumps(obj), '{"a":{"c":3,"d":4},"b":1}')

    def test_tuples_serialize_as_lists(self) -> None:
        self.assertEqual(canonical_dumps({"roles": ("sales", "ops")}), '{"roles":["sales","ops"]}')

    def test_non_ascii_preserved(self) -> None:
        out = canonical_dumps({"name": "café"})
        self.assertIn("café", out)
        self.assertNotIn("\\u", out)

    def test_unsupported_type_raises(self) -> None:
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({"bad": {1, 2, 3}})
        with self.assertRaises(CanonicalJsonTypeError):
            canonical_dumps({1: "int key"})

    def test_reject_non_finite(self) -> None:
        for value in (float("nan"), float("inf"), float("-inf")):
            with self.assertRaises(ValueError):
                canonical_dumps({"bad": value})

    def test_numeric_distinction(self) -> None:
        self.assertNotEqual(canonical_dumps({"n": 1}), canonical_dumps({"n": 1.0}))

    def test_dataclasses_and_enums_flatten(self) -> None:
        rule = Rule(id="r1", roles=("sales",), effect=Effect.ALLOW)
        self.assertEqual(to_plain(rule), {"id": "r1", "roles": ["sales"], "effect": "allow"})
        self.assertEqual(canonical_dumps([rule]), '[{"effect":"allow","id":"r1","roles":["sales"]}]')


class TestRulesHash(unittest.TestCase):
    def test_prefix_and_stability(self) -> None:
        a = rules_hash({"app_permissions": [{"id": "r1", "priority": 5}], "record_rules": []})
        b = rules_hash({"record_rules": [], "app_permissions": [{"priority": 5, "id": "r1"}]})
        self.assertTrue(a.startswith("sha256:"))
        self.assertEqual(len(a), len("sha256:") + 64)
        self.assertEqual(a, b)

    def test_changes_with_content(self) -> None:
        a = rules_hash({"app_permissions": [{"id": "r1", "priority": 5}]})
        b = rules_hash({"app_permissions": [{"id": "r1", "priority": 6}]})
        self.assertNotEqual(a, b)

    def test_is_rules_hash(self) -> None:
        self.assertTrue(is_rules_hash(rules_hash({})))
        self.assertFalse(is_rules_hash("sha256:abcd"))
        self.assertFalse(is_rules_hash("md5:" + "0" * 64))
        self.assertFalse(is_rules_hash(None))


if __name__ == "__main__":
    unittest.main()
