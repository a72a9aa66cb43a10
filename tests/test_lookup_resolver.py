import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from lookup_resolver import apply_lookup_copy, resolve_lookup, resolve_related_records


class FakeSource:
    def __init__(self, apps: dict) -> None:
        self.apps = apps

    def list_records(self, app_code, filter=None):
        if app_code not in self.apps:
            raise KeyError(app_code)
        return list(self.apps[app_code])


class TestLookup(unittest.TestCase):
    def setUp(self) -> None:
        self.source = FakeSource(
            {
                "customers": [
                    {"id": "c1", "record_number": 1, "code": "7", "name": "Acme", "city": "Oslo"},
                    {"id": "c2", "record_number": 2, "code": "8", "name": "Globex", "city": "Rome"},
                    {"id": "c3", "record_number": 3, "code": "7", "name": "Acme Dup", "city": "Lima"},
                ],
                "orders": [
                    {"id": "o1", "record_number": 1, "customer_code": "7", "total": 10},
                    {"id": "o2", "record_number": 2, "customer_code": "8", "total": 20},
                    {"id": "o3", "record_number": 3, "customer_code": 7, "total": 30},
                ],
            }
        )
        self.config = {
            "lookup_app_code": "customers",
            "lookup_key_field": "code",
            "lookup_copy_fields": [
                {"source_field": "name", "target_field": "customer_name"},
                {"source_field": "city", "target_field": "customer_city"},
            ],
        }

    def test_first_match_wins_and_keys_compare_as_text(self) -> None:
        result = resolve_lookup(self.config, 7, self.source)
        self.assertTrue(result.ok)
        self.assertEqual(result.matched_record_id, "c1")
        self.assertEqual(result.copy, {"customer_name": "Acme", "customer_city": "Oslo"})

    def test_not_found_is_a_result(self) -> None:
        result = resolve_lookup(self.config, "99", self.source)
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "LOOKUP_NOT_FOUND")
        self.assertEqual(resolve_lookup(self.config, "", self.source).error, "LOOKUP_NOT_FOUND")

    def test_unknown_app_and_bad_config(self) -> None:
        config = dict(self.config, lookup_app_code="vendors")
        self.assertEqual(resolve_lookup(config, "7", self.source).error, "LOOKUP_APP_UNKNOWN")
        self.assertEqual(resolve_lookup({"lookup_app_code": "customers"}, "7", self.source).error, "LOOKUP_CONFIG_INVALID")

    def test_failed_lookup_leaves_targets_untouched(self) -> None:
        record = {"customer": "99", "customer_name": "Old"}
        result = resolve_lookup(self.config, "99", self.source)
        self.assertEqual(apply_lookup_copy(record, result), record)
        hit = resolve_lookup(self.config, "8", self.source)
        updated = apply_lookup_copy(record, hit)
        self.assertEqual(updated["customer_name"], "Globex")
        self.assertEqual(record["customer_name"], "Old")

    def test_repeat_lookup_gives_same_copy(self) -> None:
        first = resolve_lookup(self.config, "7", self.source)
        second = resolve_lookup(self.config, "7", self.source)
        self.assertEqual(first.copy, second.copy)
        self.assertEqual(first.matched_record_id, second.matched_record_id)
        record = {"customer": "7"}
        once = apply_lookup_copy(record, first)
        twice = apply_lookup_copy(once, second)
        self.assertEqual(once, twice)
        self.assertEqual(self.source.apps["customers"][0]["name"], "Acme")


class TestRelatedRecords(unittest.TestCase):
    def setUp(self) -> None:
        self.source = FakeSource(
            {
                "orders": [
                    {"id": "o1", "record_number": 1, "customer_code": "7", "total": 10, "note": "x"},
                    {"id": "o2", "record_number": 2, "customer_code": "8", "total": 20, "note": "y"},
                    {"id": "o3", "record_number": 3, "customer_code": 7, "total": 30, "note": "z"},
                ]
            }
        )
        self.config = {
            "related_app_code": "orders",
            "related_key_field": "customer_code",
            "related_this_field": "code",
            "related_display_fields": ["total"],
        }

    def test_projection(self) -> None:
        result = resolve_related_records(self.config, {"code": "7"}, self.source)
        self.assertTrue(result.ok)
        self.assertEqual(
            result.records,
            [
                {"id": "o1", "record_number": 1, "total": 10},
                {"id": "o3", "record_number": 3, "total": 30},
            ],
        )

    def test_blank_key_gives_empty_list(self) -> None:
        result = resolve_related_records(self.config, {"code": ""}, self.source)
        self.assertTrue(result.ok)
        self.assertEqual(result.records, [])

    def test_errors(self) -> None:
        self.assertEqual(resolve_related_records({}, {"code": "7"}, self.source).error, "RELATED_CONFIG_INVALID")
        config = dict(self.config, related_app_code="invoices")
        self.assertEqual(resolve_related_records(config, {"code": "7"}, self.source).error, "LOOKUP_APP_UNKNOWN")


if __name__ == "__main__":
    unittest.main()
