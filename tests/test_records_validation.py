import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.records_validation import check_unique_fields, validate_record_payload


FIELDS = [
    {"id": "f1", "field_code": "title", "field_type": "single_line_text", "required": True, "validation": {"max": 10}},
    {"id": "f2", "field_code": "code", "field_type": "single_line_text", "unique_field": True, "validation": {"pattern": "^[A-Z]+$"}},
    {"id": "f3", "field_code": "qty", "field_type": "number", "validation": {"min": 1, "max": 100}, "default_value": 1},
    {"id": "f4", "field_code": "due", "field_type": "date"},
    {"id": "f5", "field_code": "site", "field_type": "link", "validation": {"link_type": "email"}},
    {"id": "f6", "field_code": "stage", "field_type": "dropdown", "options": ["open", "won"]},
    {"id": "f7", "field_code": "tags", "field_type": "multi_select", "options": ["a", "b"]},
    {"id": "f8", "field_code": "owner", "field_type": "user_select", "validation": {"allow_multiple": False}},
    {"id": "f9", "field_code": "total", "field_type": "calculated", "validation": {"formula": "qty * 2"}},
    {"id": "f10", "field_code": "no", "field_type": "record_number"},
    {
        "id": "f11",
        "field_code": "lines",
        "field_type": "subtable",
        "validation": {
            "subtable_config": {"max_rows": 2},
            "subtable_fields": [
                {"field_code": "item", "field_type": "single_line_text", "required": True},
                {"field_code": "price", "field_type": "number"},
            ],
        },
    },
    {"id": "f12", "field_code": "old", "field_type": "number", "is_active": False},
]


def _codes(errors) -> list:
    return [e["code"] for e in errors]


class TestRecordPayload(unittest.TestCase):
    def test_clean_payload_and_defaults(self) -> None:
        errors, clean = validate_record_payload(FIELDS, {"title": "Deal", "status": "open", "id": "x"}, for_create=True)
        self.assertEqual(errors, [])
        self.assertEqual(clean["qty"], 1)
        self.assertEqual(clean["tags"], [])
        self.assertEqual(clean["status"], "open")
        self.assertNotIn("id", clean)

    def test_non_input_values_dropped(self) -> None:
        errors, clean = validate_record_payload(FIELDS, {"title": "Deal", "total": 99, "no": 5}, for_create=True)
        self.assertEqual(errors, [])
        self.assertNotIn("total", clean)
        self.assertNotIn("no", clean)

    def test_unknown_and_retired_fields(self) -> None:
        errors, _ = validate_record_payload(FIELDS, {"title": "Deal", "ghost": 1, "old": 2}, for_create=True)
        self.assertEqual(_codes(errors), ["UNKNOWN_FIELD", "UNKNOWN_FIELD"])

    def test_required(self) -> None:
        errors, _ = validate_record_payload(FIELDS, {"title": ""}, for_create=True)
        self.assertEqual(_codes(errors), ["REQUIRED_FIELD"])
        self.assertEqual(errors[0]["path"], "title")

    def test_type_rules(self) -> None:
        payload = {
            "title": "A very long title",
            "code": "abc",
            "qty": 500,
            "due": "31/12/2026",
            "site": "not-an-email",
            "stage": "lost",
            "tags": ["a", "z"],
            "owner": ["u1"],
        }
        errors, _ = validate_record_payload(FIELDS, payload, for_create=True)
        self.assertEqual(
            _codes(errors),
            [
                "TEXT_TOO_LONG",
                "PATTERN_MISMATCH",
                "NUMBER_OUT_OF_RANGE",
                "INVALID_DATE",
                "INVALID_LINK",
                "INVALID_OPTION",
                "INVALID_OPTION",
                "TYPE_MISMATCH",
            ],
        )

    def test_subtable_rows(self) -> None:
        rows = [{"item": "a", "price": 1}, {"item": "", "price": "x"}, {"item": "c"}]
        errors, _ = validate_record_payload(FIELDS, {"title": "T", "lines": rows}, for_create=True)
        self.assertEqual(_codes(errors), ["SUBTABLE_ROWS", "REQUIRED_FIELD", "TYPE_MISMATCH"])
        self.assertEqual(errors[1]["path"], "lines[1].item")

    def test_not_an_object(self) -> None:
        errors, clean = validate_record_payload(FIELDS, ["x"], for_create=True)
        self.assertEqual(_codes(errors), ["INVALID_PAYLOAD"])
        self.assertEqual(clean, {})


class TestUnique(unittest.TestCase):
    def test_duplicate_detected_and_self_excluded(self) -> None:
        existing = [{"id": "r1", "code": "ABC"}]
        self.assertEqual(_codes(check_unique_fields(FIELDS, {"code": "ABC"}, existing)), ["DUPLICATE_VALUE"])
        self.assertEqual(check_unique_fields(FIELDS, {"code": "ABC"}, existing, record_id="r1"), [])
        self.assertEqual(check_unique_fields(FIELDS, {"code": ""}, existing), [])


if __name__ == "__main__":
    unittest.main()
