import os
import sys
import unittest
import uuid

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from fastapi.testclient import TestClient

os.environ["DYNAPP_WEBHOOKS_ENABLED"] = "0"

import app.main as main


ADMIN = {"X-Actor-Id": "root", "X-Actor-Roles": "admin"}
STAFF = {"X-Actor-Id": "alice", "X-Actor-Roles": "staff"}
OTHER = {"X-Actor-Id": "olga", "X-Actor-Roles": "guest"}

FIELDS = [
    {"id": "temp_1", "field_code": "qty", "field_type": "number"},
    {"id": "temp_2", "field_code": "price", "field_type": "number"},
    {
        "id": "temp_3",
        "field_code": "total",
        "field_type": "calculated",
        "validation": {"formula": "qty * price", "formula_format": "currency", "formula_decimals": 2},
    },
]

PERMISSIONS = {
    "app_permissions": [
        {"id": "staff", "target_type": "role", "target_id": "staff", "can_view": True, "can_add": True, "can_edit": True, "priority": 2},
        {"id": "guests", "target_type": "role", "target_id": "guest", "can_view": False, "priority": 1},
    ]
}


class TestApi(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(main.app)
        self.code = f"orders_{uuid.uuid4().hex[:8]}"
        res = self.client.post("/apps", json={"code": self.code, "name": "Orders"}, headers=ADMIN)
        self.assertEqual(res.status_code, 201, res.json())
        res = self.client.put(f"/apps/{self.code}/fields", json={"fields": FIELDS}, headers=ADMIN)
        self.assertTrue(res.json()["ok"], res.json())
        res = self.client.put(f"/apps/{self.code}/permissions", json=PERMISSIONS, headers=ADMIN)
        self.assertTrue(res.json()["ok"], res.json())

    def test_auth_and_admin_checks(self) -> None:
        self.assertEqual(self.client.post("/apps", json={"code": "x"}).status_code, 401)
        self.assertEqual(self.client.post("/apps", json={"code": "x"}, headers=STAFF).status_code, 403)
        dup = self.client.post("/apps", json={"code": self.code}, headers=ADMIN)
        self.assertEqual(dup.json()["errors"][0]["code"], "APP_CODE_DUPLICATE")
        self.assertEqual(self.client.put(f"/apps/{self.code}/fields", json={"fields": []}, headers=STAFF).status_code, 403)

    def test_record_lifecycle(self) -> None:
        res = self.client.post(f"/apps/{self.code}/records", json={"record": {"qty": 3, "price": 150.5}}, headers=STAFF)
        self.assertEqual(res.status_code, 201, res.json())
        body = res.json()
        self.assertEqual(body["record"]["total"], 451.5)
        self.assertEqual(body["display"]["total"], "451.50")
        record_id = body["record_id"]

        res = self.client.put(f"/apps/{self.code}/records/{record_id}", json={"record": {"qty": 4}}, headers=STAFF)
        self.assertEqual(res.json()["record"]["total"], 602.0)

        res = self.client.get(f"/apps/{self.code}/records/{record_id}", headers=STAFF)
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["record"]["qty"], 4)

        res = self.client.post(f"/apps/{self.code}/records/{record_id}/comments", json={"body": "ok"}, headers=STAFF)
        self.assertEqual(res.status_code, 201)

        self.assertEqual(self.client.delete(f"/apps/{self.code}/records/{record_id}", headers=STAFF).status_code, 403)
        self.assertEqual(self.client.delete(f"/apps/{self.code}/records/{record_id}", headers=ADMIN).status_code, 200)
        self.assertEqual(self.client.get(f"/apps/{self.code}/records/{record_id}", headers=ADMIN).status_code, 404)

    def test_list_search_and_denied(self) -> None:
        for qty in (1, 5):
            self.client.post(f"/apps/{self.code}/records", json={"qty": qty, "price": 1}, headers=STAFF)
        listed = self.client.get(f"/apps/{self.code}/records", headers=STAFF).json()
        self.assertEqual(listed["total"], 2)
        flt = {"filter": {"logic": "AND", "conditions": [{"field": "qty", "operator": "gte", "value": 5}]}}
        found = self.client.post(f"/apps/{self.code}/records/search", json=flt, headers=STAFF).json()
        self.assertEqual([r["record"]["qty"] for r in found["records"]], [5])
        self.assertEqual(self.client.get(f"/apps/{self.code}/records", headers=OTHER).status_code, 403)
        self.assertEqual(self.client.get("/apps/missing_app/records", headers=STAFF).status_code, 404)

    def test_effective_permissions(self) -> None:
        body = self.client.get(f"/apps/{self.code}/permissions/effective", headers=STAFF).json()
        self.assertEqual(body["permissions"]["app_rule_id"], "staff")
        self.assertTrue(body["permissions"]["app"]["can_add"])
        self.assertEqual(body["permissions"]["fields"]["qty"], "edit")

    def test_reorder_rules(self) -> None:
        res = self.client.post(f"/apps/{self.code}/permissions/app_permissions/order", json={"ordered_ids": ["guests", "staff"]}, headers=ADMIN)
        self.assertTrue(res.json()["ok"], res.json())
        bad = self.client.post(f"/apps/{self.code}/permissions/nope/order", json={"ordered_ids": []}, headers=ADMIN)
        self.assertEqual(bad.status_code, 400)
        self.assertEqual(bad.json()["errors"][0]["code"], "PERMISSION_TABLE_UNKNOWN")

    def test_formula_preview(self) -> None:
        payload = {"formula": "qty * price", "record": {"qty": 3, "price": 150.5}, "format": "currency"}
        body = self.client.post(f"/apps/{self.code}/formula/evaluate", json=payload, headers=STAFF).json()
        self.assertEqual(body["value"], 451.5)
        self.assertEqual(body["display"], "451.50")
        bad = self.client.post(f"/apps/{self.code}/formula/evaluate", json={"formula": "qty * / 2"}, headers=STAFF)
        self.assertEqual(bad.json()["errors"][0]["code"], "FORMULA_SYNTAX_ERROR")

    def test_schema_and_formula_need_view(self) -> None:
        self.assertEqual(self.client.get(f"/apps/{self.code}/fields", headers=STAFF).status_code, 200)
        fields = self.client.get(f"/apps/{self.code}/fields", headers=OTHER)
        self.assertEqual(fields.status_code, 403)
        self.assertEqual(fields.json()["errors"][0]["code"], "PERMISSION_DENIED")
        payload = {"formula": "qty * price", "record": {"qty": 1, "price": 1}}
        preview = self.client.post(f"/apps/{self.code}/formula/evaluate", json=payload, headers=OTHER)
        self.assertEqual(preview.status_code, 403)
        self.assertEqual(self.client.get("/apps/missing_app/fields", headers=OTHER).status_code, 404)

    def test_process_action_requires_action_id(self) -> None:
        res = self.client.post(f"/apps/{self.code}/records", json={"qty": 1}, headers=STAFF)
        record_id = res.json()["record_id"]
        bad = self.client.post(f"/apps/{self.code}/records/{record_id}/process-action", json={}, headers=STAFF)
        self.assertEqual(bad.json()["errors"][0]["code"], "ACTION_REQUIRED")
        disabled = self.client.post(f"/apps/{self.code}/records/{record_id}/process-action", json={"action_id": "submit"}, headers=STAFF)
        self.assertEqual(disabled.json()["errors"][0]["code"], "PROCESS_DISABLED")

    def test_outbox_lists_app_events(self) -> None:
        self.client.post(f"/apps/{self.code}/records", json={"qty": 1}, headers=STAFF)
        events = self.client.get(f"/apps/{self.code}/outbox", headers=ADMIN).json()["events"]
        self.assertEqual([e["name"] for e in events], ["record.created"])
        event_id = events[0]["meta"]["event_id"]
        self.assertEqual(self.client.post(f"/apps/{self.code}/outbox/{event_id}/ack", headers=ADMIN).status_code, 200)
        self.assertEqual(self.client.post(f"/apps/{self.code}/outbox/{event_id}/ack", headers=ADMIN).status_code, 404)
        self.assertEqual(self.client.get(f"/apps/{self.code}/outbox", headers=ADMIN).json()["events"], [])
        self.assertEqual(self.client.get(f"/apps/{self.code}/outbox", headers=STAFF).status_code, 403)


if __name__ == "__main__":
    unittest.main()
