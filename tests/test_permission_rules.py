import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from permission_rules import (
    Actor,
    AppPermission,
    FieldPermission,
    PermissionRuleError,
    RecordPermissionRule,
    matches_actor,
    matches_target,
    pick_highest_priority,
    reorder_priorities,
    validate_app_permissions,
    validate_field_permissions,
    validate_record_rules,
)


class TestActor(unittest.TestCase):
    def test_from_dict_variants(self) -> None:
        actor = Actor.from_dict({"id": "u1", "roles": ["sales"], "org_id": "o1"})
        self.assertEqual(actor.role_ids, ("sales",))
        self.assertEqual(actor.org_ids, ("o1",))
        self.assertFalse(actor.is_admin)
        self.assertTrue(Actor.from_dict({"id": "u2", "role_ids": ["admin"]}).is_admin)

    def test_id_required(self) -> None:
        with self.assertRaises(PermissionRuleError):
            Actor.from_dict({"roles": ["sales"]})


class TestTargets(unittest.TestCase):
    def setUp(self) -> None:
        self.actor = Actor("u1", role_ids=("sales",), org_ids=("team_a",), org_ancestor_ids=("dept", "company"))

    def _app_rule(self, **data) -> AppPermission:
        base = {"id": "r", "target_type": "everyone"}
        base.update(data)
        return AppPermission.from_dict(base)

    def test_actor_targets(self) -> None:
        self.assertTrue(matches_actor(self._app_rule(), self.actor))
        self.assertTrue(matches_actor(self._app_rule(target_type="user", target_id="u1"), self.actor))
        self.assertFalse(matches_actor(self._app_rule(target_type="user", target_id="u2"), self.actor))
        self.assertTrue(matches_actor(self._app_rule(target_type="role", target_id="sales"), self.actor))
        self.assertTrue(matches_actor(self._app_rule(target_type="organization", target_id="team_a"), self.actor))

    def test_sub_organizations(self) -> None:
        plain = self._app_rule(target_type="organization", target_id="dept")
        inherited = self._app_rule(target_type="organization", target_id="dept", include_sub_organizations=True)
        self.assertFalse(matches_actor(plain, self.actor))
        self.assertTrue(matches_actor(inherited, self.actor))

    def test_record_targets(self) -> None:
        creator = RecordPermissionRule.from_dict({"id": "c", "target_type": "creator"})
        self.assertTrue(matches_target(creator, self.actor, {"created_by": "u1"}))
        self.assertFalse(matches_target(creator, self.actor, {"created_by": "u2"}))
        self.assertFalse(matches_target(creator, self.actor, None))
        owner = RecordPermissionRule.from_dict({"id": "f", "target_type": "field_value", "target_field": "owners"})
        self.assertTrue(matches_target(owner, self.actor, {"owners": ["u9", "u1"]}))
        self.assertTrue(matches_target(owner, self.actor, {"owners": {"id": "u1"}}))
        self.assertFalse(matches_target(owner, self.actor, {"owners": "u9"}))

    def test_invalid_rules(self) -> None:
        with self.assertRaises(PermissionRuleError) as ctx:
            AppPermission.from_dict({"id": "r", "target_type": "creator"})
        self.assertEqual(ctx.exception.code, "PERMISSION_TARGET_TYPE_INVALID")
        with self.assertRaises(PermissionRuleError) as ctx:
            AppPermission.from_dict({"id": "r", "target_type": "role"})
        self.assertEqual(ctx.exception.code, "PERMISSION_TARGET_ID_MISSING")
        with self.assertRaises(PermissionRuleError) as ctx:
            RecordPermissionRule.from_dict({"id": "r", "target_type": "field_value"})
        self.assertEqual(ctx.exception.code, "PERMISSION_TARGET_FIELD_MISSING")
        with self.assertRaises(PermissionRuleError) as ctx:
            FieldPermission.from_dict({"id": "r", "field_name": "x", "target_type": "everyone", "access_level": "write"})
        self.assertEqual(ctx.exception.code, "PERMISSION_ACCESS_LEVEL_INVALID")


class TestPriority(unittest.TestCase):
    def test_highest_priority_regardless_of_order(self) -> None:
        low = AppPermission.from_dict({"id": "low", "target_type": "everyone", "priority": 5})
        high = AppPermission.from_dict({"id": "high", "target_type": "everyone", "priority": 10})
        self.assertIs(pick_highest_priority([low, high], lambda r: True), high)
        self.assertIs(pick_highest_priority([high, low], lambda r: True), high)

    def test_tie_goes_to_smallest_id(self) -> None:
        b = AppPermission.from_dict({"id": "b", "target_type": "everyone", "priority": 3})
        a = AppPermission.from_dict({"id": "a", "target_type": "everyone", "priority": 3})
        self.assertIs(pick_highest_priority([b, a], lambda r: True), a)

    def test_no_match(self) -> None:
        rule = AppPermission.from_dict({"id": "a", "target_type": "everyone"})
        self.assertIsNone(pick_highest_priority([rule], lambda r: False))

    def test_reorder(self) -> None:
        rules = [AppPermission.from_dict({"id": i, "target_type": "everyone", "priority": 0}) for i in ("a", "b", "c")]
        reordered = reorder_priorities(rules, ["c", "a", "b"])
        self.assertEqual([(r.id, r.priority) for r in reordered], [("c", 3), ("a", 2), ("b", 1)])
        with self.assertRaises(PermissionRuleError):
            reorder_priorities(rules, ["a", "b"])
        with self.assertRaises(PermissionRuleError):
            reorder_priorities(rules, ["a", "a", "b"])


class TestValidation(unittest.TestCase):
    def test_app_permissions(self) -> None:
        errors = validate_app_permissions(
            [
                {"id": "a", "target_type": "everyone"},
                {"id": "a", "target_type": "everyone"},
                {"id": "b", "target_type": "nobody"},
            ]
        )
        self.assertEqual([e["code"] for e in errors], ["PERMISSION_RULE_DUPLICATE", "PERMISSION_TARGET_TYPE_INVALID"])
        self.assertEqual(errors[1]["path"], "$.app_permissions[2].target_type")

    def test_field_permissions_unknown_field(self) -> None:
        errors = validate_field_permissions(
            [{"id": "f", "field_name": "ghost", "target_type": "everyone", "access_level": "view"}],
            ["amount"],
        )
        self.assertEqual(errors[0]["code"], "PERMISSION_FIELD_UNKNOWN")

    def test_record_rules_condition_fields(self) -> None:
        errors = validate_record_rules(
            [
                {
                    "id": "r",
                    "target_type": "role",
                    "target_id": "sales",
                    "condition": {"logic": "AND", "conditions": [{"field": "stage", "operator": "eq", "value": "x"}]},
                }
            ],
            ["amount"],
        )
        self.assertEqual(errors[0]["code"], "CONDITION_FIELD_UNKNOWN")
        self.assertEqual(errors[0]["path"], "$.record_rules[0].condition.conditions[0].field")


if __name__ == "__main__":
    unittest.main()
