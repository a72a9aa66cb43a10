import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from dynapp import rules_hash
from event_bus import (
    RECORD_CREATED,
    STATUS_CHANGED,
    EventBus,
    EventValidationError,
    event_issues,
    event_meta,
    make_event,
)
from outbox import Outbox


def _meta(**overrides) -> dict:
    meta = event_meta("deals", {"id": "u1", "roles": ["sales"]}, rules_hash({"app_permissions": []}))
    meta.update(overrides)
    return meta


def _created(meta: dict | None = None) -> dict:
    return make_event(RECORD_CREATED, {"app_code": "deals", "record_id": "r1", "record": {"id": "r1"}}, meta or _meta())


class TestEnvelope(unittest.TestCase):
    def test_make_event_fills_meta(self) -> None:
        meta = _created()["meta"]
        self.assertEqual(meta["schema_version"], "1")
        self.assertTrue(meta["occurred_at"].endswith("Z"))
        self.assertIsInstance(meta["event_id"], str)

    def test_known_event_needs_payload_keys(self) -> None:
        with self.assertRaises(EventValidationError) as ctx:
            make_event(STATUS_CHANGED, {"app_code": "deals", "record_id": "r1"}, _meta())
        self.assertEqual(ctx.exception.code, "PAYLOAD_INCOMPLETE")

    def test_unknown_names_are_free_form(self) -> None:
        event = make_event("custom.ping", {"n": 1}, _meta())
        self.assertEqual(event_issues(event), [])

    def test_rules_hash_must_be_full_digest(self) -> None:
        make_event("custom.ping", {}, _meta(rules_hash=None))
        with self.assertRaises(EventValidationError) as ctx:
            make_event("custom.ping", {}, _meta(rules_hash="sha256:abcd"))
        self.assertEqual(ctx.exception.code, "META_RULES_HASH_INVALID")

    def test_all_issues_reported(self) -> None:
        event = _created()
        event["meta"]["occurred_at"] = "2026-01-29T01:23:45"
        event["meta"]["app_code"] = ""
        codes = [i["code"] for i in event_issues(event)]
        self.assertEqual(codes, ["META_OCCURRED_AT_INVALID", "META_APP_CODE_INVALID"])

    def test_payload_rejects_nan(self) -> None:
        event = make_event("custom.ping", {"value": 1.0}, _meta())
        event["payload"]["value"] = float("nan")
        self.assertEqual(event_issues(event)[0]["code"], "PAYLOAD_INVALID")


class TestEventBus(unittest.TestCase):
    def test_publish_enqueues_then_dispatches(self) -> None:
        outbox = Outbox()
        bus = EventBus(outbox)
        seen = []
        bus.subscribe(RECORD_CREATED, lambda evt: seen.append(len(outbox.pending())))
        event_id = bus.publish(_created())
        self.assertEqual(seen, [1])
        self.assertEqual(outbox.pending()[0]["meta"]["event_id"], event_id)

    def test_handlers_in_order_and_wildcard_last(self) -> None:
        bus = EventBus()
        calls = []
        bus.subscribe("*", lambda evt: calls.append("any"))
        bus.subscribe(RECORD_CREATED, lambda evt: calls.append("h1"))
        bus.subscribe(RECORD_CREATED, lambda evt: calls.append("h2"))
        bus.publish(_created())
        self.assertEqual(calls, ["h1", "h2", "any"])

    def test_failing_handler_does_not_stop_others(self) -> None:
        bus = EventBus()
        calls = []

        def broken(evt: dict) -> None:
            raise RuntimeError("boom")

        bus.subscribe(RECORD_CREATED, broken)
        bus.subscribe(RECORD_CREATED, lambda evt: calls.append("after"))
        with self.assertLogs("dynapp.events", level="ERROR"):
            bus.publish(_created())
        self.assertEqual(calls, ["after"])

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        calls = []

        def handler(evt: dict) -> None:
            calls.append(evt["name"])

        bus.subscribe(RECORD_CREATED, handler)
        self.assertTrue(bus.unsubscribe(RECORD_CREATED, handler))
        self.assertFalse(bus.unsubscribe(RECORD_CREATED, handler))
        bus.publish(_created())
        self.assertEqual(calls, [])

    def test_invalid_event_not_enqueued(self) -> None:
        outbox = Outbox()
        event = _created()
        event.pop("name")
        with self.assertRaises(EventValidationError):
            EventBus(outbox).publish(event)
        self.assertEqual(outbox.pending(), [])

    def test_emit_builds_and_publishes(self) -> None:
        outbox = Outbox()
        event_id = EventBus(outbox).emit("custom.ping", {"n": 1}, _meta())
        self.assertEqual(outbox.pending("custom.ping")[0]["meta"]["event_id"], event_id)


if __name__ == "__main__":
    unittest.main()
