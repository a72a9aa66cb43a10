import json
import os
import sys
import unittest

import httpx


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from app.webhooks import WebhookConfig, WebhookDispatcher, build_payload


APP = {"id": "app1", "code": "deals", "name": "Deals"}


class TestWebhooks(unittest.TestCase):
    def setUp(self) -> None:
        self.requests = []

    def _client(self, status: int = 200, body: str = "ok") -> httpx.Client:
        def handler(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return httpx.Response(status, text=body)

        return httpx.Client(transport=httpx.MockTransport(handler))

    def _hooks(self) -> list:
        return [
            {"id": "w1", "url": "https://example.test/hook", "trigger_type": "record_added", "headers": {"X-Token": "t"}},
            {"id": "w2", "url": "https://example.test/other", "trigger_type": "record_deleted"},
            {"id": "w3", "url": "https://example.test/off", "trigger_type": "record_added", "is_active": False},
        ]

    def test_payload_shape(self) -> None:
        payload = build_payload("record_added", APP, {"id": "r1"}, "r1", "u1")
        self.assertEqual(payload["event"], "record_added")
        self.assertEqual(payload["app"], {"id": "app1", "code": "deals"})
        self.assertTrue(payload["timestamp"].endswith("Z"))

    def test_fire_matches_trigger_and_active(self) -> None:
        dispatcher = WebhookDispatcher(client=self._client())
        payload = build_payload("record_added", APP, {"id": "r1"}, "r1", "u1")
        entries = dispatcher.fire(self._hooks(), "record_added", payload)
        self.assertEqual([e["webhook_id"] for e in entries], ["w1"])
        self.assertEqual(entries[0]["response_status"], 200)
        sent = self.requests[0]
        self.assertEqual(sent.headers["X-Token"], "t")
        self.assertEqual(json.loads(sent.content)["record_id"], "r1")

    def test_http_error_status_logged(self) -> None:
        dispatcher = WebhookDispatcher(client=self._client(status=500, body="x" * 2000))
        with self.assertLogs("dynapp.webhooks", level="WARNING"):
            entry = dispatcher.deliver(WebhookConfig.from_dict(self._hooks()[0]), {"event": "record_added"})
        self.assertEqual(entry["response_status"], 500)
        self.assertTrue(entry["response_body"].endswith("... (truncated)"))
        self.assertEqual(len(entry["response_body"]), 1000 + len("... (truncated)"))

    def test_transport_error_recorded(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        dispatcher = WebhookDispatcher(client=httpx.Client(transport=httpx.MockTransport(handler)))
        with self.assertLogs("dynapp.webhooks", level="WARNING"):
            entry = dispatcher.deliver(WebhookConfig.from_dict(self._hooks()[0]), {"event": "record_added"})
        self.assertIsNone(entry["response_status"])
        self.assertEqual(entry["error_message"], "refused")
        self.assertEqual(list(dispatcher.log), [entry])

    def test_submit_sends_off_the_calling_thread(self) -> None:
        queued = []
        dispatcher = WebhookDispatcher(client=self._client(), submit=lambda fn, *args: queued.append((fn, args)))
        payload = build_payload("record_added", APP, {"id": "r1"}, "r1", "u1")
        with self.assertLogs("dynapp.webhooks", level="INFO"):
            self.assertEqual(dispatcher.fire(self._hooks(), "record_added", payload), [])
        self.assertEqual(self.requests, [])
        self.assertEqual(len(queued), 1)
        fn, args = queued[0]
        entries = fn(*args)
        self.assertEqual([e["webhook_id"] for e in entries], ["w1"])
        self.assertEqual(len(self.requests), 1)

    def test_submit_skipped_without_matching_hooks(self) -> None:
        queued = []
        dispatcher = WebhookDispatcher(client=self._client(), submit=lambda fn, *args: queued.append(fn))
        dispatcher.fire(self._hooks(), "record_updated", {})
        self.assertEqual(queued, [])

    def test_log_keeps_latest_entries(self) -> None:
        dispatcher = WebhookDispatcher(client=self._client(), log_limit=2)
        hook = WebhookConfig.from_dict(self._hooks()[0])
        for idx in range(5):
            dispatcher.deliver(hook, {"n": idx})
        self.assertEqual([e["payload"]["n"] for e in dispatcher.log], [3, 4])

    def test_disabled_dispatcher_sends_nothing(self) -> None:
        dispatcher = WebhookDispatcher(client=self._client(), enabled=False)
        self.assertEqual(dispatcher.fire(self._hooks(), "record_added", {}), [])
        self.assertEqual(self.requests, [])


if __name__ == "__main__":
    unittest.main()
