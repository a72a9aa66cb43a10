"""Outbound webhooks for record triggers."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, Iterable, List

import httpx


logger = logging.getLogger("dynapp.webhooks")

RESPONSE_BODY_LIMIT = 1000
LOG_LIMIT = 500


@dataclass
class WebhookConfig:
    id: str
    url: str
    trigger_type: str
    headers: Dict[str, str] = field(default_factory=dict)
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict) -> "WebhookConfig":
        headers = data.get("headers") or {}
        return cls(
            id=str(data.get("id") or ""),
            url=str(data.get("url") or ""),
            trigger_type=str(data.get("trigger_type") or ""),
            headers={str(k): str(v) for k, v in headers.items()} if isinstance(headers, dict) else {},
            is_active=bool(data.get("is_active", True)),
        )


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_payload(
    trigger_type: str,
    app: dict,
    record: dict | None,
    record_id: str | None,
    actor_id: str | None,
    extra: dict | None = None,
) -> dict:
    return {
        "event": trigger_type,
        "app": {"id": app.get("id"), "code": app.get("code")},
        "record": record,
        "record_id": record_id,
        "actor": actor_id,
        "extra": extra,
        "timestamp": _now(),
    }


def _truncate(text: str | None) -> str | None:
    if text is None or len(text) <= RESPONSE_BODY_LIMIT:
        return text
    return text[:RESPONSE_BODY_LIMIT] + "... (truncated)"


class WebhookDispatcher:
    """POSTs JSON to matching webhooks and keeps the latest deliveries in `log`.

    With `submit` (e.g. an executor's submit) sending happens off the
    caller's thread and `fire` returns at once. Delivery problems end up in
    the log entry; dispatch never raises.
    """

    def __init__(
        self,
        client: httpx.Client | None = None,
        timeout: float = 10.0,
        enabled: bool = True,
        submit: Callable[..., Any] | None = None,
        log_limit: int = LOG_LIMIT,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._enabled = enabled
        self._submit = submit
        self.log: Deque[dict] = deque(maxlen=log_limit)

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)
        return self._client

    def deliver(self, webhook: WebhookConfig, payload: dict) -> dict:
        status: int | None = None
        body: str | None = None
        error: str | None = None
        headers = {"Content-Type": "application/json", **webhook.headers}
        try:
            resp = self._http().post(webhook.url, json=payload, headers=headers, timeout=self._timeout)
            status = resp.status_code
            body = _truncate(resp.text)
            if status >= 400:
                logger.warning("webhook_http_error webhook_id=%s status=%s", webhook.id, status)
        except httpx.HTTPError as exc:
            error = str(exc) or exc.__class__.__name__
            logger.warning("webhook_failed webhook_id=%s error=%s", webhook.id, error)
        entry = {
            "webhook_id": webhook.id,
            "trigger_type": webhook.trigger_type,
            "payload": payload,
            "response_status": status,
            "response_body": body,
            "error_message": error,
            "at": _now(),
        }
        self.log.append(entry)
        return entry

    def _deliver_all(self, webhooks: List[WebhookConfig], trigger_type: str, payload: dict) -> List[dict]:
        entries = [self.deliver(webhook, payload) for webhook in webhooks]
        logger.info("webhooks_fired trigger=%s count=%s", trigger_type, len(entries))
        return entries

    def fire(self, webhooks: Iterable[Any], trigger_type: str, payload: dict) -> List[dict]:
        """Send to active webhooks for the trigger.

        Returns the log entries when sending inline, [] when handed to submit.
        """
        if not self._enabled:
            return []
        matched = []
        for item in webhooks:
            webhook = item if isinstance(item, WebhookConfig) else WebhookConfig.from_dict(item)
            if webhook.is_active and webhook.trigger_type == trigger_type and webhook.url:
                matched.append(webhook)
        if not matched:
            return []
        if self._submit is not None:
            self._submit(self._deliver_all, matched, trigger_type, payload)
            logger.info("webhooks_queued trigger=%s count=%s", trigger_type, len(matched))
            return []
        return self._deliver_all(matched, trigger_type, payload)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
