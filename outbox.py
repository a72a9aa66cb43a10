"""Committed events waiting for delivery to external consumers."""

from __future__ import annotations

import copy
import logging
import threading
from typing import List

from event_bus import Event, validate_event


logger = logging.getLogger("dynapp.outbox")


class Outbox:
    """FIFO of validated envelopes; consumers read pending events and ack them by id."""

    def __init__(self, lock: threading.RLock | None = None) -> None:
        self._lock = lock or threading.RLock()
        self._events: List[Event] = []

    def enqueue(self, event: Event) -> None:
        validate_event(event)
        with self._lock:
            self._events.append(copy.deepcopy(event))

    def pending(self, name: str | None = None, app_code: str | None = None) -> list[dict]:
        with self._lock:
            events = list(self._events)
        if name is not None:
            events = [e for e in events if e["name"] == name]
        if app_code is not None:
            events = [e for e in events if e["meta"].get("app_code") == app_code]
        return [copy.deepcopy(e) for e in events]

    def ack(self, event_id: str) -> bool:
        with self._lock:
            for idx, event in enumerate(self._events):
                if event["meta"]["event_id"] == event_id:
                    del self._events[idx]
                    logger.info("outbox_ack event_id=%s name=%s", event_id, event["name"])
                    return True
        return False
