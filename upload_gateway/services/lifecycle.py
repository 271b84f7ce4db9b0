"""Upload lifecycle events and the bridge that turns per-token event streams into one completion/failure log."""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Callable
from typing import Any

from upload_gateway.core.metrics import record_upload_event

logger = logging.getLogger(__name__)

UPLOAD_START = "upload-start"
TERMINAL_ACTIONS = ("success", "error")

Listener = Callable[[dict], None]


class UploadEvents:
    """Synchronous observer registry. Topics are event names or upload tokens."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, topic: str, listener: Listener) -> None:
        self._listeners[topic].append(listener)

    def off(self, topic: str, listener: Listener) -> None:
        listeners = self._listeners.get(topic)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            del self._listeners[topic]

    def emit(self, topic: str, event: dict) -> None:
        # copy: listeners may unsubscribe while being called
        for listener in list(self._listeners.get(topic, ())):
            try:
                listener(event)
            except Exception:
                logger.exception("Upload event listener failed", extra={"topic": topic})

    def listener_count(self, topic: str) -> int:
        return len(self._listeners.get(topic, ()))


class LifecycleBridge:
    """Logs exactly one terminal outcome per upload token, then forgets the token.

    The pending registry is the single source of truth: whichever terminal event
    pops the token first is the one that logs, and it also unsubscribes.
    """

    def __init__(self, events: UploadEvents) -> None:
        self.events = events
        self._pending: dict[str, float] = {}

    def attach(self) -> None:
        self.events.on(UPLOAD_START, self._on_upload_start)

    def detach(self) -> None:
        self.events.off(UPLOAD_START, self._on_upload_start)
        for token in list(self._pending):
            self.events.off(token, self._on_upload_event)
        self._pending.clear()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _on_upload_start(self, event: dict) -> None:
        token = event.get("token")
        if not token:
            return
        logger.info("Upload started %s", token)
        record_upload_event("started")
        if token in self._pending:
            # restarted upload under the same token: keep a single subscription
            self._pending[token] = time.monotonic()
            return
        self._pending[token] = time.monotonic()
        self.events.on(token, self._on_upload_event)

    def _on_upload_event(self, event: dict) -> None:
        action = event.get("action")
        if action not in TERMINAL_ACTIONS:
            return
        token = event.get("token")
        started = self._pending.pop(token, None)
        if started is None:
            return
        self.events.off(token, self._on_upload_event)
        payload: dict[str, Any] = event.get("payload") or {}
        duration_s = round(time.monotonic() - started, 3)
        if action == "success":
            logger.info("Upload finished %s %s", token, payload.get("url"), extra={"duration_s": duration_s})
            record_upload_event("finished")
        else:
            logger.error("Upload failed %s %s", token, payload.get("error"), extra={"duration_s": duration_s})
            record_upload_event("failed")
