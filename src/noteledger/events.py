"""In-process per-session event stream for UI/extension subscribers."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable

from .models.events import SessionEvent

logger = logging.getLogger(__name__)

Subscriber = Callable[[SessionEvent], None]

MAX_BUFFERED_EVENTS = 100


class SessionEventBus:
    """Publishes SessionEvents to subscribers of a session topic.

    Keeps the last MAX_BUFFERED_EVENTS events per session so a reconnecting
    subscriber can catch up by sequence.
    """

    def __init__(self, max_buffered: int = MAX_BUFFERED_EVENTS):
        self._subscribers: dict[str, list[Subscriber]] = {}
        self._buffers: dict[str, deque[SessionEvent]] = {}
        self._max_buffered = max_buffered
        self._lock = threading.Lock()

    def subscribe(self, session_id: str, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(session_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                subs = self._subscribers.get(session_id, [])
                if callback in subs:
                    subs.remove(callback)

        return unsubscribe

    def publish(self, event: SessionEvent) -> None:
        with self._lock:
            buffer = self._buffers.setdefault(event.session_id, deque(maxlen=self._max_buffered))
            buffer.append(event)
            subscribers = list(self._subscribers.get(event.session_id, []))
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                # A broken subscriber must not stall reconciliation
                logger.exception("Subscriber failed on %s for session %s", event.event_type.value, event.session_id)

    def recent(self, session_id: str, after_sequence: int = -1) -> list[SessionEvent]:
        with self._lock:
            return [e for e in self._buffers.get(session_id, ()) if e.sequence > after_sequence]
