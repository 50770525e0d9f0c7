"""Domain event constants and publisher.

Defines event type constants and an `EventBus` used by the local store, the
sync processor and the connectivity monitor. One bus is created per client
context; there is no module-level event state.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

RESPONSE_SAVED = "response.saved"
RESPONSE_SYNCED = "response.synced"
RESPONSE_REENQUEUED = "response.reenqueued"
SYNC_ENTRY_FAILED = "sync_entry.failed"
SYNC_ENTRY_ABANDONED = "sync_entry.abandoned"
SYNC_RUN_COMPLETED = "sync_run.completed"
CONNECTIVITY_CHANGED = "connectivity.changed"

Subscriber = Callable[[str, Dict[str, Any]], None]


class EventBus:
    """Publish domain events to subscribers and keep a buffer for observation."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []
        self._buffer: List[Dict[str, Any]] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register `callback`; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event_type: str, payload: Dict[str, Any]) -> None:
        logger.info("event_publish type=%s payload=%s", event_type, payload)
        self._buffer.append({"type": event_type, "payload": dict(payload)})
        for callback in list(self._subscribers):
            try:
                callback(event_type, payload)
            except Exception:
                # A failing observer must not break the store or processor flow
                logger.error("event_subscriber_failed type=%s", event_type, exc_info=True)

    def buffered(self, clear: bool = True) -> List[Dict[str, Any]]:
        """Return buffered events; optionally clear the buffer."""
        events = list(self._buffer)
        if clear:
            self._buffer.clear()
        return events


__all__ = [
    "RESPONSE_SAVED",
    "RESPONSE_SYNCED",
    "RESPONSE_REENQUEUED",
    "SYNC_ENTRY_FAILED",
    "SYNC_ENTRY_ABANDONED",
    "SYNC_RUN_COMPLETED",
    "CONNECTIVITY_CHANGED",
    "EventBus",
]
