"""In-process domain events.

Every successful pipeline mutation publishes one envelope. Envelopes are kept
in ``published_events`` for inspection and handed to any handler subscribed to
their ``event_type``.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from dealflow.context import get_correlation_id


logger = logging.getLogger("dealflow.events")

Envelope = dict[str, Any]
EventHandler = Callable[[Envelope], None]

published_events: list[Envelope] = []


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        if handler not in self._handlers[event_type]:
            self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if handler in self._handlers.get(event_type, []):
            self._handlers[event_type].remove(handler)

    def dispatch(self, envelope: Envelope) -> None:
        # handlers run after commit; their failures are logged, not raised
        for handler in list(self._handlers.get(envelope["event_type"], [])):
            try:
                handler(envelope)
            except Exception:
                logger.exception(
                    "event.handler_failed",
                    extra={"event_name": envelope["event_type"], "error": getattr(handler, "__name__", repr(handler))},
                )


bus = EventBus()


def build_envelope(event_type: str, actor_user_id: str, payload: dict[str, Any]) -> Envelope:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "correlation_id": get_correlation_id(),
        "version": 1,
        "payload": payload,
    }


def publish(envelope: Envelope) -> None:
    published_events.append(envelope)
    bus.dispatch(envelope)
