from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from leadflow.context import get_correlation_id

logger = logging.getLogger("leadflow.events")

# Every envelope published in this process, oldest first.
published_events: list[dict[str, Any]] = []


@dataclass(frozen=True)
class BusEvent:
    name: str
    payload: dict[str, Any]
    delivered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[BusEvent], None]


class EventBus:
    """Delivers events to handlers synchronously, in subscription order.

    A handler that raises stops delivery and propagates to the publisher;
    handlers that must not affect the caller guard themselves.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event_name, [])
        if handler not in handlers:
            handlers.append(handler)

    def handlers_for(self, event_name: str) -> tuple[EventHandler, ...]:
        return tuple(self._handlers.get(event_name, ()))

    def deliver(self, event_name: str, payload: dict[str, Any]) -> int:
        event = BusEvent(name=event_name, payload=payload)
        handlers = self.handlers_for(event_name)
        for handler in handlers:
            handler(event)
        return len(handlers)


event_bus = EventBus()


def build_envelope(
    event_type: str,
    *,
    actor_user_id: str,
    sub_account_id: uuid.UUID | None,
    payload: dict[str, Any],
) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "sub_account_id": str(sub_account_id) if sub_account_id is not None else None,
        "version": 1,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    envelope.setdefault("correlation_id", None)
    if envelope["correlation_id"] is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if not isinstance(event_type, str) or not event_type:
        return
    delivered = event_bus.deliver(event_type, envelope)
    logger.debug("event.published", extra={"event_type": event_type, "handlers": delivered})
