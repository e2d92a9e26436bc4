from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any


logger = logging.getLogger("subtrack.events")


@dataclass(frozen=True, slots=True)
class InternalEvent:
    name: str
    payload: dict[str, Any]


EventHandler = Callable[[InternalEvent], None]


class InProcessEventBus:
    """Synchronous publish/subscribe bus.

    Handlers run in subscription order. A failing handler is logged and does not
    prevent the remaining handlers from receiving the event.
    """

    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._subscribers[event_name]:
            self._subscribers[event_name].append(handler)

    def handlers_for(self, event_name: str) -> list[EventHandler]:
        return list(self._subscribers.get(event_name, []))

    def clear(self) -> None:
        self._subscribers.clear()

    def publish(self, event_name: str, payload: dict[str, Any]) -> int:
        event = InternalEvent(name=event_name, payload=payload)
        delivered = 0
        for handler in self.handlers_for(event_name):
            try:
                handler(event)
                delivered += 1
            except Exception as exc:
                logger.exception("event.handler_failed", extra={"event_name": event_name, "error": str(exc)[:500]})
        return delivered


event_bus = InProcessEventBus()
