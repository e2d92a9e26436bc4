from __future__ import annotations

from collections import deque
from typing import Any

from subtrack.context import get_correlation_id
from subtrack.core.events import event_bus

# recent envelopes only; workers are long-lived
PUBLISHED_EVENTS_LIMIT = 1000
published_events: deque[dict[str, Any]] = deque(maxlen=PUBLISHED_EVENTS_LIMIT)


def publish(envelope: dict[str, Any]) -> int:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        return event_bus.publish(event_type, envelope)
    return 0
