from __future__ import annotations

import logging
from collections.abc import Callable

from subtrack.core.events import InProcessEventBus, InternalEvent, event_bus
from subtrack.subscription.events import SUBSCRIPTION_RENEWED, SubscriptionRenewed
from subtrack.webhooks.dispatcher import DispatchJob
from subtrack.webhooks.tasks import enqueue_dispatch


logger = logging.getLogger("subtrack.webhooks")

Enqueue = Callable[[DispatchJob], None]


class WebhookDispatchListener:
    """Turns ``subscription.renewed`` events into queued webhook dispatch jobs."""

    def __init__(self, enqueue: Enqueue | None = None) -> None:
        self._enqueue = enqueue or enqueue_dispatch

    def __call__(self, event: InternalEvent) -> None:
        renewed = SubscriptionRenewed.from_flat_map(event.payload)
        job = DispatchJob.from_event(renewed)
        self._enqueue(job)
        logger.info(
            "webhook.dispatch.enqueued",
            extra={
                "subscription_id": str(job.subscription_id),
                "billing_history_id": str(job.billing_history_id),
                "user_id": str(job.user_id),
            },
        )

    def register(self, bus: InProcessEventBus = event_bus) -> None:
        bus.subscribe(SUBSCRIPTION_RENEWED, self)

