from __future__ import annotations

import logging

from subtrack.core.config import get_settings
from subtrack.core.events import InProcessEventBus, event_bus
from subtrack.logging import configure_logging
from subtrack.metrics import start_metrics_server
from subtrack.otel import setup_otel
from subtrack.webhooks.listener import WebhookDispatchListener


logger = logging.getLogger("subtrack.bootstrap")

_bootstrapped = False


def register_listeners(bus: InProcessEventBus = event_bus) -> WebhookDispatchListener:
    listener = WebhookDispatchListener()
    listener.register(bus)
    return listener


def bootstrap() -> None:
    """Process-level wiring for workers and the CLI. Safe to call more than once."""
    global _bootstrapped

    if _bootstrapped:
        return

    settings = get_settings()
    configure_logging()
    setup_otel(settings)
    if settings.metrics_enabled:
        start_metrics_server(settings.metrics_port)
    register_listeners()

    _bootstrapped = True
    logger.info("bootstrap.completed")
