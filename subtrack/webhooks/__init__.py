from subtrack.webhooks.dispatcher import DispatchJob, WebhookDispatcher
from subtrack.webhooks.enums import DeliveryOutcome
from subtrack.webhooks.listener import WebhookDispatchListener
from subtrack.webhooks.models import WebhookConfig, WebhookDelivery
from subtrack.webhooks.schemas import WebhookConfigCreate, WebhookConfigRead, WebhookConfigUpdate, WebhookTestResult
from subtrack.webhooks.service import WebhookConfigService, webhook_config_service
from subtrack.webhooks.signing import sign, verify_signature

__all__ = [
    "DeliveryOutcome",
    "DispatchJob",
    "WebhookDispatcher",
    "WebhookDispatchListener",
    "WebhookConfig",
    "WebhookDelivery",
    "WebhookConfigCreate",
    "WebhookConfigUpdate",
    "WebhookConfigRead",
    "WebhookTestResult",
    "WebhookConfigService",
    "webhook_config_service",
    "sign",
    "verify_signature",
]
