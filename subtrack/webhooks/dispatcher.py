from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.orm import Session

from subtrack.core.clock import utcnow
from subtrack.core.config import get_settings
from subtrack.errors import RetryableDeliveryError
from subtrack.metrics import observe_webhook_delivery
from subtrack.otel import get_tracer
from subtrack.subscription.events import SUBSCRIPTION_RENEWED, SubscriptionRenewed
from subtrack.webhooks.enums import DeliveryOutcome
from subtrack.webhooks.models import WebhookConfig, WebhookDelivery
from subtrack.webhooks.repository import WebhookConfigRepository, WebhookDeliveryRepository
from subtrack.webhooks.signing import SIGNATURE_HEADER, sign


logger = logging.getLogger("subtrack.webhooks")
tracer = get_tracer("subtrack.webhooks")


@dataclass(frozen=True, slots=True)
class DispatchJob:
    """Queue payload for one renewal notification. Must stay JSON-serializable."""

    subscription_id: uuid.UUID
    user_id: uuid.UUID
    billing_history_id: uuid.UUID
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_event(cls, event: SubscriptionRenewed) -> DispatchJob:
        return cls(
            subscription_id=event.subscription_id,
            user_id=event.user_id,
            billing_history_id=event.billing_history_id,
            payload=event.to_flat_map(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "subscription_id": str(self.subscription_id),
            "user_id": str(self.user_id),
            "billing_history_id": str(self.billing_history_id),
            "payload": dict(self.payload),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DispatchJob:
        return cls(
            subscription_id=uuid.UUID(str(data["subscription_id"])),
            user_id=uuid.UUID(str(data["user_id"])),
            billing_history_id=uuid.UUID(str(data["billing_history_id"])),
            payload=dict(data.get("payload") or {}),
        )

    def event(self) -> SubscriptionRenewed:
        return SubscriptionRenewed.from_flat_map(self.payload)


def build_renewal_payload(event: SubscriptionRenewed, *, attempt: int, source: str, now: datetime) -> dict[str, Any]:
    amount_formatted = event.currency.format(event.amount)
    return {
        "event": SUBSCRIPTION_RENEWED,
        "timestamp": now.isoformat(),
        "data": {
            "user_id": str(event.user_id),
            "subscription": {
                "id": str(event.subscription_id),
                "name": event.subscription_name,
                "amount": event.amount,
                "amount_formatted": amount_formatted,
                "currency": event.currency.value,
                "billing_cycle": event.billing_cycle.value,
                "next_billing_date": event.next_billing_date.isoformat(),
            },
            "billing": {
                "id": str(event.billing_history_id),
                "amount_paid": event.amount,
                "amount_formatted": amount_formatted,
                "currency": event.currency.value,
                "billing_date": event.billing_date.isoformat(),
            },
        },
        "metadata": {
            "source": source,
            "attempt": attempt,
            "occurred_at": event.occurred_at.isoformat(),
        },
    }


def encode_body(payload: Mapping[str, Any]) -> bytes:
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")


def build_headers(
    body: bytes,
    *,
    event_type: str,
    request_id: str,
    source: str,
    secret: str | None,
    subscription_id: uuid.UUID | None = None,
    attempt: int = 1,
) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": f"{source}/webhooks",
        "X-Event-Type": event_type,
        "X-Request-Id": request_id,
        "X-Delivery-Attempt": str(attempt),
    }
    if subscription_id is not None:
        headers["X-Subscription-Id"] = str(subscription_id)
    if secret:
        headers[SIGNATURE_HEADER] = sign(body, secret)
    return headers


def is_retryable_status(status_code: int | None) -> bool:
    return status_code is None or status_code == 429 or status_code >= 500


def classify(status_code: int | None, attempt: int, max_attempts: int) -> DeliveryOutcome:
    if status_code is not None and 200 <= status_code < 300:
        return DeliveryOutcome.SUCCEEDED
    if not is_retryable_status(status_code):
        return DeliveryOutcome.FAILED
    if attempt >= max_attempts:
        return DeliveryOutcome.EXHAUSTED
    return DeliveryOutcome.RETRYING


@dataclass(slots=True)
class WebhookDispatcher:
    """Performs a single delivery attempt and records it.

    Retrying is left to the caller: a retryable failure below ``max_attempts``
    raises ``RetryableDeliveryError`` after the attempt row is committed.
    """

    client: httpx.Client | None = None
    timeout_seconds: float | None = None
    source: str | None = None
    config_repository: WebhookConfigRepository = WebhookConfigRepository()
    delivery_repository: WebhookDeliveryRepository = WebhookDeliveryRepository()

    def dispatch(
        self,
        session: Session,
        job: DispatchJob,
        *,
        attempt: int = 1,
        max_attempts: int | None = None,
    ) -> DeliveryOutcome:
        limit = max_attempts or get_settings().webhook_max_attempts
        log_fields: dict[str, Any] = {
            "subscription_id": str(job.subscription_id),
            "billing_history_id": str(job.billing_history_id),
            "user_id": str(job.user_id),
            "attempt": attempt,
            "max_attempts": limit,
        }

        with tracer.start_as_current_span("webhook.delivery") as span:
            span.set_attribute("webhook.attempt", attempt)
            span.set_attribute("subscription.id", str(job.subscription_id))

            config = self.config_repository.active_for_user(session, job.user_id)
            if config is None:
                observe_webhook_delivery(DeliveryOutcome.SKIPPED.value)
                logger.info("webhook.delivery.skipped", extra={**log_fields, "reason": "no_active_config"})
                return DeliveryOutcome.SKIPPED

            log_fields.update({"webhook_config_id": str(config.id), "webhook_url": config.url})
            if self.delivery_repository.has_succeeded(session, job.billing_history_id, config.id):
                observe_webhook_delivery(DeliveryOutcome.SKIPPED.value)
                logger.info("webhook.delivery.skipped", extra={**log_fields, "reason": "already_delivered"})
                return DeliveryOutcome.SUCCEEDED

            source = self._source()
            body = encode_body(build_renewal_payload(job.event(), attempt=attempt, source=source, now=utcnow()))
            request_id = str(uuid.uuid4())
            headers = build_headers(
                body,
                event_type=SUBSCRIPTION_RENEWED,
                request_id=request_id,
                source=source,
                secret=config.secret,
                subscription_id=job.subscription_id,
                attempt=attempt,
            )

            status_code, error, duration_ms = self._post(config.url, body, headers)
            outcome = classify(status_code, attempt, limit)
            span.set_attribute("webhook.outcome", outcome.value)
            if status_code is not None:
                span.set_attribute("http.status_code", status_code)

            self.delivery_repository.append(
                session,
                WebhookDelivery(
                    id=uuid.uuid4(),
                    event_type=SUBSCRIPTION_RENEWED,
                    billing_history_id=job.billing_history_id,
                    subscription_id=job.subscription_id,
                    user_id=job.user_id,
                    webhook_config_id=config.id,
                    url=config.url,
                    request_id=request_id,
                    attempt=attempt,
                    status_code=status_code,
                    outcome=outcome,
                    error=error[:500] if error else None,
                    duration_ms=duration_ms,
                    created_at=utcnow(),
                ),
            )
            session.commit()

            observe_webhook_delivery(outcome.value, duration_ms / 1000)
            fields = {**log_fields, "status_code": status_code, "outcome": outcome.value, "duration_ms": duration_ms}
            if outcome is DeliveryOutcome.SUCCEEDED:
                logger.info("webhook.delivery.succeeded", extra=fields)
                return outcome

            span.set_status(Status(StatusCode.ERROR, error))
            if outcome is DeliveryOutcome.RETRYING:
                logger.warning("webhook.delivery.retrying", extra={**fields, "error": error})
                raise RetryableDeliveryError(error or "retryable delivery failure", status_code=status_code)

            logger.error("webhook.delivery.failed", extra={**fields, "error": error})
            return outcome

    def send(self, config: WebhookConfig, *, event_type: str, payload: Mapping[str, Any]) -> tuple[int | None, str]:
        """Signed one-off POST that is not recorded as a delivery. Returns status code and response body."""
        body = encode_body(payload)
        headers = build_headers(
            body,
            event_type=event_type,
            request_id=str(uuid.uuid4()),
            source=self._source(),
            secret=config.secret,
        )
        client = self.client or httpx.Client(timeout=self._timeout())
        try:
            response = client.post(config.url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            return None, str(exc)
        finally:
            if self.client is None:
                client.close()
        return response.status_code, response.text

    def _post(self, url: str, body: bytes, headers: dict[str, str]) -> tuple[int | None, str | None, float]:
        client = self.client or httpx.Client(timeout=self._timeout())
        started = time.perf_counter()
        try:
            response = client.post(url, content=body, headers=headers)
        except httpx.TimeoutException as exc:
            return None, f"timeout: {exc}", self._elapsed(started)
        except httpx.TransportError as exc:
            return None, f"transport error: {exc}", self._elapsed(started)
        finally:
            if self.client is None:
                client.close()

        if 200 <= response.status_code < 300:
            return response.status_code, None, self._elapsed(started)
        return response.status_code, f"HTTP {response.status_code}: {response.text[:200]}", self._elapsed(started)

    def _timeout(self) -> float:
        return self.timeout_seconds or get_settings().webhook_timeout_seconds

    def _source(self) -> str:
        return self.source or get_settings().webhook_source

    @staticmethod
    def _elapsed(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)
