from __future__ import annotations

import uuid

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from subtrack.repository import BaseRepository
from subtrack.webhooks.enums import DeliveryOutcome
from subtrack.webhooks.models import WebhookConfig, WebhookDelivery


class WebhookConfigRepository(BaseRepository):
    resource = "webhooks.config"
    model = WebhookConfig

    def active_for_user(self, session: Session, user_id: uuid.UUID) -> WebhookConfig | None:
        query = (
            select(WebhookConfig)
            .where(
                WebhookConfig.user_id == user_id,
                WebhookConfig.is_active.is_(True),
                WebhookConfig.deleted_at.is_(None),
            )
            .order_by(WebhookConfig.updated_at.desc())
            .limit(1)
        )
        return session.scalar(query)

    def list_for_user(self, session: Session, user_id: uuid.UUID) -> list[WebhookConfig]:
        query = select(WebhookConfig).where(
            WebhookConfig.user_id == user_id,
            WebhookConfig.deleted_at.is_(None),
        )
        return list(session.scalars(query.order_by(WebhookConfig.created_at)))


class WebhookDeliveryRepository(BaseRepository):
    resource = "webhooks.delivery"
    model = WebhookDelivery

    def append(self, session: Session, delivery: WebhookDelivery) -> WebhookDelivery:
        session.add(delivery)
        return delivery

    def has_succeeded(self, session: Session, billing_history_id: uuid.UUID, webhook_config_id: uuid.UUID) -> bool:
        count = session.scalar(
            select(func.count())
            .select_from(WebhookDelivery)
            .where(
                WebhookDelivery.billing_history_id == billing_history_id,
                WebhookDelivery.webhook_config_id == webhook_config_id,
                WebhookDelivery.outcome == DeliveryOutcome.SUCCEEDED,
            )
        )
        return bool(count)

    def list_for_billing_history(self, session: Session, billing_history_id: uuid.UUID) -> list[WebhookDelivery]:
        query = (
            select(WebhookDelivery)
            .where(WebhookDelivery.billing_history_id == billing_history_id)
            .order_by(WebhookDelivery.attempt, WebhookDelivery.created_at)
        )
        return list(session.scalars(query))
