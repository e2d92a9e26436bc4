from __future__ import annotations

import uuid
from datetime import datetime

import httpx
from sqlalchemy import Boolean, DateTime, Enum, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from subtrack.core.clock import utcnow
from subtrack.core.database import Base
from subtrack.errors import ValidationError
from subtrack.webhooks.enums import DeliveryOutcome


def validate_webhook_url(url: str) -> str:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise ValidationError(f"invalid webhook url: {url}") from exc
    if parsed.scheme not in {"http", "https"} or not parsed.host:
        raise ValidationError("webhook url must be an absolute http(s) url")
    return url


class WebhookConfig(Base):
    __tablename__ = "webhook_config"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    secret: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_webhook_config_user_active", "user_id", "is_active"),)

    @classmethod
    def create(cls, *, user_id: uuid.UUID, url: str, secret: str | None = None, is_active: bool = True) -> WebhookConfig:
        now = utcnow()
        return cls(
            id=uuid.uuid4(),
            user_id=user_id,
            url=validate_webhook_url(url),
            secret=secret or None,
            is_active=is_active,
            created_at=now,
            updated_at=now,
        )


class WebhookDelivery(Base):
    """One row per HTTP attempt against a webhook endpoint."""

    __tablename__ = "webhook_delivery"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    billing_history_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    webhook_config_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    request_id: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    outcome: Mapped[DeliveryOutcome] = mapped_column(Enum(DeliveryOutcome, native_enum=False, length=16), nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_ms: Mapped[float | None] = mapped_column(Numeric(12, 2, asdecimal=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_webhook_delivery_billing_history", "billing_history_id", "outcome"),
        Index("ix_webhook_delivery_config", "webhook_config_id", "created_at"),
    )
