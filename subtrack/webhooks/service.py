from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from subtrack.audit import ActorContext
from subtrack.core.clock import utcnow
from subtrack.core.config import get_settings
from subtrack.errors import NotFoundError
from subtrack.webhooks.dispatcher import WebhookDispatcher
from subtrack.webhooks.models import WebhookConfig, validate_webhook_url
from subtrack.webhooks.repository import WebhookConfigRepository
from subtrack.webhooks.schemas import WebhookConfigCreate, WebhookConfigRead, WebhookConfigUpdate, WebhookTestResult


logger = logging.getLogger("subtrack.webhooks")

TEST_EVENT = "webhook.test"


@dataclass(slots=True)
class WebhookConfigService:
    """Manages the per-user endpoint that receives renewal notifications.

    A user has at most one active config; creating or activating one
    deactivates the others.
    """

    config_repository: WebhookConfigRepository = WebhookConfigRepository()
    dispatcher: WebhookDispatcher = field(default_factory=WebhookDispatcher)

    def create_config(self, session: Session, actor: ActorContext, payload: WebhookConfigCreate) -> WebhookConfigRead:
        config = WebhookConfig.create(
            user_id=payload.user_id,
            url=payload.url,
            secret=payload.secret,
            is_active=payload.is_active,
        )
        if config.is_active:
            self._deactivate_others(session, actor, config.user_id, keep=config.id)
        self.config_repository.add(session, config, actor)
        session.commit()
        session.refresh(config)
        logger.info("webhook.config.created", extra={"webhook_config_id": str(config.id), "user_id": str(config.user_id)})
        return self._to_read(config)

    def get_config(self, session: Session, config_id: uuid.UUID) -> WebhookConfigRead:
        return self._to_read(self._get(session, config_id))

    def update_config(
        self,
        session: Session,
        actor: ActorContext,
        config_id: uuid.UUID,
        payload: WebhookConfigUpdate,
    ) -> WebhookConfigRead:
        config = self._get(session, config_id)
        before = self.config_repository.snapshot(config)
        changes = payload.model_dump(exclude_unset=True)
        if "url" in changes and changes["url"] is not None:
            config.url = validate_webhook_url(changes["url"])
        if "secret" in changes:
            config.secret = changes["secret"] or None
        return self._save(session, actor, config, "update", before)

    def activate(self, session: Session, actor: ActorContext, config_id: uuid.UUID) -> WebhookConfigRead:
        config = self._get(session, config_id)
        before = self.config_repository.snapshot(config)
        self._deactivate_others(session, actor, config.user_id, keep=config.id)
        config.is_active = True
        return self._save(session, actor, config, "activate", before)

    def deactivate(self, session: Session, actor: ActorContext, config_id: uuid.UUID) -> WebhookConfigRead:
        config = self._get(session, config_id)
        before = self.config_repository.snapshot(config)
        config.is_active = False
        return self._save(session, actor, config, "deactivate", before)

    def delete_config(self, session: Session, actor: ActorContext, config_id: uuid.UUID) -> None:
        config = self._get(session, config_id)
        config.is_active = False
        self.config_repository.soft_delete(session, config, actor)
        session.commit()
        logger.info("webhook.config.deleted", extra={"webhook_config_id": str(config_id)})

    def send_test(self, session: Session, config_id: uuid.UUID) -> WebhookTestResult:
        config = self._get(session, config_id)
        payload = {
            "event": TEST_EVENT,
            "timestamp": utcnow().isoformat(),
            "data": {
                "message": "Test webhook delivery",
                "webhook_config_id": str(config.id),
                "user_id": str(config.user_id),
            },
            "metadata": {"source": get_settings().webhook_source},
        }
        status_code, body = self.dispatcher.send(config, event_type=TEST_EVENT, payload=payload)
        success = status_code is not None and 200 <= status_code < 300
        logger.info(
            "webhook.test.sent",
            extra={"webhook_config_id": str(config.id), "status_code": status_code, "outcome": "ok" if success else "error"},
        )
        return WebhookTestResult(
            webhook_config_id=config.id,
            success=success,
            status_code=status_code,
            response_body=body[:1000] if body else None,
        )

    def _deactivate_others(self, session: Session, actor: ActorContext, user_id: uuid.UUID, *, keep: uuid.UUID) -> None:
        for other in self.config_repository.list_for_user(session, user_id):
            if other.id != keep and other.is_active:
                before = self.config_repository.snapshot(other)
                other.is_active = False
                self.config_repository.save(session, other, actor, action="deactivate", before=before)

    def _save(self, session: Session, actor: ActorContext, config: WebhookConfig, action: str, before: dict[str, Any]) -> WebhookConfigRead:
        self.config_repository.save(session, config, actor, action=action, before=before)
        session.commit()
        session.refresh(config)
        logger.info("webhook.config.updated", extra={"webhook_config_id": str(config.id), "action": action})
        return self._to_read(config)

    def _get(self, session: Session, config_id: uuid.UUID) -> WebhookConfig:
        config = self.config_repository.get(session, config_id)
        if config is None:
            raise NotFoundError("webhook_config", config_id)
        return config

    @staticmethod
    def _to_read(config: WebhookConfig) -> WebhookConfigRead:
        payload = {
            "id": config.id,
            "user_id": config.user_id,
            "url": config.url,
            "has_secret": bool(config.secret),
            "is_active": config.is_active,
            "created_at": config.created_at,
            "updated_at": config.updated_at,
        }
        return WebhookConfigRead.model_validate(payload)


webhook_config_service = WebhookConfigService()
