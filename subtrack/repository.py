from __future__ import annotations

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from subtrack import audit
from subtrack.audit import ActorContext


def _plain(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class BaseRepository:
    """Persistence wrapper that applies audit metadata around every write."""

    resource: ClassVar[str] = ""
    model: ClassVar[type[Any]]

    def get(self, session: Session, entity_id: uuid.UUID, *, include_deleted: bool = False) -> Any | None:
        query = select(self.model).where(self.model.id == entity_id)
        if not include_deleted and hasattr(self.model, "deleted_at"):
            query = query.where(self.model.deleted_at.is_(None))
        return session.scalar(query)

    def add(self, session: Session, entity: Any, actor: ActorContext) -> Any:
        audit.stamp_create(entity, actor)
        session.add(entity)
        audit.record(actor, self.resource, str(entity.id), "create", None, self.snapshot(entity))
        return entity

    def save(self, session: Session, entity: Any, actor: ActorContext, *, action: str, before: dict[str, Any] | None) -> Any:
        audit.stamp_update(entity, actor)
        session.add(entity)
        audit.record(actor, self.resource, str(entity.id), action, before, self.snapshot(entity))
        return entity

    def soft_delete(self, session: Session, entity: Any, actor: ActorContext) -> Any:
        before = self.snapshot(entity)
        audit.stamp_delete(entity, actor)
        session.add(entity)
        audit.record(actor, self.resource, str(entity.id), "delete", before, None)
        return entity

    @staticmethod
    def snapshot(entity: Any) -> dict[str, Any]:
        return {column.key: _plain(getattr(entity, column.key)) for column in entity.__table__.columns}
