from __future__ import annotations

import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from subtrack.context import get_correlation_id
from subtrack.core.clock import utcnow

SYSTEM_BILLING_ACTOR = "system:billing"

# in-process tail of the audit trail; the durable record is the audit columns on each row
AUDIT_ENTRIES_LIMIT = 1000
audit_entries: deque[dict[str, Any]] = deque(maxlen=AUDIT_ENTRIES_LIMIT)


@dataclass(frozen=True, slots=True)
class ActorContext:
    """Identity of whoever performs a write. Passed explicitly to every write operation."""

    user_id: str
    correlation_id: str | None = None

    @classmethod
    def system(cls, correlation_id: str | None = None) -> ActorContext:
        return cls(user_id=SYSTEM_BILLING_ACTOR, correlation_id=correlation_id)

    def resolved_correlation_id(self) -> str | None:
        return self.correlation_id or get_correlation_id()


class Auditable(Protocol):
    created_by: str | None
    updated_by: str | None
    deleted_by: str | None
    updated_at: datetime
    deleted_at: datetime | None


def stamp_create(entity: Auditable, actor: ActorContext) -> None:
    entity.created_by = actor.user_id
    entity.updated_by = actor.user_id


def stamp_update(entity: Auditable, actor: ActorContext) -> None:
    entity.updated_by = actor.user_id
    entity.updated_at = utcnow()


def stamp_delete(entity: Auditable, actor: ActorContext) -> None:
    now = utcnow()
    entity.deleted_by = actor.user_id
    entity.deleted_at = now
    entity.updated_by = actor.user_id
    entity.updated_at = now


def record(
    actor: ActorContext,
    entity_type: str,
    entity_id: str,
    action: str,
    before: dict[str, Any] | None,
    after: dict[str, Any] | None,
) -> None:
    audit_entries.append(
        {
            "id": str(uuid.uuid4()),
            "actor_user_id": actor.user_id,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "action": action,
            "before": before,
            "after": after,
            "correlation_id": actor.resolved_correlation_id(),
            "occurred_at": utcnow().isoformat(),
        }
    )
