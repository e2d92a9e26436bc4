from __future__ import annotations

import uuid
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from subtrack.core.clock import billing_today
from subtrack.repository import BaseRepository
from subtrack.subscription.enums import SubscriptionStatus
from subtrack.subscription.models import BillingHistory, Subscription


class SubscriptionRepository(BaseRepository):
    resource = "subscription.subscription"
    model = Subscription

    def find_due_for_billing(self, session: Session, as_of: date) -> list[Subscription]:
        # <= so that days missed by the scheduler are caught up on the next run
        query = select(Subscription).where(
            Subscription.status == SubscriptionStatus.ACTIVE,
            Subscription.deleted_at.is_(None),
            Subscription.next_billing_date <= as_of,
        )
        return list(session.scalars(query))

    def find_due_for_billing_today(self, session: Session) -> list[Subscription]:
        return self.find_due_for_billing(session, billing_today())

    def get_for_update(self, session: Session, subscription_id: uuid.UUID) -> Subscription | None:
        return session.scalar(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .with_for_update()
        )

    def list_for_user(self, session: Session, user_id: uuid.UUID, *, status: SubscriptionStatus | None = None) -> list[Subscription]:
        query = select(Subscription).where(
            Subscription.user_id == user_id,
            Subscription.deleted_at.is_(None),
        )
        if status is not None:
            query = query.where(Subscription.status == status)
        return list(session.scalars(query.order_by(Subscription.next_billing_date, Subscription.name)))


class BillingHistoryRepository(BaseRepository):
    resource = "subscription.billing_history"
    model = BillingHistory

    def append(self, session: Session, entry: BillingHistory) -> BillingHistory:
        session.add(entry)
        return entry

    def list_for_subscription(self, session: Session, subscription_id: uuid.UUID) -> list[BillingHistory]:
        query = (
            select(BillingHistory)
            .where(BillingHistory.subscription_id == subscription_id)
            .order_by(BillingHistory.paid_at.desc())
        )
        return list(session.scalars(query))
