from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date

from sqlalchemy.orm import Session

from subtrack import events
from subtrack.audit import ActorContext
from subtrack.core.clock import billing_today
from subtrack.errors import NotFoundError
from subtrack.subscription.enums import BillingCycle, Currency, SubscriptionStatus
from subtrack.subscription.models import BillingHistory, Subscription
from subtrack.subscription.repository import BillingHistoryRepository, SubscriptionRepository
from subtrack.subscription.schemas import (
    BillingHistoryRead,
    BudgetCategoryRead,
    MonthlyBudgetRead,
    SubscriptionCreate,
    SubscriptionRead,
)


logger = logging.getLogger("subtrack.subscription")


@dataclass(slots=True)
class SubscriptionService:
    subscription_repository: SubscriptionRepository = SubscriptionRepository()
    billing_history_repository: BillingHistoryRepository = BillingHistoryRepository()

    def create_subscription(
        self,
        session: Session,
        actor: ActorContext,
        payload: SubscriptionCreate,
        *,
        today: date | None = None,
    ) -> SubscriptionRead:
        subscription = Subscription.create(
            name=payload.name,
            price=payload.price,
            currency=payload.currency,
            billing_cycle=payload.billing_cycle,
            next_billing_date=payload.next_billing_date,
            category=payload.category,
            user_id=payload.user_id,
            today=today or billing_today(),
        )
        self.subscription_repository.add(session, subscription, actor)
        session.commit()
        session.refresh(subscription)

        logger.info(
            "subscription.created",
            extra={"subscription_id": str(subscription.id), "user_id": str(subscription.user_id)},
        )
        self._emit("subscription.created", subscription, actor)
        return self._to_read(subscription)

    def get_subscription(self, session: Session, subscription_id: uuid.UUID) -> SubscriptionRead:
        return self._to_read(self._get(session, subscription_id))

    def list_for_user(
        self,
        session: Session,
        user_id: uuid.UUID,
        *,
        status: SubscriptionStatus | None = None,
    ) -> list[SubscriptionRead]:
        return [self._to_read(item) for item in self.subscription_repository.list_for_user(session, user_id, status=status)]

    def change_price(self, session: Session, actor: ActorContext, subscription_id: uuid.UUID, price: int) -> SubscriptionRead:
        return self._mutate(session, actor, subscription_id, "change_price", lambda sub: sub.change_price(price))

    def change_billing_cycle(
        self,
        session: Session,
        actor: ActorContext,
        subscription_id: uuid.UUID,
        billing_cycle: BillingCycle,
    ) -> SubscriptionRead:
        return self._mutate(
            session,
            actor,
            subscription_id,
            "change_billing_cycle",
            lambda sub: sub.change_billing_cycle(billing_cycle),
        )

    def rename(self, session: Session, actor: ActorContext, subscription_id: uuid.UUID, name: str) -> SubscriptionRead:
        return self._mutate(session, actor, subscription_id, "rename", lambda sub: sub.change_name(name))

    def change_category(
        self,
        session: Session,
        actor: ActorContext,
        subscription_id: uuid.UUID,
        category: str,
    ) -> SubscriptionRead:
        return self._mutate(session, actor, subscription_id, "change_category", lambda sub: sub.change_category(category))

    def pause(self, session: Session, actor: ActorContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        read = self._mutate(session, actor, subscription_id, "pause", Subscription.pause)
        self._emit_status("subscription.paused", session, subscription_id, actor)
        return read

    def resume(self, session: Session, actor: ActorContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        read = self._mutate(session, actor, subscription_id, "resume", Subscription.reactivate)
        self._emit_status("subscription.resumed", session, subscription_id, actor)
        return read

    def cancel(self, session: Session, actor: ActorContext, subscription_id: uuid.UUID) -> SubscriptionRead:
        read = self._mutate(session, actor, subscription_id, "cancel", Subscription.cancel)
        self._emit_status("subscription.cancelled", session, subscription_id, actor)
        return read

    def reschedule(
        self,
        session: Session,
        actor: ActorContext,
        subscription_id: uuid.UUID,
        next_billing_date: date,
        *,
        today: date | None = None,
    ) -> SubscriptionRead:
        reference = today or billing_today()
        return self._mutate(
            session,
            actor,
            subscription_id,
            "reschedule",
            lambda sub: sub.reschedule(next_billing_date, reference),
        )

    def delete_subscription(self, session: Session, actor: ActorContext, subscription_id: uuid.UUID) -> None:
        subscription = self._get(session, subscription_id)
        self.subscription_repository.soft_delete(session, subscription, actor)
        session.commit()
        logger.info("subscription.deleted", extra={"subscription_id": str(subscription_id)})

    def list_billing_history(self, session: Session, subscription_id: uuid.UUID) -> list[BillingHistoryRead]:
        self._get(session, subscription_id)
        entries = self.billing_history_repository.list_for_subscription(session, subscription_id)
        return [self._to_history_read(entry) for entry in entries]

    def calculate_monthly_budget(
        self,
        session: Session,
        user_id: uuid.UUID,
        currency: Currency = Currency.BRL,
        *,
        today: date | None = None,
    ) -> MonthlyBudgetRead:
        """Monthly-normalized spend for one currency.

        Subscriptions whose billing date has arrived count as committed, the rest
        as upcoming. Other currencies are ignored rather than converted.
        """
        reference = today or billing_today()
        total_committed = 0
        upcoming_bills = 0
        by_category: dict[str, int] = {}

        for subscription in self.subscription_repository.list_for_user(session, user_id, status=SubscriptionStatus.ACTIVE):
            if subscription.currency != currency:
                continue
            monthly = subscription.monthly_price
            by_category[subscription.category] = by_category.get(subscription.category, 0) + monthly
            if subscription.next_billing_date <= reference:
                total_committed += monthly
            else:
                upcoming_bills += monthly

        total_monthly = total_committed + upcoming_bills
        breakdown = [
            BudgetCategoryRead(
                category=category,
                amount=amount,
                amount_formatted=currency.format(amount),
                percentage=round(amount / total_monthly * 100, 2) if total_monthly > 0 else 0.0,
            )
            for category, amount in sorted(by_category.items(), key=lambda item: item[1], reverse=True)
        ]

        logger.info(
            "subscription.budget.calculated",
            extra={"user_id": str(user_id), "currency": currency.value, "total": total_monthly},
        )
        return MonthlyBudgetRead(
            user_id=user_id,
            currency=currency,
            total_committed=total_committed,
            total_committed_formatted=currency.format(total_committed),
            upcoming_bills=upcoming_bills,
            upcoming_bills_formatted=currency.format(upcoming_bills),
            total_monthly=total_monthly,
            total_monthly_formatted=currency.format(total_monthly),
            breakdown=breakdown,
        )

    def _mutate(
        self,
        session: Session,
        actor: ActorContext,
        subscription_id: uuid.UUID,
        action: str,
        change: Callable[[Subscription], None],
    ) -> SubscriptionRead:
        subscription = self._get(session, subscription_id)
        before = self.subscription_repository.snapshot(subscription)
        change(subscription)
        self.subscription_repository.save(session, subscription, actor, action=action, before=before)
        session.commit()
        session.refresh(subscription)
        logger.info("subscription.updated", extra={"subscription_id": str(subscription_id), "action": action})
        return self._to_read(subscription)

    def _get(self, session: Session, subscription_id: uuid.UUID) -> Subscription:
        subscription = self.subscription_repository.get(session, subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    def _emit_status(self, event_type: str, session: Session, subscription_id: uuid.UUID, actor: ActorContext) -> None:
        self._emit(event_type, self._get(session, subscription_id), actor)

    def _emit(self, event_type: str, subscription: Subscription, actor: ActorContext) -> None:
        events.publish(
            {
                "event_type": event_type,
                "subscription_id": str(subscription.id),
                "user_id": str(subscription.user_id),
                "status": subscription.status.value,
                "next_billing_date": subscription.next_billing_date.isoformat(),
                "correlation_id": actor.resolved_correlation_id(),
            }
        )

    def _to_read(self, subscription: Subscription) -> SubscriptionRead:
        payload = {
            "id": subscription.id,
            "user_id": subscription.user_id,
            "name": subscription.name,
            "price": subscription.price,
            "price_formatted": subscription.price_money.format(),
            "monthly_price": subscription.monthly_price,
            "currency": subscription.currency,
            "billing_cycle": subscription.billing_cycle,
            "next_billing_date": subscription.next_billing_date,
            "category": subscription.category,
            "status": subscription.status,
            "created_by": subscription.created_by,
            "updated_by": subscription.updated_by,
            "created_at": subscription.created_at,
            "updated_at": subscription.updated_at,
        }
        return SubscriptionRead.model_validate(payload)

    @staticmethod
    def _to_history_read(entry: BillingHistory) -> BillingHistoryRead:
        payload = {
            "id": entry.id,
            "subscription_id": entry.subscription_id,
            "amount_paid": entry.amount_paid,
            "amount_formatted": entry.amount_money.format(),
            "currency": entry.currency,
            "due_date": entry.due_date,
            "paid_at": entry.paid_at,
        }
        return BillingHistoryRead.model_validate(payload)


subscription_service = SubscriptionService()
