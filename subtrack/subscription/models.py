from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import CheckConstraint, Date, DateTime, Enum, ForeignKey, Index, Integer, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from subtrack.core.clock import billing_today, utcnow
from subtrack.core.database import Base
from subtrack.errors import InvalidTransitionError, ValidationError
from subtrack.subscription.enums import (
    VALID_SUBSCRIPTION_TRANSITIONS,
    BillingCycle,
    Currency,
    SubscriptionStatus,
)
from subtrack.subscription.money import Money


def _validate_price(price: int) -> None:
    if price < 0:
        raise ValidationError("price cannot be negative")


def _validate_next_billing_date(value: date, today: date) -> None:
    if value < today:
        raise ValidationError("next billing date must be today or in the future")


class Subscription(Base):
    """Billing-bearing aggregate.

    Every mutation goes through a method so the aggregate can enforce its own
    invariants without a session. Persistence and event emission live in the
    service and orchestrator layers.
    """

    __tablename__ = "subscription"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[Currency] = mapped_column(Enum(Currency, native_enum=False, length=8), nullable=False)
    billing_cycle: Mapped[BillingCycle] = mapped_column(Enum(BillingCycle, native_enum=False, length=16), nullable=False)
    next_billing_date: Mapped[date] = mapped_column(Date(), nullable=False)
    category: Mapped[str] = mapped_column(String(128), nullable=False, default="")
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus, native_enum=False, length=16),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    deleted_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    billing_history: Mapped[list[BillingHistory]] = relationship(
        "BillingHistory",
        back_populates="subscription",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        CheckConstraint("price >= 0", name="ck_subscription_price_nonnegative"),
        Index("ix_subscription_due", "status", "next_billing_date"),
        Index("ix_subscription_user", "user_id"),
    )

    @classmethod
    def create(
        cls,
        *,
        name: str,
        price: int,
        currency: Currency,
        billing_cycle: BillingCycle,
        next_billing_date: date,
        category: str,
        user_id: uuid.UUID,
        today: date | None = None,
    ) -> Subscription:
        _validate_price(price)
        _validate_next_billing_date(next_billing_date, today or billing_today())
        if not name.strip():
            raise ValidationError("name cannot be empty")

        now = utcnow()
        return cls(
            id=uuid.uuid4(),
            user_id=user_id,
            name=name,
            price=price,
            currency=Currency(currency),
            billing_cycle=BillingCycle(billing_cycle),
            next_billing_date=next_billing_date,
            category=category,
            status=SubscriptionStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def price_money(self) -> Money:
        return Money(self.price, Currency(self.currency))

    @property
    def monthly_price(self) -> int:
        return BillingCycle(self.billing_cycle).monthly_amount(self.price)

    def is_due(self, as_of: date) -> bool:
        return (
            not self.is_deleted
            and SubscriptionStatus(self.status).allows_billing()
            and self.next_billing_date <= as_of
        )

    def change_name(self, name: str) -> None:
        self._ensure_mutable()
        if not name.strip():
            raise ValidationError("name cannot be empty")
        self.name = name

    def change_category(self, category: str) -> None:
        self._ensure_mutable()
        self.category = category

    def change_price(self, price: int) -> None:
        self._ensure_mutable()
        _validate_price(price)
        self.price = price

    def change_billing_cycle(self, billing_cycle: BillingCycle) -> None:
        self._ensure_mutable()
        self.billing_cycle = BillingCycle(billing_cycle)

    def reschedule(self, next_billing_date: date, today: date | None = None) -> None:
        self._ensure_mutable()
        _validate_next_billing_date(next_billing_date, today or billing_today())
        self.next_billing_date = next_billing_date

    def pause(self) -> None:
        self._transition(SubscriptionStatus.PAUSED)

    def reactivate(self) -> None:
        self._transition(SubscriptionStatus.ACTIVE)

    def cancel(self) -> None:
        self._transition(SubscriptionStatus.CANCELLED)

    def renew(self, billing_date: date) -> date:
        """Next due date after billing on ``billing_date``. Does not mutate the aggregate."""
        self._ensure_mutable()
        if not SubscriptionStatus(self.status).allows_billing():
            raise ValidationError(f"only ACTIVE subscriptions can be renewed, got {self.status}")
        return BillingCycle(self.billing_cycle).next_date(billing_date)

    def advance_billing_date(self, new_date: date) -> None:
        self._ensure_mutable()
        if new_date <= self.next_billing_date:
            raise ValidationError("renewed billing date must move forward")
        self.next_billing_date = new_date

    def _transition(self, target: SubscriptionStatus) -> None:
        self._ensure_mutable()
        current = SubscriptionStatus(self.status)
        if target not in VALID_SUBSCRIPTION_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        self.status = target

    def _ensure_mutable(self) -> None:
        if self.is_deleted:
            raise ValidationError("subscription is deleted")


class BillingHistory(Base):
    """Append-only ledger entry for one successful charge of one due cycle."""

    __tablename__ = "billing_history"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("subscription.id", ondelete="CASCADE"),
        nullable=False,
    )
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[Currency] = mapped_column(Enum(Currency, native_enum=False, length=8), nullable=False)
    due_date: Mapped[date] = mapped_column(Date(), nullable=False)
    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    subscription: Mapped[Subscription] = relationship(
        "Subscription",
        back_populates="billing_history",
    )

    __table_args__ = (
        UniqueConstraint("subscription_id", "due_date", name="uq_billing_history_subscription_due_date"),
        CheckConstraint("amount_paid >= 0", name="ck_billing_history_amount_nonnegative"),
        Index("ix_billing_history_subscription", "subscription_id", "paid_at"),
    )

    @classmethod
    def for_charge(cls, subscription: Subscription, *, paid_at: datetime) -> BillingHistory:
        _validate_price(subscription.price)
        return cls(
            id=uuid.uuid4(),
            subscription_id=subscription.id,
            amount_paid=subscription.price,
            currency=Currency(subscription.currency),
            due_date=subscription.next_billing_date,
            paid_at=paid_at,
            created_at=paid_at,
        )

    @property
    def amount_money(self) -> Money:
        return Money(self.amount_paid, Currency(self.currency))
