from __future__ import annotations

from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from subtrack.subscription.enums import BillingCycle, Currency, SubscriptionStatus


class SubscriptionCreate(BaseModel):
    user_id: UUID
    name: str = Field(min_length=1, max_length=255)
    price: int = Field(ge=0)
    currency: Currency = Currency.BRL
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    next_billing_date: date
    category: str = Field(default="", max_length=128)


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    name: str
    price: int
    price_formatted: str
    monthly_price: int
    currency: Currency
    billing_cycle: BillingCycle
    next_billing_date: date
    category: str
    status: SubscriptionStatus
    created_by: str | None
    updated_by: str | None
    created_at: datetime
    updated_at: datetime


class BillingHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    amount_paid: int
    amount_formatted: str
    currency: Currency
    due_date: date
    paid_at: datetime


class BudgetCategoryRead(BaseModel):
    category: str
    amount: int
    amount_formatted: str
    percentage: float


class MonthlyBudgetRead(BaseModel):
    user_id: UUID
    currency: Currency
    total_committed: int
    total_committed_formatted: str
    upcoming_bills: int
    upcoming_bills_formatted: str
    total_monthly: int
    total_monthly_formatted: str
    breakdown: list[BudgetCategoryRead] = Field(default_factory=list)
