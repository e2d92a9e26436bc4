from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from subtrack.core.clock import utcnow
from subtrack.subscription.enums import BillingCycle, Currency

SUBSCRIPTION_RENEWED = "subscription.renewed"


@dataclass(frozen=True, slots=True)
class SubscriptionRenewed:
    """Emitted once per committed renewal, after the ledger row exists."""

    subscription_id: uuid.UUID
    user_id: uuid.UUID
    billing_history_id: uuid.UUID
    subscription_name: str
    amount: int
    currency: Currency
    billing_cycle: BillingCycle
    billing_date: date
    next_billing_date: date
    occurred_at: datetime = field(default_factory=utcnow)

    def to_flat_map(self) -> dict[str, str | int]:
        return {
            "subscription_id": str(self.subscription_id),
            "user_id": str(self.user_id),
            "billing_history_id": str(self.billing_history_id),
            "subscription_name": self.subscription_name,
            "amount": self.amount,
            "currency": self.currency.value,
            "billing_cycle": self.billing_cycle.value,
            "billing_date": self.billing_date.isoformat(),
            "next_billing_date": self.next_billing_date.isoformat(),
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_flat_map(cls, data: Mapping[str, Any]) -> SubscriptionRenewed:
        return cls(
            subscription_id=uuid.UUID(str(data["subscription_id"])),
            user_id=uuid.UUID(str(data["user_id"])),
            billing_history_id=uuid.UUID(str(data["billing_history_id"])),
            subscription_name=str(data["subscription_name"]),
            amount=int(data["amount"]),
            currency=Currency(data["currency"]),
            billing_cycle=BillingCycle(data["billing_cycle"]),
            billing_date=date.fromisoformat(str(data["billing_date"])),
            next_billing_date=date.fromisoformat(str(data["next_billing_date"])),
            occurred_at=datetime.fromisoformat(str(data["occurred_at"])),
        )

    def to_envelope(self) -> dict[str, Any]:
        return {"event_type": SUBSCRIPTION_RENEWED, **self.to_flat_map()}
