from __future__ import annotations

import calendar
from datetime import date
from enum import StrEnum


def add_months(base_date: date, months: int) -> date:
    """Shift by calendar months, clamping to the last day of the target month."""
    month_index = base_date.month - 1 + months
    year = base_date.year + (month_index // 12)
    month = month_index % 12 + 1
    day = min(base_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


class Currency(StrEnum):
    BRL = "BRL"
    USD = "USD"
    EUR = "EUR"

    def symbol(self) -> str:
        return _CURRENCY_SYMBOLS[self]

    def format(self, amount_minor: int) -> str:
        sign = "-" if amount_minor < 0 else ""
        units, cents = divmod(abs(amount_minor), 100)
        return f"{self.symbol()} {sign}{units}.{cents:02d}"


_CURRENCY_SYMBOLS = {
    Currency.BRL: "R$",
    Currency.USD: "$",
    Currency.EUR: "€",
}


class BillingCycle(StrEnum):
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"

    def months(self) -> int:
        return 12 if self is BillingCycle.YEARLY else 1

    def next_date(self, from_date: date) -> date:
        return add_months(from_date, self.months())

    def monthly_amount(self, price: int) -> int:
        if self is BillingCycle.YEARLY:
            return (price + 6) // 12
        return price


class SubscriptionStatus(StrEnum):
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"

    def allows_billing(self) -> bool:
        return self is SubscriptionStatus.ACTIVE


VALID_SUBSCRIPTION_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: {SubscriptionStatus.PAUSED, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.PAUSED: {SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELLED},
    SubscriptionStatus.CANCELLED: set(),
}

