from __future__ import annotations

from dataclasses import dataclass

from subtrack.errors import ValidationError
from subtrack.subscription.enums import Currency


@dataclass(frozen=True, slots=True)
class Money:
    """Amount in integer minor units (cents) tagged with its currency."""

    amount: int
    currency: Currency

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValidationError("amount must be an integer number of minor units")

    def __add__(self, other: Money) -> Money:
        if not isinstance(other, Money):
            return NotImplemented
        if other.currency != self.currency:
            raise ValidationError(f"cannot add {other.currency} to {self.currency}")
        return Money(self.amount + other.amount, self.currency)

    def format(self) -> str:
        return self.currency.format(self.amount)

    def __str__(self) -> str:
        return self.format()
