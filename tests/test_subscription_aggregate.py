from __future__ import annotations

import uuid
from datetime import date, datetime, timedelta, timezone

import pytest

from subtrack.errors import InvalidTransitionError, ValidationError
from subtrack.subscription import models
from subtrack.subscription.enums import BillingCycle, Currency, SubscriptionStatus
from subtrack.subscription.models import BillingHistory, Subscription


TODAY = date(2025, 6, 1)


def _subscription(**overrides: object) -> Subscription:
    values: dict[str, object] = {
        "name": "Netflix",
        "price": 4990,
        "currency": Currency.BRL,
        "billing_cycle": BillingCycle.MONTHLY,
        "next_billing_date": TODAY,
        "category": "Streaming",
        "user_id": uuid.uuid4(),
        "today": TODAY,
    }
    values.update(overrides)
    return Subscription.create(**values)  # type: ignore[arg-type]


def test_create_starts_active_with_given_values() -> None:
    subscription = _subscription()

    assert subscription.status == SubscriptionStatus.ACTIVE
    assert subscription.price == 4990
    assert subscription.next_billing_date == TODAY
    assert subscription.id is not None
    assert subscription.price_money.format() == "R$ 49.90"


def test_create_rejects_negative_price_and_past_date() -> None:
    with pytest.raises(ValidationError):
        _subscription(price=-1)
    with pytest.raises(ValidationError):
        _subscription(next_billing_date=date(2025, 5, 31))
    with pytest.raises(ValidationError):
        _subscription(name="   ")


def test_renew_is_pure_and_uses_cycle() -> None:
    monthly = _subscription()
    yearly = _subscription(billing_cycle=BillingCycle.YEARLY, next_billing_date=date(2025, 1, 31), today=date(2025, 1, 1))

    assert monthly.renew(TODAY) == date(2025, 7, 1)
    assert monthly.next_billing_date == TODAY
    assert yearly.renew(date(2025, 1, 31)) == date(2026, 1, 31)
    assert yearly.renew(date(2025, 2, 28)) == date(2026, 2, 28)


def test_renew_requires_active_status() -> None:
    subscription = _subscription()
    subscription.pause()

    with pytest.raises(ValidationError):
        subscription.renew(TODAY)


def test_status_transitions() -> None:
    subscription = _subscription()

    subscription.pause()
    assert subscription.status == SubscriptionStatus.PAUSED
    subscription.reactivate()
    assert subscription.status == SubscriptionStatus.ACTIVE
    subscription.cancel()
    assert subscription.status == SubscriptionStatus.CANCELLED

    with pytest.raises(InvalidTransitionError) as exc_info:
        subscription.reactivate()
    assert exc_info.value.current == "CANCELLED"
    assert exc_info.value.target == "ACTIVE"


def test_pause_twice_is_invalid() -> None:
    subscription = _subscription()
    subscription.pause()

    with pytest.raises(InvalidTransitionError):
        subscription.pause()


def test_advance_billing_date_must_move_forward() -> None:
    subscription = _subscription()

    subscription.advance_billing_date(date(2025, 7, 1))
    assert subscription.next_billing_date == date(2025, 7, 1)

    with pytest.raises(ValidationError):
        subscription.advance_billing_date(date(2025, 7, 1))


def test_reschedule_rejects_past_dates() -> None:
    subscription = _subscription()

    subscription.reschedule(date(2025, 6, 10), today=TODAY)
    assert subscription.next_billing_date == date(2025, 6, 10)

    with pytest.raises(ValidationError):
        subscription.reschedule(date(2025, 5, 1), today=TODAY)


def test_soft_deleted_subscription_is_frozen() -> None:
    subscription = _subscription()
    subscription.deleted_at = datetime(2025, 6, 1, tzinfo=timezone.utc)

    assert not subscription.is_due(TODAY)
    with pytest.raises(ValidationError):
        subscription.change_price(100)
    with pytest.raises(ValidationError):
        subscription.renew(TODAY)


def test_is_due_uses_less_or_equal() -> None:
    subscription = _subscription()

    assert subscription.is_due(TODAY)
    assert subscription.is_due(date(2025, 6, 5))
    assert not subscription.is_due(date(2025, 5, 31))


def test_monthly_price_normalizes_yearly() -> None:
    assert _subscription(billing_cycle=BillingCycle.YEARLY, price=29900).monthly_price == 2492
    assert _subscription(price=2190).monthly_price == 2190


def test_billing_history_captures_amount_and_due_date() -> None:
    subscription = _subscription()
    paid_at = datetime(2025, 6, 1, 3, 0, tzinfo=timezone.utc)

    entry = BillingHistory.for_charge(subscription, paid_at=paid_at)

    assert entry.subscription_id == subscription.id
    assert entry.amount_paid == 4990
    assert entry.currency == Currency.BRL
    assert entry.due_date == TODAY
    assert entry.paid_at == paid_at
    assert entry.amount_money.format() == "R$ 49.90"


def test_past_date_check_defaults_to_billing_timezone_today(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(models, "billing_today", lambda: TODAY)

    with pytest.raises(ValidationError):
        _subscription(next_billing_date=TODAY - timedelta(days=1), today=None)
    subscription = _subscription(today=None)

    with pytest.raises(ValidationError):
        subscription.reschedule(TODAY - timedelta(days=1))
    subscription.reschedule(TODAY)
    assert subscription.next_billing_date == TODAY
