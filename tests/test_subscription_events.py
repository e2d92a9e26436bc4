from __future__ import annotations

import json
import uuid
from datetime import date, datetime, timezone

from subtrack.subscription.enums import BillingCycle, Currency
from subtrack.subscription.events import SUBSCRIPTION_RENEWED, SubscriptionRenewed


def _event() -> SubscriptionRenewed:
    return SubscriptionRenewed(
        subscription_id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        billing_history_id=uuid.uuid4(),
        subscription_name="Spotify Family",
        amount=3490,
        currency=Currency.BRL,
        billing_cycle=BillingCycle.MONTHLY,
        billing_date=date(2025, 6, 1),
        next_billing_date=date(2025, 7, 1),
        occurred_at=datetime(2025, 6, 1, 3, 0, 5, tzinfo=timezone.utc),
    )


def test_flat_map_round_trip_keeps_every_field() -> None:
    event = _event()

    restored = SubscriptionRenewed.from_flat_map(event.to_flat_map())

    assert restored == event


def test_flat_map_is_flat_and_json_safe() -> None:
    flat = _event().to_flat_map()

    assert all(isinstance(value, (str, int)) for value in flat.values())
    assert flat["billing_date"] == "2025-06-01"
    assert flat["next_billing_date"] == "2025-07-01"
    assert flat["occurred_at"] == "2025-06-01T03:00:05+00:00"
    assert flat["amount"] == 3490
    assert json.loads(json.dumps(flat)) == flat


def test_round_trip_survives_json_transport() -> None:
    event = _event()

    restored = SubscriptionRenewed.from_flat_map(json.loads(json.dumps(event.to_flat_map())))

    assert restored == event


def test_occurred_at_defaults_to_construction_time() -> None:
    before = datetime.now(timezone.utc)
    event = SubscriptionRenewed(
        subscription_id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        billing_history_id=uuid.uuid4(),
        subscription_name="Netflix",
        amount=4990,
        currency=Currency.BRL,
        billing_cycle=BillingCycle.MONTHLY,
        billing_date=date(2025, 6, 1),
        next_billing_date=date(2025, 7, 1),
    )

    assert before <= event.occurred_at <= datetime.now(timezone.utc)


def test_envelope_carries_event_type() -> None:
    envelope = _event().to_envelope()

    assert envelope["event_type"] == SUBSCRIPTION_RENEWED
    assert SubscriptionRenewed.from_flat_map(envelope).subscription_name == "Spotify Family"
