from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from datetime import date, datetime, timezone
from typing import Any

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from subtrack import audit, events
from subtrack.audit import SYSTEM_BILLING_ACTOR
from subtrack.core.database import Base
from subtrack.core.events import event_bus
from subtrack.otel import setup_inmemory_otel
from subtrack.subscription.billing import BillingOrchestrator, RenewalStatus
from subtrack.subscription.enums import BillingCycle, Currency
from subtrack.subscription.events import SUBSCRIPTION_RENEWED, SubscriptionRenewed
from subtrack.subscription.models import BillingHistory, Subscription
from subtrack.subscription.repository import BillingHistoryRepository


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def file_session_factory(tmp_path: Path) -> Generator[sessionmaker[Session], None, None]:
    # separate connections per thread, so writers really contend for the database lock
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield factory
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def reset_globals() -> Generator[None, None, None]:
    events.published_events.clear()
    audit.audit_entries.clear()
    event_bus.clear()
    yield
    events.published_events.clear()
    audit.audit_entries.clear()
    event_bus.clear()


def _seed(
    factory: sessionmaker[Session],
    *,
    next_billing_date: date,
    price: int = 4990,
    billing_cycle: BillingCycle = BillingCycle.MONTHLY,
    pause: bool = False,
) -> uuid.UUID:
    subscription = Subscription.create(
        name="Netflix",
        price=price,
        currency=Currency.BRL,
        billing_cycle=billing_cycle,
        next_billing_date=next_billing_date,
        category="Streaming",
        user_id=uuid.uuid4(),
        today=next_billing_date,
    )
    if pause:
        subscription.pause()
    with factory() as session:
        session.add(subscription)
        session.commit()
    return subscription.id


def _load(factory: sessionmaker[Session], subscription_id: uuid.UUID) -> Subscription:
    with factory() as session:
        subscription = session.get(Subscription, subscription_id)
        assert subscription is not None
        return subscription


def _history(factory: sessionmaker[Session], subscription_id: uuid.UUID) -> list[BillingHistory]:
    with factory() as session:
        return list(session.scalars(select(BillingHistory).where(BillingHistory.subscription_id == subscription_id)))


def _orchestrator(factory: sessionmaker[Session], **kwargs: Any) -> BillingOrchestrator:
    return BillingOrchestrator(session_factory=factory, max_workers=1, **kwargs)


def test_monthly_renewal_advances_date_and_records_history(session_factory: sessionmaker[Session]) -> None:
    subscription_id = _seed(session_factory, next_billing_date=date(2025, 6, 1))

    result = _orchestrator(session_factory).run(date(2025, 6, 1))

    assert result.total == 1
    assert result.processed == 1
    assert result.failed == 0
    assert _load(session_factory, subscription_id).next_billing_date == date(2025, 7, 1)
    history = _history(session_factory, subscription_id)
    assert len(history) == 1
    assert history[0].amount_paid == 4990
    assert history[0].due_date == date(2025, 6, 1)
    assert result.billing_history_ids == [history[0].id]


def test_yearly_renewal_from_month_end(session_factory: sessionmaker[Session]) -> None:
    subscription_id = _seed(session_factory, next_billing_date=date(2025, 1, 31), billing_cycle=BillingCycle.YEARLY)

    _orchestrator(session_factory).run(date(2025, 1, 31))

    assert _load(session_factory, subscription_id).next_billing_date == date(2026, 1, 31)


def test_paused_subscription_has_no_side_effects(session_factory: sessionmaker[Session]) -> None:
    subscription_id = _seed(session_factory, next_billing_date=date(2025, 5, 31), pause=True)

    result = _orchestrator(session_factory).run(date(2025, 6, 1))

    assert result.total == 0
    assert _load(session_factory, subscription_id).next_billing_date == date(2025, 5, 31)
    assert _history(session_factory, subscription_id) == []
    assert not events.published_events


def test_missed_days_are_caught_up_once(session_factory: sessionmaker[Session]) -> None:
    subscription_id = _seed(session_factory, next_billing_date=date(2025, 5, 29))
    orchestrator = _orchestrator(session_factory)

    first = orchestrator.run(date(2025, 6, 1))
    second = orchestrator.run(date(2025, 6, 1))

    assert first.processed == 1
    assert second.total == 0
    assert _load(session_factory, subscription_id).next_billing_date == date(2025, 7, 1)
    history = _history(session_factory, subscription_id)
    assert len(history) == 1
    assert history[0].due_date == date(2025, 5, 29)


def test_second_renewal_for_same_day_is_skipped(session_factory: sessionmaker[Session]) -> None:
    subscription_id = _seed(session_factory, next_billing_date=date(2025, 6, 1))
    orchestrator = _orchestrator(session_factory)

    first = orchestrator.renew_subscription(subscription_id, date(2025, 6, 1))
    second = orchestrator.renew_subscription(subscription_id, date(2025, 6, 1))

    assert first.status is RenewalStatus.RENEWED
    assert second.status is RenewalStatus.SKIPPED
    assert len(_history(session_factory, subscription_id)) == 1


def test_existing_ledger_row_for_due_date_blocks_double_charge(session_factory: sessionmaker[Session]) -> None:
    subscription_id = _seed(session_factory, next_billing_date=date(2025, 6, 1))
    with session_factory() as session:
        subscription = session.get(Subscription, subscription_id)
        assert subscription is not None
        session.add(BillingHistory.for_charge(subscription, paid_at=datetime(2025, 6, 1, tzinfo=timezone.utc)))
        session.commit()

    outcome = _orchestrator(session_factory).renew_subscription(subscription_id, date(2025, 6, 1))

    assert outcome.status is RenewalStatus.SKIPPED
    assert _load(session_factory, subscription_id).next_billing_date == date(2025, 6, 1)
    assert len(_history(session_factory, subscription_id)) == 1


class _FailingHistoryRepository(BillingHistoryRepository):
    def __init__(self, failing_id: uuid.UUID) -> None:
        self.failing_id = failing_id

    def append(self, session: Session, entry: BillingHistory) -> BillingHistory:
        if entry.subscription_id == self.failing_id:
            raise RuntimeError("ledger unavailable")
        return super().append(session, entry)


def test_one_failure_does_not_stop_the_batch(
    session_factory: sessionmaker[Session],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    healthy_id = _seed(session_factory, next_billing_date=date(2025, 6, 1))
    broken_id = _seed(session_factory, next_billing_date=date(2025, 6, 1))

    orchestrator = _orchestrator(session_factory, billing_history_repository=_FailingHistoryRepository(broken_id))
    result = orchestrator.run(date(2025, 6, 1))

    assert result.total == 2
    assert result.processed == 1
    assert result.failed == 1
    assert "ledger unavailable" in result.failures[str(broken_id)]
    assert _load(session_factory, broken_id).next_billing_date == date(2025, 6, 1)
    assert _history(session_factory, broken_id) == []
    assert _load(session_factory, healthy_id).next_billing_date == date(2025, 7, 1)

    failed_records = [record for record in caplog.records if record.getMessage() == "billing.renewal.failed"]
    assert len(failed_records) == 1
    assert failed_records[0].subscription_id == str(broken_id)
    assert "ledger unavailable" in failed_records[0].error


def test_renewal_event_published_after_commit(session_factory: sessionmaker[Session]) -> None:
    subscription_id = _seed(session_factory, next_billing_date=date(2025, 6, 1))
    received: list[SubscriptionRenewed] = []

    def handler(event: Any) -> None:
        # the ledger row must already be visible to other sessions
        renewed = SubscriptionRenewed.from_flat_map(event.payload)
        with session_factory() as session:
            assert session.get(BillingHistory, renewed.billing_history_id) is not None
        received.append(renewed)

    event_bus.subscribe(SUBSCRIPTION_RENEWED, handler)
    result = _orchestrator(session_factory).run(date(2025, 6, 1))

    assert len(received) == 1
    event = received[0]
    assert event.subscription_id == subscription_id
    assert event.billing_history_id == result.billing_history_ids[0]
    assert event.amount == 4990
    assert event.currency is Currency.BRL
    assert event.billing_date == date(2025, 6, 1)
    assert event.next_billing_date == date(2025, 7, 1)
    assert events.published_events[0]["event_type"] == SUBSCRIPTION_RENEWED


def test_failing_listener_does_not_undo_renewal(session_factory: sessionmaker[Session]) -> None:
    subscription_id = _seed(session_factory, next_billing_date=date(2025, 6, 1))

    def explode(envelope: dict[str, Any]) -> int:
        raise RuntimeError("queue down")

    result = _orchestrator(session_factory, publish=explode).run(date(2025, 6, 1))

    assert result.processed == 1
    assert _load(session_factory, subscription_id).next_billing_date == date(2025, 7, 1)


def test_renewal_is_stamped_by_system_actor(session_factory: sessionmaker[Session]) -> None:
    subscription_id = _seed(session_factory, next_billing_date=date(2025, 6, 1))

    _orchestrator(session_factory).run(date(2025, 6, 1))

    assert _load(session_factory, subscription_id).updated_by == SYSTEM_BILLING_ACTOR
    renew_entries = [entry for entry in audit.audit_entries if entry["action"] == "renew"]
    assert len(renew_entries) == 1
    assert renew_entries[0]["before"]["next_billing_date"] == "2025-06-01"
    assert renew_entries[0]["after"]["next_billing_date"] == "2025-07-01"


def test_run_logs_and_counts(session_factory: sessionmaker[Session], caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)
    _seed(session_factory, next_billing_date=date(2025, 6, 1))
    before = REGISTRY.get_sample_value("subtrack_billing_renewals_total", {"outcome": "renewed"}) or 0.0

    _orchestrator(session_factory).run(date(2025, 6, 1))

    after = REGISTRY.get_sample_value("subtrack_billing_renewals_total", {"outcome": "renewed"}) or 0.0
    assert after - before == 1
    messages = [record.getMessage() for record in caplog.records]
    assert "billing.run.started" in messages
    assert "billing.renewal.succeeded" in messages
    finished = next(record for record in caplog.records if record.getMessage() == "billing.run.finished")
    assert finished.processed == 1
    assert finished.as_of == "2025-06-01"


def test_run_emits_spans(session_factory: sessionmaker[Session]) -> None:
    exporter = setup_inmemory_otel()
    exporter.clear()
    _seed(session_factory, next_billing_date=date(2025, 6, 1))

    _orchestrator(session_factory).run(date(2025, 6, 1))

    names = [span.name for span in exporter.get_finished_spans()]
    assert "billing.run" in names
    assert "billing.renewal" in names


def test_empty_run(session_factory: sessionmaker[Session]) -> None:
    result = _orchestrator(session_factory).run(date(2025, 6, 1))

    assert result.to_dict() == {
        "as_of": "2025-06-01",
        "total": 0,
        "processed": 0,
        "skipped": 0,
        "failed": 0,
        "billing_history_ids": [],
        "failures": {},
    }


def test_history_count_matches_processed(session_factory: sessionmaker[Session]) -> None:
    for _ in range(3):
        _seed(session_factory, next_billing_date=date(2025, 6, 1))
    _seed(session_factory, next_billing_date=date(2025, 6, 2))

    result = _orchestrator(session_factory).run(date(2025, 6, 1))

    with session_factory() as session:
        count = session.scalar(select(func.count()).select_from(BillingHistory))
    assert result.processed == 3
    assert count == 3


def test_worker_pool_bills_every_subscription(file_session_factory: sessionmaker[Session]) -> None:
    subscription_ids = [_seed(file_session_factory, next_billing_date=date(2025, 6, 1)) for _ in range(12)]
    threads: set[str] = set()

    def record_thread(envelope: dict[str, Any]) -> int:
        threads.add(threading.current_thread().name)
        return 0

    orchestrator = BillingOrchestrator(session_factory=file_session_factory, max_workers=4, publish=record_thread)
    result = orchestrator.run(date(2025, 6, 1))

    assert (result.total, result.processed, result.skipped, result.failed) == (12, 12, 0, 0)
    assert result.failures == {}
    assert threads and threading.main_thread().name not in threads
    for subscription_id in subscription_ids:
        assert len(_history(file_session_factory, subscription_id)) == 1
        assert _load(file_session_factory, subscription_id).next_billing_date == date(2025, 7, 1)


def test_concurrent_runs_bill_each_subscription_once(file_session_factory: sessionmaker[Session]) -> None:
    subscription_ids = [_seed(file_session_factory, next_billing_date=date(2025, 6, 1)) for _ in range(10)]
    barrier = threading.Barrier(2)

    def run_once() -> Any:
        orchestrator = BillingOrchestrator(session_factory=file_session_factory, max_workers=2)
        barrier.wait()
        return orchestrator.run(date(2025, 6, 1))

    with ThreadPoolExecutor(max_workers=2) as executor:
        results = [future.result() for future in [executor.submit(run_once), executor.submit(run_once)]]

    for result in results:
        assert result.processed + result.skipped + result.failed == result.total
        assert result.failed == 0
    assert sum(result.processed for result in results) == len(subscription_ids)
    with file_session_factory() as session:
        assert session.scalar(select(func.count()).select_from(BillingHistory)) == len(subscription_ids)
    for subscription_id in subscription_ids:
        assert len(_history(file_session_factory, subscription_id)) == 1
        assert _load(file_session_factory, subscription_id).next_billing_date == date(2025, 7, 1)


def test_in_process_buffers_keep_only_recent_entries(session_factory: sessionmaker[Session]) -> None:
    for day in range(1, 4):
        _seed(session_factory, next_billing_date=date(2025, 6, day))
    orchestrator = _orchestrator(session_factory)
    for day in range(1, 4):
        orchestrator.run(date(2025, 6, day))

    assert len(events.published_events) == 3
    for index in range(audit.AUDIT_ENTRIES_LIMIT + 5):
        audit.record(audit.ActorContext.system(), "subscription.subscription", str(index), "renew", None, None)
    for index in range(events.PUBLISHED_EVENTS_LIMIT + 5):
        events.publish({"event_type": "subscription.renewed.replay", "index": index})

    assert len(audit.audit_entries) == audit.AUDIT_ENTRIES_LIMIT
    assert len(events.published_events) == events.PUBLISHED_EVENTS_LIMIT
    assert audit.audit_entries[-1]["entity_id"] == str(audit.AUDIT_ENTRIES_LIMIT + 4)
    assert events.published_events[-1]["index"] == events.PUBLISHED_EVENTS_LIMIT + 4
