from __future__ import annotations

import contextvars
import logging
import time
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date
from enum import StrEnum
from typing import Any

from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import IntegrityError

from subtrack import events
from subtrack.audit import ActorContext
from subtrack.core.clock import billing_today, utcnow
from subtrack.core.config import get_settings
from subtrack.core.database import SessionFactory
from subtrack.metrics import observe_renewal
from subtrack.otel import get_tracer
from subtrack.subscription.events import SubscriptionRenewed
from subtrack.subscription.models import BillingHistory
from subtrack.subscription.repository import BillingHistoryRepository, SubscriptionRepository


logger = logging.getLogger("subtrack.billing")
tracer = get_tracer("subtrack.billing")


class RenewalStatus(StrEnum):
    RENEWED = "renewed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class RenewalOutcome:
    subscription_id: uuid.UUID
    status: RenewalStatus
    billing_history_id: uuid.UUID | None = None
    new_billing_date: date | None = None
    error: str | None = None


@dataclass(slots=True)
class BillingRunResult:
    as_of: date
    total: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    billing_history_ids: list[uuid.UUID] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)

    def add(self, outcome: RenewalOutcome) -> None:
        if outcome.status is RenewalStatus.RENEWED:
            self.processed += 1
            if outcome.billing_history_id is not None:
                self.billing_history_ids.append(outcome.billing_history_id)
        elif outcome.status is RenewalStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
            self.failures[str(outcome.subscription_id)] = outcome.error or "unknown error"

    def to_dict(self) -> dict[str, Any]:
        return {
            "as_of": self.as_of.isoformat(),
            "total": self.total,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "billing_history_ids": [str(item) for item in self.billing_history_ids],
            "failures": dict(self.failures),
        }


@dataclass(slots=True)
class BillingOrchestrator:
    """Bills every due subscription exactly once per due cycle.

    Each subscription is renewed in its own session and transaction. The row is
    locked and its eligibility re-checked before anything is written, so a
    concurrent run that loses the race observes the advanced date and skips.
    A failure on one subscription is logged and counted, never propagated.
    """

    session_factory: SessionFactory
    max_workers: int | None = None
    subscription_repository: SubscriptionRepository = SubscriptionRepository()
    billing_history_repository: BillingHistoryRepository = BillingHistoryRepository()
    publish: Callable[[dict[str, Any]], int] = events.publish
    actor: ActorContext = field(default_factory=ActorContext.system)

    def run(self, as_of: date | None = None) -> BillingRunResult:
        billing_date = as_of or billing_today()
        result = BillingRunResult(as_of=billing_date)
        started = time.perf_counter()

        with tracer.start_as_current_span("billing.run") as span:
            span.set_attribute("billing.as_of", billing_date.isoformat())
            logger.info("billing.run.started", extra={"as_of": billing_date.isoformat()})

            with self.session_factory() as session:
                due_ids = [item.id for item in self.subscription_repository.find_due_for_billing(session, billing_date)]
            result.total = len(due_ids)

            for outcome in self._renew_all(due_ids, billing_date):
                result.add(outcome)

            span.set_attribute("billing.total", result.total)
            span.set_attribute("billing.processed", result.processed)
            span.set_attribute("billing.failed", result.failed)

        logger.info(
            "billing.run.finished",
            extra={
                "as_of": billing_date.isoformat(),
                "total": result.total,
                "processed": result.processed,
                "skipped": result.skipped,
                "failed": result.failed,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            },
        )
        return result

    def renew_subscription(self, subscription_id: uuid.UUID, as_of: date) -> RenewalOutcome:
        with tracer.start_as_current_span("billing.renewal") as span:
            span.set_attribute("subscription.id", str(subscription_id))
            try:
                outcome, event = self._renew_in_transaction(subscription_id, as_of)
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR))
                observe_renewal(RenewalStatus.FAILED.value)
                logger.exception(
                    "billing.renewal.failed",
                    extra={"subscription_id": str(subscription_id), "as_of": as_of.isoformat(), "error": str(exc)},
                )
                return RenewalOutcome(subscription_id, RenewalStatus.FAILED, error=str(exc)[:500])

            span.set_attribute("billing.outcome", outcome.status.value)
            if event is not None:
                self._publish_renewed(event)
            return outcome

    def _renew_all(self, subscription_ids: list[uuid.UUID], as_of: date) -> Iterable[RenewalOutcome]:
        workers = self.max_workers or get_settings().billing_max_workers
        if workers <= 1 or len(subscription_ids) <= 1:
            return [self.renew_subscription(item, as_of) for item in subscription_ids]

        with ThreadPoolExecutor(max_workers=min(workers, len(subscription_ids))) as executor:
            futures = [
                executor.submit(contextvars.copy_context().run, self.renew_subscription, item, as_of)
                for item in subscription_ids
            ]
            return [future.result() for future in futures]

    def _renew_in_transaction(
        self,
        subscription_id: uuid.UUID,
        as_of: date,
    ) -> tuple[RenewalOutcome, SubscriptionRenewed | None]:
        with self.session_factory() as session:
            try:
                subscription = self.subscription_repository.get_for_update(session, subscription_id)
                if subscription is None or not subscription.is_due(as_of):
                    session.rollback()
                    return self._skipped(subscription_id, "not_due"), None

                due_date = subscription.next_billing_date
                new_date = subscription.renew(as_of)
                before = self.subscription_repository.snapshot(subscription)

                entry = BillingHistory.for_charge(subscription, paid_at=utcnow())
                subscription.advance_billing_date(new_date)
                self.subscription_repository.save(session, subscription, self.actor, action="renew", before=before)
                self.billing_history_repository.append(session, entry)

                event = SubscriptionRenewed(
                    subscription_id=subscription.id,
                    user_id=subscription.user_id,
                    billing_history_id=entry.id,
                    subscription_name=subscription.name,
                    amount=entry.amount_paid,
                    currency=entry.currency,
                    billing_cycle=subscription.billing_cycle,
                    billing_date=as_of,
                    next_billing_date=new_date,
                )
                session.commit()
            except IntegrityError:
                # another run already recorded this due cycle
                session.rollback()
                return self._skipped(subscription_id, "already_billed"), None
            except Exception:
                session.rollback()
                raise

        observe_renewal(RenewalStatus.RENEWED.value, currency=event.currency.value, amount=event.amount)
        logger.info(
            "billing.renewal.succeeded",
            extra={
                "subscription_id": str(event.subscription_id),
                "billing_history_id": str(event.billing_history_id),
                "user_id": str(event.user_id),
                "amount": event.amount,
                "currency": event.currency.value,
                "old_billing_date": due_date.isoformat(),
                "new_billing_date": new_date.isoformat(),
            },
        )
        outcome = RenewalOutcome(
            subscription_id,
            RenewalStatus.RENEWED,
            billing_history_id=event.billing_history_id,
            new_billing_date=new_date,
        )
        return outcome, event

    def _skipped(self, subscription_id: uuid.UUID, reason: str) -> RenewalOutcome:
        observe_renewal(RenewalStatus.SKIPPED.value)
        logger.info("billing.renewal.skipped", extra={"subscription_id": str(subscription_id), "reason": reason})
        return RenewalOutcome(subscription_id, RenewalStatus.SKIPPED)

    def _publish_renewed(self, event: SubscriptionRenewed) -> None:
        # the ledger row is committed; a failing listener must not undo the renewal
        try:
            self.publish(event.to_envelope())
        except Exception as exc:
            logger.exception(
                "billing.event.publish_failed",
                extra={"subscription_id": str(event.subscription_id), "error": str(exc)},
            )
