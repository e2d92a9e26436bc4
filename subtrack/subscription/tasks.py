from __future__ import annotations

import logging
from datetime import date
from typing import Any

from celery import Task
from sqlalchemy.exc import OperationalError

from subtrack.core.celery_app import CHECK_BILLING_TASK, celery_app
from subtrack.core.config import get_settings
from subtrack.core.database import SessionFactory, SessionLocal
from subtrack.jobs import job_scope
from subtrack.subscription.billing import BillingOrchestrator, BillingRunResult


logger = logging.getLogger("subtrack.billing")


def run_billing(as_of: date | None = None, session_factory: SessionFactory | None = None) -> BillingRunResult:
    orchestrator = BillingOrchestrator(
        session_factory=session_factory or SessionLocal,
        max_workers=get_settings().billing_max_workers,
    )
    return orchestrator.run(as_of)


@celery_app.task(
    name=CHECK_BILLING_TASK,
    bind=True,
    acks_late=True,
    max_retries=get_settings().billing_job_max_retries,
)
def check_billing_task(self: Task, as_of: str | None = None) -> dict[str, Any]:
    billing_date = date.fromisoformat(as_of) if as_of else None
    try:
        with job_scope("billing.check_billing", job_id=self.request.id):
            result = run_billing(billing_date)
    except OperationalError as exc:
        # database unreachable before any subscription was processed
        logger.warning("billing.run.retrying", extra={"error": str(exc), "attempt": self.request.retries + 1})
        raise self.retry(exc=exc, countdown=60)
    return result.to_dict()


def enqueue_check_billing(as_of: date | None = None) -> str:
    async_result = check_billing_task.apply_async(
        kwargs={"as_of": as_of.isoformat() if as_of else None},
        queue=get_settings().billing_queue,
    )
    return async_result.id
