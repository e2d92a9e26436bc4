from __future__ import annotations

import logging
from typing import Any

from celery import Task

from subtrack.core.celery_app import celery_app
from subtrack.core.config import get_settings
from subtrack.core.database import SessionLocal
from subtrack.errors import RetryableDeliveryError
from subtrack.jobs import job_scope
from subtrack.webhooks.dispatcher import DispatchJob, WebhookDispatcher


logger = logging.getLogger("subtrack.webhooks")

DISPATCH_WEBHOOK_TASK = "subtrack.webhooks.dispatch"


def backoff_for(retries: int, schedule: list[int] | None = None) -> int:
    """Delay before the next attempt, given how many retries already happened."""
    delays = schedule or get_settings().webhook_backoff_seconds
    return delays[min(retries, len(delays) - 1)]


@celery_app.task(
    name=DISPATCH_WEBHOOK_TASK,
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
    max_retries=None,
)
def dispatch_webhook_task(self: Task, job_data: dict[str, Any]) -> str:
    settings = get_settings()
    job = DispatchJob.from_dict(job_data)
    attempt = self.request.retries + 1

    try:
        with job_scope("webhooks.dispatch", job_id=self.request.id):
            with SessionLocal() as session:
                outcome = WebhookDispatcher().dispatch(
                    session,
                    job,
                    attempt=attempt,
                    max_attempts=settings.webhook_max_attempts,
                )
    except RetryableDeliveryError as exc:
        countdown = backoff_for(self.request.retries, settings.webhook_backoff_seconds)
        logger.info(
            "webhook.delivery.scheduled",
            extra={"billing_history_id": str(job.billing_history_id), "attempt": attempt, "retry_in": countdown},
        )
        raise self.retry(exc=exc, countdown=countdown)
    return outcome.value


def enqueue_dispatch(job: DispatchJob) -> None:
    dispatch_webhook_task.apply_async(args=[job.to_dict()], queue=get_settings().webhook_queue)
