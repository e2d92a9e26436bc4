from typing import Any

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from subtrack.core.config import Settings, get_settings

CHECK_BILLING_TASK = "subtrack.billing.check_billing"

settings = get_settings()

celery_app = Celery(
    "subtrack",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["subtrack.subscription.tasks", "subtrack.webhooks.tasks"],
)


def build_beat_schedule(config: Settings) -> dict[str, dict[str, Any]]:
    if config.billing_schedule == "minute":
        schedule = crontab()
    else:
        schedule = crontab(minute=0, hour=config.billing_run_hour)
    return {
        "check-billing": {
            "task": CHECK_BILLING_TASK,
            "schedule": schedule,
            "options": {"queue": config.billing_queue},
        }
    }


celery_app.conf.update(
    timezone=settings.billing_timezone,
    enable_utc=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "subtrack.billing.*": {"queue": settings.billing_queue},
        "subtrack.webhooks.*": {"queue": settings.webhook_queue},
    },
    beat_schedule=build_beat_schedule(settings),
)


@worker_process_init.connect
def _bootstrap_worker(**_: Any) -> None:
    from subtrack.bootstrap import bootstrap

    bootstrap()
