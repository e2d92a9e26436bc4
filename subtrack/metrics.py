from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server


jobs_total = Counter(
    "subtrack_jobs_total",
    "Total background jobs by type and final status",
    ["job_type", "status"],
)

job_duration_seconds = Histogram(
    "subtrack_job_duration_seconds",
    "Background job duration in seconds",
    ["job_type"],
)

billing_renewals_total = Counter(
    "subtrack_billing_renewals_total",
    "Subscription renewals by outcome",
    ["outcome"],
)

billing_amount_minor_total = Counter(
    "subtrack_billing_amount_minor_total",
    "Billed amount in minor units by currency",
    ["currency"],
)

webhook_deliveries_total = Counter(
    "subtrack_webhook_deliveries_total",
    "Webhook delivery attempts by outcome",
    ["outcome"],
)

webhook_delivery_duration_seconds = Histogram(
    "subtrack_webhook_delivery_duration_seconds",
    "Webhook HTTP request duration in seconds",
)


def observe_job(job_type: str, status: str, duration: float) -> None:
    jobs_total.labels(job_type=job_type, status=status).inc()
    job_duration_seconds.labels(job_type=job_type).observe(duration)


def observe_renewal(outcome: str, *, currency: str | None = None, amount: int = 0) -> None:
    billing_renewals_total.labels(outcome=outcome).inc()
    if currency is not None and amount > 0:
        billing_amount_minor_total.labels(currency=currency).inc(amount)


def observe_webhook_delivery(outcome: str, duration: float | None = None) -> None:
    webhook_deliveries_total.labels(outcome=outcome).inc()
    if duration is not None:
        webhook_delivery_duration_seconds.observe(duration)


def start_metrics_server(port: int) -> None:
    start_http_server(port)
