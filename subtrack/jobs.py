from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Generator
from contextlib import contextmanager

from subtrack.context import (
    get_correlation_id,
    reset_correlation_id,
    reset_job_id,
    set_correlation_id,
    set_job_id,
)
from subtrack.metrics import observe_job


logger = logging.getLogger("subtrack.jobs")


@contextmanager
def job_scope(job_type: str, job_id: str | None = None) -> Generator[str, None, None]:
    """Bind job/correlation ids for the duration of a background job and log its lifecycle."""
    resolved_job_id = job_id or str(uuid.uuid4())
    job_token = set_job_id(resolved_job_id)
    correlation_token = set_correlation_id(get_correlation_id() or resolved_job_id)

    logger.info("job.started", extra={"job_type": job_type})
    started = time.perf_counter()
    try:
        yield resolved_job_id
    except Exception as exc:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_job(job_type, "failed", duration_ms / 1000)
        logger.error(
            "job.finished",
            exc_info=True,
            extra={"job_type": job_type, "status": "failed", "duration_ms": duration_ms, "error": str(exc)},
        )
        raise
    else:
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        observe_job(job_type, "succeeded", duration_ms / 1000)
        logger.info(
            "job.finished",
            extra={"job_type": job_type, "status": "succeeded", "duration_ms": duration_ms},
        )
    finally:
        reset_correlation_id(correlation_token)
        reset_job_id(job_token)
