from __future__ import annotations

# Ensure all models are registered before any task runs
# isort: off
import fatural.models  # noqa: F401
# isort: on

import time

from fatural.core.config import settings
from fatural.core.logging import (
    get_logger,
    log_event,
    log_exception,
    monotonic_ms,
    reset_task_context,
    set_task_context,
)
from fatural.worker.celery_app import celery_app

logger = get_logger(__name__)


@celery_app.task(name="process_job", bind=True)
def process_job_task(self, job_id: str) -> str | None:
    from fatural.modules.jobs.dispatcher import build_dispatcher

    task_id = getattr(self.request, "id", None)
    tokens = set_task_context(task_id, job_id=job_id)
    start = time.monotonic()
    log_event(logger, "celery.task.start", task_name="process_job")
    try:
        state = build_dispatcher().run(job_id)
        log_event(
            logger,
            "celery.task.finish",
            task_name="process_job",
            state=state.value if state else None,
            duration_ms=monotonic_ms(start),
        )
        return state.value if state else None
    except Exception:
        log_exception(
            logger,
            "celery.task.error",
            task_name="process_job",
            duration_ms=monotonic_ms(start),
        )
        raise
    finally:
        reset_task_context(tokens)


@celery_app.task(name="sweep_stale_jobs", bind=True)
def sweep_stale_jobs_task(self) -> int:
    from fatural.core.db import SessionLocal
    from fatural.modules.jobs.dispatcher import sweep_stale_jobs

    tokens = set_task_context(getattr(self.request, "id", None))
    try:
        return sweep_stale_jobs(SessionLocal, older_than_minutes=settings.job_stale_after_minutes)
    finally:
        reset_task_context(tokens)
