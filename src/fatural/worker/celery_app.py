from __future__ import annotations

from celery import Celery

from fatural.core.config import settings


def make_celery() -> Celery:
    app = Celery("fatural", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        task_always_eager=settings.celery_eager,
        task_eager_propagates=True,
        task_track_started=True,
        task_acks_late=True,
        worker_prefetch_multiplier=1,
        beat_schedule={
            "sweep-stale-jobs": {
                "task": "sweep_stale_jobs",
                "schedule": 300.0,
            },
        },
    )
    app.autodiscover_tasks(["fatural.worker.tasks"])
    return app


celery_app = make_celery()
