from __future__ import annotations

from celery import Celery

from followup_jobs.config import settings

celery_app = Celery(
    "followup",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["followup_jobs.tasks"],
)

celery_app.conf.timezone = settings.timezone
celery_app.conf.broker_connection_retry_on_startup = True
celery_app.conf.beat_schedule = {
    "dispatch-due-reminders": {
        "task": "jobs.dispatch_due",
        "schedule": settings.dispatch_interval_seconds,
        "kwargs": {"limit": settings.dispatch_batch_size},
    },
    "release-stale-claims": {
        "task": "jobs.release_stale_claims",
        "schedule": settings.stale_claim_sweep_seconds,
    },
}
