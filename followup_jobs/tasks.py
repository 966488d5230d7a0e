from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from celery.signals import worker_process_init
from celery.utils.log import get_task_logger

from followup.db.session import session_scope
from followup.logging_utils import configure_logging
from followup.services import (
    get_engine,
    on_appointment_cancelled,
    on_appointment_changed,
    on_appointment_created,
)
from followup.services.planner import PlanResult
from followup_jobs.celery_app import celery_app

logger = get_task_logger(__name__)


@worker_process_init.connect
def _init_worker(**_: Any) -> None:
    configure_logging()


def _summarize(result: PlanResult) -> dict[str, Any]:
    return {
        "appointment_id": str(result.appointment_id),
        "planned": [str(reminder.id) for reminder in result.reminders],
        "superseded": [str(reminder.id) for reminder in result.superseded],
        "skipped": [skipped.channel.value for skipped in result.skipped],
    }


@celery_app.task(name="jobs.dispatch_due")
def dispatch_due(limit: int = 100) -> dict[str, Any]:
    """Dispatch every reminder whose due time has passed."""

    engine = get_engine()
    with session_scope() as db:
        outcomes = engine.worker.run_due(db, limit=limit)

    counts: dict[str, int] = {}
    for outcome in outcomes:
        counts[outcome.outcome] = counts.get(outcome.outcome, 0) + 1
    if outcomes:
        logger.info("Dispatched %d due reminders: %s", len(outcomes), counts)
    return {"processed": len(outcomes), "outcomes": counts}


@celery_app.task(name="jobs.dispatch_reminder")
def dispatch_reminder(reminder_id: str) -> dict[str, Any]:
    """Dispatch a single reminder if it is still pending and due."""

    engine = get_engine()
    with session_scope() as db:
        outcome = engine.worker.dispatch(db, UUID(reminder_id))

    logger.info("Reminder %s dispatch outcome: %s", reminder_id, outcome.outcome)
    return {
        "reminder_id": reminder_id,
        "outcome": outcome.outcome,
        "error": outcome.error,
        "escalated_to": str(outcome.escalated_to) if outcome.escalated_to else None,
    }


@celery_app.task(name="jobs.release_stale_claims")
def release_stale_claims() -> dict[str, Any]:
    """Return reminders abandoned mid-dispatch to the pending queue."""

    engine = get_engine()
    with session_scope() as db:
        released = engine.worker.release_stale_claims(db)

    if released:
        logger.warning("Released %d stale reminder claims", released)
    return {"released": released}


@celery_app.task(name="jobs.appointment_created")
def appointment_created(appointment_id: str) -> dict[str, Any]:
    with session_scope() as db:
        result = on_appointment_created(db, UUID(appointment_id))
        return _summarize(result)


@celery_app.task(name="jobs.appointment_changed")
def appointment_changed(
    appointment_id: str, previous_start_time: str | None = None
) -> dict[str, Any]:
    """Re-plan reminders after a reschedule."""

    previous = None
    if previous_start_time:
        try:
            previous = datetime.fromisoformat(previous_start_time)
        except ValueError:
            logger.warning("Invalid previous_start_time %s", previous_start_time)

    with session_scope() as db:
        result = on_appointment_changed(db, UUID(appointment_id), previous)
        return _summarize(result)


@celery_app.task(name="jobs.appointment_cancelled")
def appointment_cancelled(appointment_id: str) -> dict[str, Any]:
    with session_scope() as db:
        result = on_appointment_cancelled(db, UUID(appointment_id))
        return _summarize(result)
