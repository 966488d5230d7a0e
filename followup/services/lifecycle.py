"""Appointment lifecycle hooks called by the scheduling system."""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import UUID

from sqlalchemy.orm import Session

from followup.logging_utils import set_appointment_context
from followup.models import CLOSED_APPOINTMENT_STATUSES, SUPERSEDED, AppointmentStatus
from followup.services.clock import ensure_utc
from followup.services.engine import ReminderEngine, get_engine
from followup.services.errors import AppointmentNotFound, InvalidAppointment
from followup.services.planner import PlanResult

logger = logging.getLogger(__name__)


def _load(db: Session, engine: ReminderEngine, appointment_id: UUID):
    set_appointment_context(appointment_id)
    appointment = engine.planner.lock_appointment(db, appointment_id)
    if appointment is None:
        raise AppointmentNotFound(f"Appointment {appointment_id} not found")
    if ensure_utc(appointment.end_time) <= ensure_utc(appointment.start_time):
        raise InvalidAppointment("Appointment end_time must be after start_time")
    return appointment


def on_appointment_created(
    db: Session,
    appointment_id: UUID,
    *,
    engine: ReminderEngine | None = None,
    actor: str | None = None,
) -> PlanResult:
    engine = engine or get_engine()
    appointment = _load(db, engine, appointment_id)
    return engine.planner.plan(db, appointment, actor=actor)


def on_appointment_changed(
    db: Session,
    appointment_id: UUID,
    previous_start_time: datetime | None = None,
    *,
    engine: ReminderEngine | None = None,
    actor: str | None = None,
) -> PlanResult:
    """Re-plan after an edit.

    An unchanged start time is a no-op. A completed or no-show appointment
    only has its outstanding reminders superseded.
    """

    engine = engine or get_engine()
    appointment = _load(db, engine, appointment_id)

    if appointment.status == AppointmentStatus.CANCELLED:
        superseded = engine.planner.cancel(db, appointment, actor=actor)
        return PlanResult(appointment_id=appointment.id, superseded=superseded)

    if appointment.status in CLOSED_APPOINTMENT_STATUSES:
        superseded = engine.planner.invalidate(db, appointment, SUPERSEDED, actor=actor)
        return PlanResult(appointment_id=appointment.id, superseded=superseded)

    if previous_start_time is not None and ensure_utc(previous_start_time) == ensure_utc(
        appointment.start_time
    ):
        logger.info("appointment start time unchanged; keeping reminders")
        return PlanResult(appointment_id=appointment.id)

    return engine.planner.replan(db, appointment, previous_start_time, actor=actor)


def on_appointment_cancelled(
    db: Session,
    appointment_id: UUID,
    *,
    engine: ReminderEngine | None = None,
    actor: str | None = None,
) -> PlanResult:
    engine = engine or get_engine()
    set_appointment_context(appointment_id)
    appointment = engine.planner.lock_appointment(db, appointment_id)
    if appointment is None:
        raise AppointmentNotFound(f"Appointment {appointment_id} not found")

    if appointment.status != AppointmentStatus.CANCELLED:
        appointment.status = AppointmentStatus.CANCELLED
        db.flush()
    superseded = engine.planner.cancel(db, appointment, actor=actor)
    return PlanResult(appointment_id=appointment.id, superseded=superseded)
