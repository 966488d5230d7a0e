"""Scheduling planner: materialize an appointment's reminders."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from followup.core.policy import ReminderPolicy
from followup.metrics import REMINDERS_PLANNED
from followup.models import (
    APPOINTMENT_CANCELLED,
    CLOSED_APPOINTMENT_STATUSES,
    SUPERSEDED,
    Appointment,
    AppointmentStatus,
    Doctor,
    Patient,
    Reminder,
    ReminderChannel,
    ReminderStatus,
)
from followup.services.audit import record_audit
from followup.services.clock import Clock, ensure_utc, system_clock
from followup.services.errors import (
    NoEnabledChannel,
    TemplateNotFound,
    TemplateRenderError,
)
from followup.services.preferences import ChannelPlan, resolve_channels
from followup.services.state_machine import ACTIVE_STATUSES
from followup.services.templates import (
    build_render_context,
    render_template,
    resolve_template,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SkippedChannel:
    channel: ReminderChannel
    reason: str


@dataclass
class PlanResult:
    """Reminders created for an appointment and the channels left out."""

    appointment_id: UUID
    reminders: list[Reminder] = field(default_factory=list)
    skipped: list[SkippedChannel] = field(default_factory=list)
    superseded: list[Reminder] = field(default_factory=list)
    no_channels: bool = False


class SchedulingPlanner:
    def __init__(self, policy: ReminderPolicy, clock: Clock = system_clock) -> None:
        self.policy = policy
        self.clock = clock

    def lock_appointment(self, db: Session, appointment_id: UUID) -> Appointment | None:
        """Load an appointment under a row lock, serializing re-planning per appointment."""

        stmt = select(Appointment).where(Appointment.id == appointment_id).with_for_update()
        return db.execute(stmt).scalars().first()

    def scheduled_time_for(self, appointment: Appointment, plan: ChannelPlan) -> datetime:
        now = self.clock()
        scheduled = ensure_utc(appointment.start_time) - plan.lead_time
        if scheduled < now:
            return now + self.policy.late_booking_buffer
        return scheduled

    def active_reminders(self, db: Session, appointment_id: UUID) -> list[Reminder]:
        stmt = (
            select(Reminder)
            .where(
                Reminder.appointment_id == appointment_id,
                Reminder.status.in_(ACTIVE_STATUSES),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return list(db.execute(stmt).scalars())

    def build_reminder(
        self,
        db: Session,
        appointment: Appointment,
        channel: ReminderChannel,
        scheduled_time: datetime,
        *,
        escalated_from: Reminder | None = None,
    ) -> Reminder:
        """Render and insert one pending reminder.

        Raises :class:`TemplateNotFound` or :class:`TemplateRenderError`
        without inserting anything.
        """

        template = resolve_template(db, channel, appointment.appointment_type)
        context = build_render_context(
            appointment,
            db.get(Patient, appointment.patient_id),
            db.get(Doctor, appointment.doctor_id),
            self.policy.zone(),
        )
        message = render_template(template, context)

        reminder = Reminder(
            appointment_id=appointment.id,
            template_id=template.id,
            channel=channel,
            status=ReminderStatus.PENDING,
            scheduled_time=scheduled_time,
            retry_count=0,
            rendered_subject=message.subject,
            rendered_body=message.body,
            escalated_from_id=escalated_from.id if escalated_from else None,
        )
        db.add(reminder)
        db.flush()
        REMINDERS_PLANNED.labels(
            channel=channel.value,
            origin="escalation" if escalated_from else "plan",
        ).inc()
        return reminder

    def plan(self, db: Session, appointment: Appointment, *, actor: str | None = None) -> PlanResult:
        """Create one pending reminder per usable channel of the appointment."""

        result = PlanResult(appointment_id=appointment.id)
        if appointment.status in CLOSED_APPOINTMENT_STATUSES:
            logger.info(
                "skipping reminder planning for closed appointment",
                extra={"status": appointment.status.value},
            )
            return result

        if not self.policy.automatic_reminders:
            record_audit(
                db,
                entity_type="appointment",
                entity_id=appointment.id,
                action="reminders_disabled",
                actor=actor,
            )
            return result

        try:
            plans = resolve_channels(
                db,
                appointment.patient_id,
                appointment.appointment_type,
                policy=self.policy,
            )
        except NoEnabledChannel as exc:
            result.no_channels = True
            record_audit(
                db,
                entity_type="appointment",
                entity_id=appointment.id,
                action="no_enabled_channel",
                actor=actor,
                details={"patient_id": str(appointment.patient_id), "error": str(exc)},
                level=logging.WARNING,
            )
            return result

        covered = {reminder.channel for reminder in self.active_reminders(db, appointment.id)}

        for plan in plans:
            if plan.channel in covered:
                result.skipped.append(SkippedChannel(plan.channel, "already_scheduled"))
                continue

            scheduled_time = self.scheduled_time_for(appointment, plan)
            try:
                reminder = self.build_reminder(db, appointment, plan.channel, scheduled_time)
            except (TemplateNotFound, TemplateRenderError) as exc:
                result.skipped.append(SkippedChannel(plan.channel, str(exc)))
                record_audit(
                    db,
                    entity_type="appointment",
                    entity_id=appointment.id,
                    action="channel_skipped",
                    actor=actor,
                    details={
                        "channel": plan.channel.value,
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                    level=logging.WARNING,
                )
                continue

            result.reminders.append(reminder)
            record_audit(
                db,
                entity_type="reminder",
                entity_id=reminder.id,
                action="reminder_scheduled",
                actor=actor,
                details={
                    "appointment_id": str(appointment.id),
                    "channel": plan.channel.value,
                    "scheduled_time": scheduled_time.isoformat(),
                    "lead_time_seconds": int(plan.lead_time.total_seconds()),
                },
            )

        return result

    def invalidate(
        self,
        db: Session,
        appointment: Appointment,
        reason: str,
        *,
        actor: str | None = None,
    ) -> list[Reminder]:
        """Fail every non-terminal reminder of the appointment with ``reason``."""

        superseded = self.active_reminders(db, appointment.id)
        for reminder in superseded:
            previous = reminder.status
            reminder.status = ReminderStatus.FAILED
            reminder.error_message = reason
            record_audit(
                db,
                entity_type="reminder",
                entity_id=reminder.id,
                action="reminder_superseded",
                actor=actor,
                details={
                    "appointment_id": str(appointment.id),
                    "channel": reminder.channel.value,
                    "from_status": previous.value,
                    "reason": reason,
                },
            )
        db.flush()
        return superseded

    def replan(
        self,
        db: Session,
        appointment: Appointment,
        previous_start_time: datetime | None = None,
        *,
        actor: str | None = None,
    ) -> PlanResult:
        """Supersede the current reminders and plan a fresh set."""

        if appointment.status == AppointmentStatus.CANCELLED:
            superseded = self.cancel(db, appointment, actor=actor)
            return PlanResult(appointment_id=appointment.id, superseded=superseded)

        superseded = self.invalidate(db, appointment, SUPERSEDED, actor=actor)
        record_audit(
            db,
            entity_type="appointment",
            entity_id=appointment.id,
            action="appointment_rescheduled",
            actor=actor,
            details={
                "previous_start_time": (
                    ensure_utc(previous_start_time).isoformat() if previous_start_time else None
                ),
                "start_time": ensure_utc(appointment.start_time).isoformat(),
                "superseded": len(superseded),
            },
        )
        result = self.plan(db, appointment, actor=actor)
        result.superseded = superseded
        return result

    def cancel(
        self, db: Session, appointment: Appointment, *, actor: str | None = None
    ) -> list[Reminder]:
        """Invalidate all reminders of a cancelled appointment."""

        superseded = self.invalidate(db, appointment, APPOINTMENT_CANCELLED, actor=actor)
        record_audit(
            db,
            entity_type="appointment",
            entity_id=appointment.id,
            action="appointment_cancelled",
            actor=actor,
            details={"superseded": len(superseded)},
        )
        return superseded

    def reissue(
        self, db: Session, failed: Reminder, *, actor: str | None = None
    ) -> Reminder | None:
        """Create a fresh pending reminder on the channel of a failed one.

        Returns ``None`` when the appointment is closed or the channel
        already holds an active reminder.
        """

        appointment = self.lock_appointment(db, failed.appointment_id)
        if appointment is None or appointment.status in CLOSED_APPOINTMENT_STATUSES:
            return None
        if any(
            reminder.channel == failed.channel
            for reminder in self.active_reminders(db, appointment.id)
        ):
            return None

        reminder = self.build_reminder(db, appointment, failed.channel, self.clock())
        record_audit(
            db,
            entity_type="reminder",
            entity_id=reminder.id,
            action="reminder_reissued",
            actor=actor,
            details={
                "appointment_id": str(appointment.id),
                "channel": failed.channel.value,
                "failed_reminder_id": str(failed.id),
            },
        )
        return reminder
