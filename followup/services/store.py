"""Write helpers for preferences, templates and consent logs."""

from __future__ import annotations

from datetime import timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from followup.models import (
    CommunicationPreference,
    OptInLog,
    ReminderChannel,
    ReminderTemplate,
)
from followup.services.audit import record_audit
from followup.services.clock import system_clock


def upsert_preference(
    db: Session,
    *,
    patient_id: UUID,
    channel: ReminderChannel,
    is_enabled: bool = True,
    priority: int = 1,
    time_before_appointment: timedelta | None = None,
    actor: str | None = None,
) -> CommunicationPreference:
    """Create or update the single preference row for (patient, channel)."""

    preference = db.execute(
        select(CommunicationPreference).where(
            CommunicationPreference.patient_id == patient_id,
            CommunicationPreference.channel == channel,
        )
    ).scalar_one_or_none()
    if preference is None:
        preference = CommunicationPreference(patient_id=patient_id, channel=channel)
        db.add(preference)

    preference.is_enabled = is_enabled
    preference.priority = priority
    preference.time_before_appointment = time_before_appointment
    db.flush()

    record_audit(
        db,
        entity_type="communication_preference",
        entity_id=preference.id,
        action="preference_upserted",
        actor=actor,
        details={
            "patient_id": str(patient_id),
            "channel": channel.value,
            "is_enabled": is_enabled,
            "priority": priority,
        },
    )
    return preference


def upsert_template(
    db: Session,
    *,
    name: str,
    channel: ReminderChannel,
    body: str,
    appointment_type: str | None = None,
    subject: str | None = None,
    actor: str | None = None,
) -> ReminderTemplate:
    """Create or replace the live template for (channel, appointment_type)."""

    type_clause = (
        ReminderTemplate.appointment_type == appointment_type
        if appointment_type
        else ReminderTemplate.appointment_type.is_(None)
    )
    template = db.execute(
        select(ReminderTemplate).where(
            ReminderTemplate.channel == channel,
            type_clause,
            ReminderTemplate.deleted_at.is_(None),
        )
    ).scalars().first()
    if template is None:
        template = ReminderTemplate(
            channel=channel,
            appointment_type=appointment_type or None,
            created_by=actor,
        )
        db.add(template)

    template.name = name
    template.subject = subject
    template.body = body
    db.flush()

    record_audit(
        db,
        entity_type="reminder_template",
        entity_id=template.id,
        action="template_upserted",
        actor=actor,
        details={"channel": channel.value, "appointment_type": appointment_type},
    )
    return template


def delete_template(db: Session, template_id: UUID, *, actor: str | None = None) -> bool:
    """Soft-delete a template so existing reminders keep their reference."""

    template = db.get(ReminderTemplate, template_id)
    if template is None or template.deleted_at is not None:
        return False
    template.deleted_at = system_clock()
    db.flush()
    record_audit(
        db,
        entity_type="reminder_template",
        entity_id=template.id,
        action="template_deleted",
        actor=actor,
    )
    return True


def record_opt_event(
    db: Session,
    *,
    patient_id: UUID,
    channel: ReminderChannel,
    opted_in: bool,
    ip_address: str | None = None,
    user_agent: str | None = None,
    actor: str | None = None,
) -> OptInLog:
    """Append an opt-in or opt-out decision to the consent log."""

    entry = OptInLog(
        patient_id=patient_id,
        channel=channel,
        opted_in=opted_in,
        ip_address=ip_address,
        user_agent=user_agent,
        created_at=system_clock(),
    )
    db.add(entry)
    db.flush()

    record_audit(
        db,
        entity_type="patient",
        entity_id=patient_id,
        action="opted_in" if opted_in else "opted_out",
        actor=actor,
        details={"channel": channel.value, "ip_address": ip_address},
    )
    return entry
