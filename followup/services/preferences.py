"""Preference resolution: which channels to use for a patient, and when."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from followup.core.policy import ReminderPolicy
from followup.models import CommunicationPreference, OptInLog, ReminderChannel
from followup.services.errors import NoEnabledChannel


@dataclass(frozen=True)
class ChannelPlan:
    """A channel the patient accepts reminders on, with its lead time."""

    channel: ReminderChannel
    lead_time: timedelta
    priority: int


def latest_consent(db: Session, patient_id: UUID) -> dict[ReminderChannel, bool]:
    """Return the most recent opt-in/opt-out decision per channel."""

    stmt = (
        select(OptInLog)
        .where(OptInLog.patient_id == patient_id)
        .order_by(OptInLog.created_at.desc(), OptInLog.id)
    )
    decisions: dict[ReminderChannel, bool] = {}
    for entry in db.execute(stmt).scalars():
        decisions.setdefault(entry.channel, entry.opted_in)
    return decisions


def resolve_channels(
    db: Session,
    patient_id: UUID,
    appointment_type: str | None,
    *,
    policy: ReminderPolicy,
) -> list[ChannelPlan]:
    """Return the patient's usable channels ordered by ascending priority.

    A channel is usable when its preference row is enabled and the latest
    consent log entry for it, if any, is not an opt-out. ``appointment_type``
    is accepted for symmetry with template resolution; preferences are not
    type-specific.

    Raises :class:`NoEnabledChannel` when nothing is usable.
    """

    stmt = select(CommunicationPreference).where(
        CommunicationPreference.patient_id == patient_id,
        CommunicationPreference.is_enabled.is_(True),
    )
    preferences = db.execute(stmt).scalars().all()
    consent = latest_consent(db, patient_id)

    plans = [
        ChannelPlan(
            channel=preference.channel,
            lead_time=(
                policy.default_lead_time
                if preference.time_before_appointment is None
                else preference.time_before_appointment
            ),
            priority=preference.priority,
        )
        for preference in preferences
        if consent.get(preference.channel, True)
    ]
    if not plans:
        raise NoEnabledChannel(patient_id)

    plans.sort(key=lambda plan: (plan.priority, plan.channel.value))
    return plans
