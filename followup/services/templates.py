"""Template selection and all-or-nothing placeholder rendering."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import tzinfo
from typing import Final, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from followup.models import Appointment, Doctor, Patient, ReminderChannel, ReminderTemplate
from followup.services.clock import ensure_utc
from followup.services.errors import TemplateNotFound, TemplateRenderError

PLACEHOLDER_PATTERN: Final = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)

SUPPORTED_PLACEHOLDERS: Final = frozenset(
    {
        "patient_name",
        "doctor_name",
        "appointment_date",
        "appointment_time",
        "appointment_type",
        "location",
    }
)


@dataclass(frozen=True)
class RenderedMessage:
    subject: str | None
    body: str


def resolve_template(
    db: Session, channel: ReminderChannel, appointment_type: str | None
) -> ReminderTemplate:
    """Return the live template for ``channel``, preferring an exact type match."""

    live = select(ReminderTemplate).where(
        ReminderTemplate.channel == channel,
        ReminderTemplate.deleted_at.is_(None),
    )
    if appointment_type:
        exact = db.execute(
            live.where(ReminderTemplate.appointment_type == appointment_type)
        ).scalars().first()
        if exact:
            return exact

    fallback = db.execute(
        live.where(ReminderTemplate.appointment_type.is_(None))
    ).scalars().first()
    if fallback:
        return fallback
    raise TemplateNotFound(channel, appointment_type)


def format_date(value, tz: tzinfo) -> str:
    local = ensure_utc(value).astimezone(tz)
    return f"{local:%A}, {local:%B} {local.day}, {local.year}"


def format_time(value, tz: tzinfo) -> str:
    local = ensure_utc(value).astimezone(tz)
    return f"{local.hour % 12 or 12}:{local:%M} {local:%p}"


def build_render_context(
    appointment: Appointment,
    patient: Patient | None,
    doctor: Doctor | None,
    tz: tzinfo,
) -> dict[str, str | None]:
    """Collect placeholder values; absent fields are left as ``None``."""

    return {
        "patient_name": patient.full_name if patient else None,
        "doctor_name": doctor.full_name if doctor else None,
        "appointment_date": format_date(appointment.start_time, tz),
        "appointment_time": format_time(appointment.start_time, tz),
        "appointment_type": appointment.appointment_type,
        "location": appointment.location,
    }


def render_text(text: str, context: Mapping[str, str | None]) -> str:
    """Substitute every placeholder in ``text`` or raise without partial output."""

    unresolved: list[str] = []

    def _substitute(match: re.Match[str]) -> str:
        token = match.group(1).strip()
        value = context.get(token) if token in SUPPORTED_PLACEHOLDERS else None
        if value is None or value == "":
            unresolved.append(token)
            return match.group(0)
        return str(value)

    rendered = PLACEHOLDER_PATTERN.sub(_substitute, text)
    leftover = PLACEHOLDER_PATTERN.sub("", text)
    if "{{" in leftover or "}}" in leftover:
        unresolved.append("unbalanced braces")
    if unresolved:
        raise TemplateRenderError(
            "Unresolved placeholders: " + ", ".join(sorted(set(unresolved)))
        )
    return rendered


def render_template(
    template: ReminderTemplate, context: Mapping[str, str | None]
) -> RenderedMessage:
    """Render subject and body of ``template``."""

    if template.channel == ReminderChannel.EMAIL and not (template.subject or "").strip():
        raise TemplateRenderError(f"Email template {template.name!r} has no subject")

    subject = render_text(template.subject, context) if template.subject else None
    return RenderedMessage(subject=subject, body=render_text(template.body, context))
