from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select

from followup.db.session import SessionLocal
from followup.logging_utils import configure_logging
from followup.models import Doctor, Patient, ReminderChannel, ReminderTemplate
from followup.services.store import upsert_preference, upsert_template

logger = logging.getLogger(__name__)

SEED_ACTOR = "seed"

# (name, channel, appointment_type, subject, body)
DEFAULT_TEMPLATES: list[tuple[str, ReminderChannel, str | None, str | None, str]] = [
    (
        "Appointment Reminder - SMS",
        ReminderChannel.SMS,
        None,
        None,
        "Hi {{patient_name}}, this is a reminder for your {{appointment_type}} appointment "
        "with {{doctor_name}} on {{appointment_date}} at {{appointment_time}}. Reply YES to "
        "confirm or call us at (555) 123-4567 to reschedule.",
    ),
    (
        "Appointment Reminder - Email",
        ReminderChannel.EMAIL,
        None,
        "Reminder: Your Upcoming Appointment",
        "Dear {{patient_name}},\n\nThis is a friendly reminder about your upcoming "
        "{{appointment_type}} appointment with {{doctor_name}} on {{appointment_date}} at "
        "{{appointment_time}}.\n\nLocation: {{location}}\n\nPlease arrive 15 minutes early to "
        "complete any necessary paperwork. If you need to reschedule, please call us at "
        "(555) 123-4567 at least 24 hours in advance.\n\nThank you,\nThe Medical Team",
    ),
    (
        "Dental Cleaning Reminder",
        ReminderChannel.SMS,
        "Dental Cleaning",
        None,
        "Hi {{patient_name}}, don't forget your dental cleaning with Dr. {{doctor_name}} on "
        "{{appointment_date}} at {{appointment_time}}. Please brush before your appointment. "
        "Reply YES to confirm.",
    ),
    (
        "Physical Exam Preparation",
        ReminderChannel.EMAIL,
        "Physical Exam",
        "Important Instructions for Your Physical Exam",
        "Dear {{patient_name}},\n\nYour physical examination is scheduled for "
        "{{appointment_date}} at {{appointment_time}} with Dr. {{doctor_name}}.\n\n"
        "Preparation Instructions:\n- Fast for 8 hours prior to your appointment\n"
        "- Bring all current medications\n- Wear comfortable clothing\n"
        "- Bring your insurance card\n\nIf you have any questions, please call us at "
        "(555) 123-4567.\n\nThank you,\nThe Medical Team",
    ),
    (
        "MRI Appointment Preparation",
        ReminderChannel.SMS,
        "MRI",
        None,
        "Hi {{patient_name}}, important instructions for your MRI on {{appointment_date}}: "
        "Remove all metal objects, arrive 30 min early, and inform us of any implants or "
        "devices. Reply YES to confirm.",
    ),
    (
        "WhatsApp Reminder",
        ReminderChannel.WHATSAPP,
        None,
        None,
        "Hello {{patient_name}},\nThis is a reminder for your {{appointment_type}} with "
        "Dr. {{doctor_name}} on {{appointment_date}} at {{appointment_time}}. Please reply "
        "with 'CONFIRM' to confirm your attendance or call us to reschedule.",
    ),
    (
        "Voice Reminder",
        ReminderChannel.VOICE,
        None,
        None,
        "Hello {{patient_name}}. This is a reminder of your {{appointment_type}} appointment "
        "with {{doctor_name}} on {{appointment_date}} at {{appointment_time}}.",
    ),
    (
        "In-App Reminder",
        ReminderChannel.APP,
        None,
        "Upcoming appointment",
        "{{appointment_type}} with {{doctor_name}} on {{appointment_date}} at "
        "{{appointment_time}}.",
    ),
]

DOCTORS: list[tuple[str, str]] = [
    ("Sarah Johnson", "Family Medicine"),
    ("Michael Chen", "Dentistry"),
]

# (full_name, email, phone, [(channel, priority, lead hours)])
PATIENTS: list[tuple[str, str, str, list[tuple[ReminderChannel, int, int | None]]]] = [
    (
        "John Smith",
        "john.smith@example.com",
        "+15551234567",
        [(ReminderChannel.SMS, 1, 24), (ReminderChannel.EMAIL, 2, 48)],
    ),
    (
        "Emily Davis",
        "emily.davis@example.com",
        "+15559876543",
        [(ReminderChannel.WHATSAPP, 1, None), (ReminderChannel.EMAIL, 2, None)],
    ),
]


def ensure_templates(session) -> None:
    created = 0
    for name, channel, appointment_type, subject, body in DEFAULT_TEMPLATES:
        existing = session.execute(
            select(ReminderTemplate).where(
                ReminderTemplate.name == name,
                ReminderTemplate.deleted_at.is_(None),
            )
        ).scalar_one_or_none()
        if existing:
            continue
        upsert_template(
            session,
            name=name,
            channel=channel,
            body=body,
            appointment_type=appointment_type,
            subject=subject,
            actor=SEED_ACTOR,
        )
        created += 1

    logger.info("ensured templates", extra={"created": created, "total": len(DEFAULT_TEMPLATES)})


def ensure_doctors(session) -> list[Doctor]:
    doctors: list[Doctor] = []
    for full_name, specialty in DOCTORS:
        doctor = session.execute(
            select(Doctor).where(Doctor.full_name == full_name)
        ).scalar_one_or_none()
        if not doctor:
            doctor = Doctor(full_name=full_name, specialty=specialty)
            session.add(doctor)
            session.flush()
        doctors.append(doctor)

    logger.info("ensured doctors", extra={"total": len(doctors)})
    return doctors


def ensure_patients(session) -> list[Patient]:
    patients: list[Patient] = []
    for full_name, email, phone, preferences in PATIENTS:
        patient = session.execute(
            select(Patient).where(Patient.email == email)
        ).scalar_one_or_none()
        if not patient:
            patient = Patient(full_name=full_name, email=email, phone_number=phone)
            session.add(patient)
            session.flush()
            for channel, priority, lead_hours in preferences:
                upsert_preference(
                    session,
                    patient_id=patient.id,
                    channel=channel,
                    priority=priority,
                    time_before_appointment=timedelta(hours=lead_hours) if lead_hours else None,
                    actor=SEED_ACTOR,
                )
        patients.append(patient)

    logger.info("ensured patients", extra={"total": len(patients)})
    return patients


def seed() -> None:
    configure_logging()
    logger.info("starting seed process")

    session = SessionLocal()
    try:
        ensure_templates(session)
        ensure_doctors(session)
        ensure_patients(session)
        session.commit()
        logger.info("seed complete")
    except Exception:
        session.rollback()
        logger.exception("seed failed")
        raise
    finally:
        session.close()


if __name__ == "__main__":  # pragma: no cover - script entrypoint
    seed()
