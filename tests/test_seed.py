from datetime import timedelta

from conftest import NOW, make_appointment
from sqlalchemy import func, select

from followup.models import ReminderChannel, ReminderTemplate
from followup.seed import DEFAULT_TEMPLATES, ensure_doctors, ensure_patients, ensure_templates


def test_seed_is_idempotent(db):
    for _ in range(2):
        ensure_templates(db)
        doctors = ensure_doctors(db)
        patients = ensure_patients(db)

    count = db.execute(select(func.count()).select_from(ReminderTemplate)).scalar_one()
    assert count == len(DEFAULT_TEMPLATES)
    assert len(doctors) == 2
    assert len(patients) == 2


def test_seeded_data_plans_reminders(db, engine):
    ensure_templates(db)
    doctor, _ = ensure_doctors(db)
    john, _ = ensure_patients(db)
    appointment = make_appointment(
        db, john, doctor, NOW + timedelta(days=4), appointment_type="Dental Cleaning"
    )

    result = engine.planner.plan(db, appointment)

    assert {reminder.channel for reminder in result.reminders} == {
        ReminderChannel.SMS,
        ReminderChannel.EMAIL,
    }
    sms = next(r for r in result.reminders if r.channel == ReminderChannel.SMS)
    assert "dental cleaning with Dr. Sarah Johnson" in sms.rendered_body
