from datetime import timedelta

from conftest import NOW, audit_actions, make_appointment, prefer, reminders_for

from followup.models import (
    APPOINTMENT_CANCELLED,
    SUPERSEDED,
    AppointmentStatus,
    ReminderChannel,
    ReminderStatus,
    ReminderTemplate,
)
from followup.core.policy import ReminderPolicy
from followup.services.clock import ensure_utc
from followup.services.engine import build_engine
from followup.services.store import record_opt_event


def by_channel(reminders):
    return {reminder.channel: reminder for reminder in reminders}


def test_plan_creates_one_reminder_per_channel_with_lead_times(
    db, engine, patient, doctor, templates
):
    prefer(db, patient, ReminderChannel.SMS, priority=1, hours=24)
    prefer(db, patient, ReminderChannel.EMAIL, priority=2, hours=48)
    start = NOW + timedelta(days=3)
    appointment = make_appointment(db, patient, doctor, start)

    result = engine.planner.plan(db, appointment)

    assert len(result.reminders) == 2
    reminders = by_channel(reminders_for(db, appointment))
    assert ensure_utc(reminders[ReminderChannel.SMS].scheduled_time) == start - timedelta(hours=24)
    assert ensure_utc(reminders[ReminderChannel.EMAIL].scheduled_time) == start - timedelta(
        hours=48
    )
    assert all(reminder.status == ReminderStatus.PENDING for reminder in reminders.values())
    assert all(reminder.retry_count == 0 for reminder in reminders.values())
    assert reminders[ReminderChannel.SMS].rendered_body.startswith("Hi John Smith,")
    assert "Tuesday, March 4, 2025 at 9:00 AM" in reminders[ReminderChannel.SMS].rendered_body
    assert reminders[ReminderChannel.EMAIL].rendered_subject == "Reminder: Your Upcoming Appointment"


def test_lead_time_defaults_to_policy(db, engine, patient, doctor, templates):
    prefer(db, patient, ReminderChannel.SMS)
    start = NOW + timedelta(days=2)
    appointment = make_appointment(db, patient, doctor, start)

    engine.planner.plan(db, appointment)

    (reminder,) = reminders_for(db, appointment)
    assert ensure_utc(reminder.scheduled_time) == start - timedelta(hours=24)


def test_late_booking_is_clamped_to_now_plus_buffer(db, engine, patient, doctor, templates):
    prefer(db, patient, ReminderChannel.SMS, hours=24)
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(hours=2))

    engine.planner.plan(db, appointment)

    (reminder,) = reminders_for(db, appointment)
    assert ensure_utc(reminder.scheduled_time) == NOW + timedelta(seconds=60)


def test_type_specific_template_wins_over_default(db, engine, patient, doctor, templates):
    db.add(
        ReminderTemplate(
            name="MRI Appointment Preparation",
            channel=ReminderChannel.SMS,
            appointment_type="MRI",
            body="Hi {{patient_name}}, remove all metal objects before your MRI.",
        )
    )
    prefer(db, patient, ReminderChannel.SMS)
    mri = make_appointment(db, patient, doctor, NOW + timedelta(days=3), appointment_type="MRI")
    checkup = make_appointment(db, patient, doctor, NOW + timedelta(days=4))

    engine.planner.plan(db, mri)
    engine.planner.plan(db, checkup)

    assert "remove all metal objects" in reminders_for(db, mri)[0].rendered_body
    assert "Checkup appointment" in reminders_for(db, checkup)[0].rendered_body


def test_no_enabled_channel_plans_nothing_and_audits(db, engine, patient, doctor, templates):
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(days=3))

    result = engine.planner.plan(db, appointment)

    assert result.no_channels is True
    assert reminders_for(db, appointment) == []
    assert "no_enabled_channel" in audit_actions(db, appointment.id)


def test_opted_out_channel_is_not_planned(db, engine, patient, doctor, templates):
    prefer(db, patient, ReminderChannel.SMS, priority=1)
    prefer(db, patient, ReminderChannel.EMAIL, priority=2)
    record_opt_event(db, patient_id=patient.id, channel=ReminderChannel.SMS, opted_in=False)
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(days=3))

    engine.planner.plan(db, appointment)

    assert [reminder.channel for reminder in reminders_for(db, appointment)] == [
        ReminderChannel.EMAIL
    ]


def test_render_failure_skips_only_that_channel(db, engine, patient, doctor, templates):
    prefer(db, patient, ReminderChannel.SMS, priority=1)
    prefer(db, patient, ReminderChannel.EMAIL, priority=2)
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(days=3), location=None)

    result = engine.planner.plan(db, appointment)

    assert [reminder.channel for reminder in result.reminders] == [ReminderChannel.SMS]
    assert result.skipped[0].channel == ReminderChannel.EMAIL
    assert "location" in result.skipped[0].reason
    assert "channel_skipped" in audit_actions(db, appointment.id)


def test_missing_template_skips_channel(db, engine, patient, doctor, templates):
    prefer(db, patient, ReminderChannel.SMS, priority=1)
    prefer(db, patient, ReminderChannel.VOICE, priority=2)
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(days=3))

    result = engine.planner.plan(db, appointment)

    assert [reminder.channel for reminder in result.reminders] == [ReminderChannel.SMS]
    assert result.skipped[0].channel == ReminderChannel.VOICE


def test_planning_twice_does_not_duplicate(db, engine, patient, doctor, templates):
    prefer(db, patient, ReminderChannel.SMS)
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(days=3))

    engine.planner.plan(db, appointment)
    second = engine.planner.plan(db, appointment)

    assert second.reminders == []
    assert second.skipped[0].reason == "already_scheduled"
    assert len(reminders_for(db, appointment)) == 1


def test_replan_supersedes_and_reschedules(db, engine, patient, doctor, templates):
    prefer(db, patient, ReminderChannel.SMS, hours=24)
    old_start = NOW + timedelta(days=3)
    appointment = make_appointment(db, patient, doctor, old_start)
    engine.planner.plan(db, appointment)

    new_start = NOW + timedelta(days=5)
    appointment.start_time = new_start
    appointment.end_time = new_start + timedelta(minutes=30)
    result = engine.planner.replan(db, appointment, old_start)

    assert len(result.superseded) == 1
    reminders = reminders_for(db, appointment)
    failed = [r for r in reminders if r.status == ReminderStatus.FAILED]
    pending = [r for r in reminders if r.status == ReminderStatus.PENDING]
    assert len(failed) == 1 and failed[0].error_message == SUPERSEDED
    assert len(pending) == 1
    assert ensure_utc(pending[0].scheduled_time) == new_start - timedelta(hours=24)
    assert "appointment_rescheduled" in audit_actions(db, appointment.id)


def test_cancel_invalidates_every_active_reminder(db, engine, patient, doctor, templates):
    prefer(db, patient, ReminderChannel.SMS, priority=1)
    prefer(db, patient, ReminderChannel.EMAIL, priority=2)
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(days=3))
    engine.planner.plan(db, appointment)

    appointment.status = AppointmentStatus.CANCELLED
    superseded = engine.planner.cancel(db, appointment)

    assert len(superseded) == 2
    for reminder in reminders_for(db, appointment):
        assert reminder.status == ReminderStatus.FAILED
        assert reminder.error_message == APPOINTMENT_CANCELLED
    assert engine.planner.plan(db, appointment).reminders == []


def test_disabled_automatic_reminders_plan_nothing(db, patient, doctor, templates, adapters, clock):
    disabled = build_engine(
        policy=ReminderPolicy(timezone="UTC", automatic_reminders=False),
        adapters=adapters,
        clock=clock,
    )
    prefer(db, patient, ReminderChannel.SMS)
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(days=3))

    assert disabled.planner.plan(db, appointment).reminders == []
    assert "reminders_disabled" in audit_actions(db, appointment.id)
    disabled.worker.shutdown()
