from datetime import timedelta

import pytest
from conftest import NOW, audit_actions, make_appointment, prefer, reminders_for

from followup.models import Appointment, AppointmentStatus, Reminder, ReminderChannel, ReminderStatus
from followup.services.clock import ensure_utc
from followup.services.errors import ReminderNotFound, StaleCallback
from followup.services.tracker import CallbackEvent, DeliveryCallback, check_event


@pytest.fixture()
def sent_reminder(db, engine, clock, patient, doctor, templates):
    prefer(db, patient, ReminderChannel.SMS, hours=24)
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(days=2))
    engine.planner.plan(db, appointment)
    db.commit()
    clock.advance(days=1, seconds=1)
    engine.worker.run_due(db)
    (reminder,) = reminders_for(db, appointment)
    assert reminder.status == ReminderStatus.SENT
    return reminder


def callback(event, reminder=None, **kwargs):
    return DeliveryCallback(event=event, reminder_id=reminder.id if reminder else None, **kwargs)


def test_forward_progression_records_timestamps(db, engine, clock, sent_reminder):
    clock.advance(minutes=1)
    engine.tracker.apply_callback(db, callback(CallbackEvent.DELIVERED, sent_reminder))
    clock.advance(minutes=5)
    engine.tracker.apply_callback(db, callback(CallbackEvent.READ, sent_reminder))
    clock.advance(minutes=5)
    result = engine.tracker.apply_callback(
        db, callback(CallbackEvent.RESPONDED, sent_reminder, response_text="Running late")
    )

    assert result.applied is True
    reminder = db.get(Reminder, sent_reminder.id, populate_existing=True)
    assert reminder.status == ReminderStatus.RESPONDED
    assert ensure_utc(reminder.sent_time) < ensure_utc(reminder.delivered_time)
    assert ensure_utc(reminder.delivered_time) < ensure_utc(reminder.read_time)
    assert ensure_utc(reminder.read_time) < ensure_utc(reminder.response_time)
    assert reminder.response == "Running late"


def test_late_delivered_after_read_is_ignored(db, engine, sent_reminder):
    engine.tracker.apply_callback(db, callback(CallbackEvent.READ, sent_reminder))

    result = engine.tracker.apply_callback(db, callback(CallbackEvent.DELIVERED, sent_reminder))

    assert result.applied is False
    assert result.reason == "stale_event"
    reminder = db.get(Reminder, sent_reminder.id, populate_existing=True)
    assert reminder.status == ReminderStatus.READ
    assert reminder.delivered_time is None
    assert "callback_ignored" in audit_actions(db, sent_reminder.id)


def test_terminal_reminder_ignores_further_events(db, engine, sent_reminder):
    engine.tracker.apply_callback(
        db, callback(CallbackEvent.RESPONDED, sent_reminder, response_text="ok")
    )

    result = engine.tracker.apply_callback(db, callback(CallbackEvent.FAILED, sent_reminder))

    assert result.applied is False
    assert result.status == ReminderStatus.RESPONDED


def test_reported_timestamp_is_clamped_to_previous_state(db, engine, clock, sent_reminder):
    early = ensure_utc(sent_reminder.sent_time) - timedelta(minutes=3)

    engine.tracker.apply_callback(
        db, callback(CallbackEvent.DELIVERED, sent_reminder, timestamp=early)
    )

    reminder = db.get(Reminder, sent_reminder.id, populate_existing=True)
    assert ensure_utc(reminder.delivered_time) == ensure_utc(reminder.sent_time)


def test_lookup_by_external_id(db, engine, sent_reminder):
    result = engine.tracker.apply_callback(
        db, DeliveryCallback(event=CallbackEvent.DELIVERED, external_id=sent_reminder.external_id)
    )

    assert result.reminder_id == sent_reminder.id
    assert result.status == ReminderStatus.DELIVERED


def test_unknown_reminder_raises(db, engine, sent_reminder):
    with pytest.raises(ReminderNotFound):
        engine.tracker.apply_callback(
            db, DeliveryCallback(event=CallbackEvent.READ, external_id="does-not-exist")
        )


def test_failure_callback_escalates(db, engine, patient, sent_reminder):
    prefer(db, patient, ReminderChannel.WHATSAPP, priority=2)

    result = engine.tracker.apply_callback(
        db,
        callback(CallbackEvent.FAILED, sent_reminder, error_message="carrier rejected"),
    )

    assert result.applied is True
    assert result.status == ReminderStatus.FAILED
    escalated = db.get(Reminder, result.escalated_to)
    assert escalated.channel == ReminderChannel.WHATSAPP
    assert escalated.escalated_from_id == sent_reminder.id
    failed = db.get(Reminder, sent_reminder.id, populate_existing=True)
    assert failed.error_message == "carrier rejected"


def test_confirmation_reply_confirms_appointment(db, engine, sent_reminder):
    result = engine.tracker.apply_callback(
        db, callback(CallbackEvent.RESPONDED, sent_reminder, response_text=" yes, see you! ")
    )

    assert result.appointment_confirmed is True
    appointment = db.get(Appointment, sent_reminder.appointment_id)
    assert appointment.status == AppointmentStatus.CONFIRMED
    assert "appointment_confirmed" in audit_actions(db, appointment.id)


def test_other_reply_leaves_appointment_scheduled(db, engine, sent_reminder):
    result = engine.tracker.apply_callback(
        db, callback(CallbackEvent.RESPONDED, sent_reminder, response_text="Can we move it?")
    )

    assert result.appointment_confirmed is False
    appointment = db.get(Appointment, sent_reminder.appointment_id)
    assert appointment.status == AppointmentStatus.SCHEDULED


@pytest.mark.parametrize(
    "text, expected",
    [("YES", True), ("confirm.", True), ("Yes please", True), ("no", False), ("", False)],
)
def test_is_confirmation(engine, text, expected):
    assert engine.tracker.is_confirmation(text) is expected


def test_check_event_raises_stale_callback():
    check_event(ReminderStatus.SENT, CallbackEvent.READ)

    with pytest.raises(StaleCallback):
        check_event(ReminderStatus.READ, CallbackEvent.DELIVERED)
    with pytest.raises(StaleCallback):
        check_event(ReminderStatus.FAILED, CallbackEvent.RESPONDED)
