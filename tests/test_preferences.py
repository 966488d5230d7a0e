from datetime import timedelta

import pytest
from conftest import NOW, make_appointment, prefer

from followup.models import ReminderChannel
from followup.services.clock import ensure_utc
from followup.services.errors import NoEnabledChannel
from followup.services.preferences import resolve_channels
from followup.services.store import record_opt_event, upsert_preference


def test_channels_are_ordered_by_priority(db, patient, policy):
    prefer(db, patient, ReminderChannel.EMAIL, priority=2, hours=48)
    prefer(db, patient, ReminderChannel.SMS, priority=1)

    plans = resolve_channels(db, patient.id, "Checkup", policy=policy)

    assert [plan.channel for plan in plans] == [ReminderChannel.SMS, ReminderChannel.EMAIL]
    assert plans[0].lead_time == policy.default_lead_time
    assert plans[1].lead_time == timedelta(hours=48)


def test_disabled_preference_is_excluded(db, patient, policy):
    prefer(db, patient, ReminderChannel.SMS)
    upsert_preference(db, patient_id=patient.id, channel=ReminderChannel.EMAIL, is_enabled=False)

    plans = resolve_channels(db, patient.id, None, policy=policy)

    assert [plan.channel for plan in plans] == [ReminderChannel.SMS]


def test_latest_consent_decision_wins(db, patient, policy):
    prefer(db, patient, ReminderChannel.SMS)
    record_opt_event(db, patient_id=patient.id, channel=ReminderChannel.SMS, opted_in=False)

    with pytest.raises(NoEnabledChannel):
        resolve_channels(db, patient.id, None, policy=policy)

    record_opt_event(db, patient_id=patient.id, channel=ReminderChannel.SMS, opted_in=True)

    assert [plan.channel for plan in resolve_channels(db, patient.id, None, policy=policy)] == [
        ReminderChannel.SMS
    ]


def test_upsert_keeps_one_row_per_channel(db, patient):
    first = prefer(db, patient, ReminderChannel.SMS, priority=1)
    second = prefer(db, patient, ReminderChannel.SMS, priority=3)

    assert first.id == second.id
    assert second.priority == 3


def test_zero_lead_time_is_kept(db, patient, policy):
    prefer(db, patient, ReminderChannel.SMS, hours=0)
    db.expire_all()

    (plan,) = resolve_channels(db, patient.id, None, policy=policy)

    assert plan.lead_time == timedelta(0)


def test_zero_lead_time_schedules_at_start(db, engine, patient, doctor, templates):
    prefer(db, patient, ReminderChannel.SMS, hours=0)
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(days=1))

    (reminder,) = engine.planner.plan(db, appointment).reminders

    assert ensure_utc(reminder.scheduled_time) == NOW + timedelta(days=1)
