import threading
import time
from datetime import timedelta

from conftest import NOW, audit_actions, make_appointment, prefer, reminders_for

from followup.core.policy import ReminderPolicy
from followup.models import AppointmentStatus, Reminder, ReminderChannel, ReminderStatus
from followup.services.channels import SendResult
from followup.services.clock import ensure_utc
from followup.services.engine import build_engine
from followup.services.errors import PermanentDeliveryError, TransientDeliveryError


def plan_sms(db, engine, patient, doctor, *, start=None):
    prefer(db, patient, ReminderChannel.SMS, hours=24)
    appointment = make_appointment(db, patient, doctor, start or NOW + timedelta(days=2))
    engine.planner.plan(db, appointment)
    db.commit()
    (reminder,) = reminders_for(db, appointment)
    return appointment, reminder


def test_reminder_is_not_dispatched_before_due(db, engine, patient, doctor, templates, adapters):
    plan_sms(db, engine, patient, doctor)

    assert engine.worker.run_due(db) == []
    assert adapters[ReminderChannel.SMS].sent == []


def test_due_reminder_is_sent(db, engine, clock, patient, doctor, templates, adapters):
    appointment, reminder = plan_sms(db, engine, patient, doctor)
    clock.advance(days=1, seconds=1)

    outcomes = engine.worker.run_due(db)

    assert [outcome.outcome for outcome in outcomes] == ["sent"]
    destination, subject, body = adapters[ReminderChannel.SMS].sent[0]
    assert destination == "+15551234567"
    assert subject is None
    assert body == reminder.rendered_body

    sent = db.get(Reminder, reminder.id, populate_existing=True)
    assert sent.status == ReminderStatus.SENT
    assert sent.external_id == "sms-1"
    assert ensure_utc(sent.sent_time) == clock()
    assert sent.claimed_at is None
    assert "reminder_sent" in audit_actions(db, reminder.id)


def test_claim_is_exclusive(db, engine, clock, patient, doctor, templates):
    _, reminder = plan_sms(db, engine, patient, doctor)
    clock.advance(days=2)

    assert engine.worker.claim(db, reminder.id) is True
    assert engine.worker.claim(db, reminder.id) is False
    assert engine.worker.dispatch(db, reminder.id).outcome == "not_claimed"


def test_claim_requires_due_time(db, engine, patient, doctor, templates):
    _, reminder = plan_sms(db, engine, patient, doctor)

    assert engine.worker.claim(db, reminder.id) is False


def test_transient_failure_schedules_backoff(
    db, engine, clock, patient, doctor, templates, adapters
):
    _, reminder = plan_sms(db, engine, patient, doctor)
    adapters[ReminderChannel.SMS].errors.append(TransientDeliveryError("provider returned 503"))
    clock.advance(days=1, seconds=1)

    (outcome,) = engine.worker.run_due(db)

    assert outcome.outcome == "retry_scheduled"
    retried = db.get(Reminder, reminder.id, populate_existing=True)
    assert retried.status == ReminderStatus.PENDING
    assert retried.retry_count == 1
    assert retried.error_message == "provider returned 503"
    assert ensure_utc(retried.next_attempt_time) == clock() + timedelta(seconds=60)

    assert engine.worker.run_due(db) == []
    clock.advance(seconds=60)
    (second,) = engine.worker.run_due(db)
    assert second.outcome == "sent"
    assert len(adapters[ReminderChannel.SMS].sent) == 2


def test_backoff_grows_exponentially(policy):
    assert policy.backoff_for(1) == timedelta(minutes=1)
    assert policy.backoff_for(2) == timedelta(minutes=2)
    assert policy.backoff_for(4) == timedelta(minutes=8)


def test_retries_stop_at_max_attempts(db, engine, clock, patient, doctor, templates, adapters):
    _, reminder = plan_sms(db, engine, patient, doctor)
    adapters[ReminderChannel.SMS].always_fail = TransientDeliveryError("provider unreachable")

    for _ in range(8):
        clock.advance(hours=12)
        engine.worker.run_due(db)

    failed = db.get(Reminder, reminder.id, populate_existing=True)
    assert failed.status == ReminderStatus.FAILED
    assert failed.retry_count == 5
    assert len(adapters[ReminderChannel.SMS].sent) == 5
    assert "reminder_failed" in audit_actions(db, reminder.id)


def test_permanent_failure_fails_without_retry(
    db, engine, clock, patient, doctor, templates, adapters
):
    _, reminder = plan_sms(db, engine, patient, doctor)
    adapters[ReminderChannel.SMS].errors.append(PermanentDeliveryError("invalid number"))
    clock.advance(days=1, seconds=1)

    (outcome,) = engine.worker.run_due(db)

    assert outcome.outcome == "failed"
    failed = db.get(Reminder, reminder.id, populate_existing=True)
    assert failed.status == ReminderStatus.FAILED
    assert failed.retry_count == 0
    assert failed.error_message == "invalid number"


def test_failure_escalates_to_next_untried_channel(
    db, engine, clock, patient, doctor, templates, adapters
):
    appointment, reminder = plan_sms(db, engine, patient, doctor)
    prefer(db, patient, ReminderChannel.WHATSAPP, priority=2)
    db.commit()
    adapters[ReminderChannel.SMS].errors.append(PermanentDeliveryError("invalid number"))
    clock.advance(days=1, seconds=1)

    (outcome,) = engine.worker.run_due(db)

    assert outcome.escalated_to is not None
    escalated = db.get(Reminder, outcome.escalated_to)
    assert escalated.channel == ReminderChannel.WHATSAPP
    assert escalated.status == ReminderStatus.PENDING
    assert escalated.escalated_from_id == reminder.id
    assert ensure_utc(escalated.scheduled_time) == clock()
    assert "reminder_escalated" in audit_actions(db, appointment.id)

    (follow_up,) = engine.worker.run_due(db)
    assert follow_up.outcome == "sent"
    assert len(adapters[ReminderChannel.WHATSAPP].sent) == 1


def test_escalation_does_not_duplicate_active_channel(
    db, engine, clock, patient, doctor, templates, adapters
):
    prefer(db, patient, ReminderChannel.SMS, priority=1, hours=24)
    prefer(db, patient, ReminderChannel.EMAIL, priority=2, hours=12)
    appointment = make_appointment(db, patient, doctor, NOW + timedelta(days=2))
    engine.planner.plan(db, appointment)
    db.commit()
    adapters[ReminderChannel.SMS].errors.append(PermanentDeliveryError("invalid number"))
    clock.advance(days=1, seconds=1)

    (outcome,) = engine.worker.run_due(db)

    assert outcome.outcome == "failed"
    assert outcome.escalated_to is None
    emails = [r for r in reminders_for(db, appointment) if r.channel == ReminderChannel.EMAIL]
    assert len(emails) == 1
    assert "escalation_not_needed" in audit_actions(db, appointment.id)


def test_escalation_exhausted_when_every_channel_tried(
    db, engine, clock, patient, doctor, templates, adapters
):
    appointment, _ = plan_sms(db, engine, patient, doctor)
    adapters[ReminderChannel.SMS].errors.append(PermanentDeliveryError("invalid number"))
    clock.advance(days=1, seconds=1)

    (outcome,) = engine.worker.run_due(db)

    assert outcome.escalated_to is None
    assert "escalation_exhausted" in audit_actions(db, appointment.id)


def test_cancelled_appointment_is_never_dispatched(
    db, engine, clock, patient, doctor, templates, adapters
):
    appointment, _ = plan_sms(db, engine, patient, doctor)
    appointment.status = AppointmentStatus.CANCELLED
    engine.planner.cancel(db, appointment)
    db.commit()
    clock.advance(days=3)

    assert engine.worker.run_due(db) == []
    assert adapters[ReminderChannel.SMS].sent == []


def test_closed_appointment_fails_claimed_reminder(
    db, engine, clock, patient, doctor, templates, adapters
):
    appointment, reminder = plan_sms(db, engine, patient, doctor)
    appointment.status = AppointmentStatus.NO_SHOW
    db.commit()
    clock.advance(days=3)

    outcome = engine.worker.dispatch(db, reminder.id)

    assert outcome.outcome == "failed"
    assert adapters[ReminderChannel.SMS].sent == []


def test_unexpected_adapter_error_is_retried(
    db, engine, clock, patient, doctor, templates, adapters
):
    _, reminder = plan_sms(db, engine, patient, doctor)
    adapters[ReminderChannel.SMS].errors.append(ValueError("bad payload"))
    clock.advance(days=2)

    (outcome,) = engine.worker.run_due(db)

    assert outcome.outcome == "retry_scheduled"
    assert "ValueError" in db.get(Reminder, reminder.id, populate_existing=True).error_message


class SlowAdapter:
    def send(self, destination, subject, body):
        time.sleep(1.0)
        return SendResult(external_id="too-late")


def test_hung_provider_counts_as_transient(db, clock, patient, doctor, templates, adapters):
    adapters[ReminderChannel.SMS] = SlowAdapter()
    slow_engine = build_engine(
        policy=ReminderPolicy(timezone="UTC", provider_timeout=0.1),
        adapters=adapters,
        clock=clock,
    )
    _, reminder = plan_sms(db, slow_engine, patient, doctor)
    clock.advance(days=2)

    (outcome,) = slow_engine.worker.run_due(db)
    slow_engine.worker.shutdown()

    assert outcome.outcome == "retry_scheduled"
    assert "timeout" in outcome.error
    assert db.get(Reminder, reminder.id, populate_existing=True).retry_count == 1


def test_success_after_supersession_keeps_failed_status(
    db, engine, clock, patient, doctor, templates
):
    appointment, reminder = plan_sms(db, engine, patient, doctor)
    clock.advance(days=2)
    assert engine.worker.claim(db, reminder.id)
    engine.planner.invalidate(db, appointment, "superseded")

    outcome = engine.worker._mark_sent(db, reminder, SendResult(external_id="sms-late"), None)

    assert outcome.outcome == "sent"
    late = db.get(Reminder, reminder.id, populate_existing=True)
    assert late.status == ReminderStatus.FAILED
    assert late.external_id == "sms-late"
    assert "reminder_sent_after_transition" in audit_actions(db, reminder.id)


def test_release_stale_claims(db, engine, clock, patient, doctor, templates):
    _, reminder = plan_sms(db, engine, patient, doctor)
    clock.advance(days=2)
    assert engine.worker.claim(db, reminder.id)

    assert engine.worker.release_stale_claims(db) == 0
    clock.advance(minutes=10)
    assert engine.worker.release_stale_claims(db) == 1

    released = db.get(Reminder, reminder.id, populate_existing=True)
    assert released.status == ReminderStatus.PENDING
    assert released.claimed_at is None


def test_expedite_makes_reminder_due_now(db, engine, clock, patient, doctor, templates, adapters):
    _, reminder = plan_sms(db, engine, patient, doctor)

    assert engine.worker.expedite(db, reminder.id) is True
    (outcome,) = engine.worker.run_due(db)

    assert outcome.outcome == "sent"
    assert engine.worker.expedite(db, reminder.id) is False


class BlockingAdapter:
    def __init__(self) -> None:
        self.release = threading.Event()
        self.calls = 0

    def send(self, destination, subject, body):
        self.calls += 1
        self.release.wait(timeout=5)
        return SendResult(external_id=f"sms-{self.calls}")


def test_overdue_send_blocks_redispatch(db, clock, patient, doctor, templates, adapters):
    blocking = adapters[ReminderChannel.SMS] = BlockingAdapter()
    slow_engine = build_engine(
        policy=ReminderPolicy(timezone="UTC", provider_timeout=0.1),
        adapters=adapters,
        clock=clock,
    )
    try:
        _, reminder = plan_sms(db, slow_engine, patient, doctor)
        clock.advance(days=1, seconds=1)

        first = slow_engine.worker.dispatch(db, reminder.id)
        db.commit()
        assert first.outcome == "retry_scheduled"
        assert slow_engine.worker.send_in_flight(reminder.id)

        clock.advance(seconds=61)
        second = slow_engine.worker.dispatch(db, reminder.id)
        assert second.outcome == "send_in_flight"
        assert blocking.calls == 1
        assert db.get(Reminder, reminder.id, populate_existing=True).status == (
            ReminderStatus.PENDING
        )

        blocking.release.set()
        deadline = time.monotonic() + 5
        while slow_engine.worker.send_in_flight(reminder.id) and time.monotonic() < deadline:
            time.sleep(0.01)
        assert not slow_engine.worker.send_in_flight(reminder.id)

        third = slow_engine.worker.dispatch(db, reminder.id)
        db.commit()
        assert third.outcome == "sent"
        assert blocking.calls == 2
    finally:
        blocking.release.set()
        slow_engine.worker.shutdown()
