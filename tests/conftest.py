from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("TIMEZONE", "UTC")

from datetime import datetime, timedelta, timezone  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine, select  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from followup.core.policy import ReminderPolicy  # noqa: E402
from followup.models import (  # noqa: E402
    Appointment,
    AuditLog,
    Doctor,
    Patient,
    Reminder,
    ReminderChannel,
    ReminderTemplate,
)
from followup.models.base import Base  # noqa: E402
from followup.services.channels import SendResult  # noqa: E402
from followup.services.engine import build_engine  # noqa: E402
from followup.services.store import upsert_preference  # noqa: E402

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

SMS_BODY = (
    "Hi {{patient_name}}, this is a reminder for your {{appointment_type}} appointment "
    "with {{doctor_name}} on {{appointment_date}} at {{appointment_time}}."
)
EMAIL_BODY = "Dear {{patient_name}},\n\nSee you on {{appointment_date}} at {{location}}."


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeAdapter:
    """Records sends and raises queued errors before succeeding."""

    def __init__(self, channel: ReminderChannel) -> None:
        self.channel = channel
        self.sent: list[tuple[str, str | None, str]] = []
        self.errors: list[Exception] = []
        self.always_fail: Exception | None = None

    def send(self, destination, subject, body) -> SendResult:
        self.sent.append((destination, subject, body))
        if self.always_fail is not None:
            raise self.always_fail
        if self.errors:
            raise self.errors.pop(0)
        return SendResult(external_id=f"{self.channel.value}-{len(self.sent)}")


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def db(db_engine):
    session = sessionmaker(bind=db_engine, autoflush=False, future=True)()
    yield session
    session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def adapters() -> dict[ReminderChannel, FakeAdapter]:
    return {channel: FakeAdapter(channel) for channel in ReminderChannel}


@pytest.fixture()
def policy() -> ReminderPolicy:
    return ReminderPolicy(timezone="UTC", provider_timeout=2.0)


@pytest.fixture()
def engine(policy, adapters, clock):
    reminder_engine = build_engine(policy=policy, adapters=adapters, clock=clock)
    yield reminder_engine
    reminder_engine.worker.shutdown()


@pytest.fixture()
def doctor(db) -> Doctor:
    doctor = Doctor(full_name="Sarah Johnson", specialty="Family Medicine")
    db.add(doctor)
    db.flush()
    return doctor


@pytest.fixture()
def patient(db) -> Patient:
    patient = Patient(
        full_name="John Smith",
        email="john.smith@example.com",
        phone_number="+15551234567",
    )
    db.add(patient)
    db.flush()
    return patient


@pytest.fixture()
def templates(db) -> dict[ReminderChannel, ReminderTemplate]:
    created = {
        ReminderChannel.SMS: ReminderTemplate(
            name="Appointment Reminder - SMS", channel=ReminderChannel.SMS, body=SMS_BODY
        ),
        ReminderChannel.EMAIL: ReminderTemplate(
            name="Appointment Reminder - Email",
            channel=ReminderChannel.EMAIL,
            subject="Reminder: Your Upcoming Appointment",
            body=EMAIL_BODY,
        ),
        ReminderChannel.WHATSAPP: ReminderTemplate(
            name="WhatsApp Reminder", channel=ReminderChannel.WHATSAPP, body=SMS_BODY
        ),
    }
    db.add_all(created.values())
    db.flush()
    return created


def make_appointment(
    db,
    patient: Patient,
    doctor: Doctor,
    start: datetime,
    *,
    appointment_type: str = "Checkup",
    location: str | None = "Main Clinic, Room 4",
) -> Appointment:
    appointment = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        start_time=start,
        end_time=start + timedelta(minutes=30),
        appointment_type=appointment_type,
        location=location,
    )
    db.add(appointment)
    db.flush()
    return appointment


def prefer(db, patient: Patient, channel: ReminderChannel, priority: int = 1, hours=None):
    return upsert_preference(
        db,
        patient_id=patient.id,
        channel=channel,
        priority=priority,
        time_before_appointment=timedelta(hours=hours) if hours is not None else None,
    )


def reminders_for(db, appointment: Appointment) -> list[Reminder]:
    db.expire_all()
    stmt = select(Reminder).where(Reminder.appointment_id == appointment.id)
    return list(db.execute(stmt).scalars())


def audit_actions(db, entity_id=None) -> list[str]:
    stmt = select(AuditLog).order_by(AuditLog.occurred_at)
    if entity_id is not None:
        stmt = stmt.where(AuditLog.entity_id == str(entity_id))
    return [entry.action for entry in db.execute(stmt).scalars()]
